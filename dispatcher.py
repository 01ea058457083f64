"""Per-connection message dispatcher.

A :class:`ConnectionHandler` owns the :class:`~session_state.Session` of one
WebSocket and turns every inbound frame into its own ``asyncio`` task.  Frames
are not serialised against each other: two quick ``select_pair`` frames run
concurrently and the credit ledger is the only place their effects meet.
When the socket closes every outstanding task is cancelled, which also
cancels the market-data and model requests those tasks are awaiting.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional, Set, Union

from log_utils import setup_logger
from protocol import (
    ClientMessage,
    HistoryRequest,
    MalformedMessageError,
    NewSessionRequest,
    SelectPair,
    ServerMessage,
    UserMessage,
    decode_client_message,
)
from session_state import Session
from workflow import MessageChannel, PredictionWorkflow

logger = setup_logger(__name__)


class WebSocketChannel:
    """Adapt an ``aiohttp`` ``WebSocketResponse`` to :class:`~workflow.MessageChannel`."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws

    @property
    def closed(self) -> bool:
        return bool(self._ws.closed)

    async def send(self, message: ServerMessage) -> None:
        await self._ws.send_json(message.to_dict())


class ConnectionHandler:
    def __init__(
        self,
        workflow: PredictionWorkflow,
        channel: MessageChannel,
        *,
        connection_id: Optional[str] = None,
    ) -> None:
        self.workflow = workflow
        self.channel = channel
        self.session = Session(connection_id=connection_id or uuid.uuid4().hex[:12])
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def handle_frame(self, raw: Union[str, bytes]) -> Optional[asyncio.Task]:
        """Decode ``raw`` and schedule its handling; malformed frames are dropped."""

        try:
            message = decode_client_message(raw)
        except MalformedMessageError as exc:
            logger.warning("Dropping malformed message on %s: %s", self.session.connection_id, exc)
            return None
        task = asyncio.create_task(self._route(message), name=f"{self.session.connection_id}-{type(message).__name__}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Handler task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def _route(self, message: ClientMessage) -> None:
        if isinstance(message, SelectPair):
            await self.workflow.analyze_pair(self.channel, self.session, message.pair, message.user_id)
        elif isinstance(message, UserMessage):
            await self.workflow.handle_user_message(self.channel, self.session, message.content, message.user_id)
        elif isinstance(message, HistoryRequest):
            await self.workflow.send_history(self.channel, self.session)
        elif isinstance(message, NewSessionRequest):
            await self.workflow.new_session(self.channel, self.session)
        else:  # pragma: no cover - decode_client_message only yields the variants above
            logger.warning("Unhandled message variant: %r", message)

    async def drain(self) -> None:
        """Wait for every scheduled task to finish (used by tests and graceful shutdown)."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding work for a closed connection."""

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d in-flight task(s) for %s", len(tasks), self.session.connection_id)
        self._tasks.clear()


__all__ = ["ConnectionHandler", "WebSocketChannel"]
