"""WebSocket message protocol.

Inbound frames are JSON objects tagged by ``type``.  They are decoded into one
of four frozen dataclasses and anything else is rejected with
:class:`MalformedMessageError`; the dispatcher logs and drops those frames.

Outbound frames form a closed set as well: ``bot_message``, ``typing``,
``prediction``, ``insufficient_credits`` and ``credits_update``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Union


class MalformedMessageError(ValueError):
    """Raised when an inbound frame cannot be decoded into a known variant."""


# ---------------------------------------------------------------------------
# Inbound variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserMessage:
    content: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class SelectPair:
    pair: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class HistoryRequest:
    pass


@dataclass(frozen=True)
class NewSessionRequest:
    pass


ClientMessage = Union[UserMessage, SelectPair, HistoryRequest, NewSessionRequest]


def _optional_user_id(payload: Mapping[str, Any]) -> Optional[str]:
    raw = payload.get("userId")
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise MalformedMessageError("userId must be a string")
    return raw.strip() or None


def decode_client_message(raw: Union[str, bytes]) -> ClientMessage:
    """Decode a raw WebSocket frame into a :data:`ClientMessage`."""

    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError(f"invalid JSON: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise MalformedMessageError("message must be a JSON object")

    kind = payload.get("type")
    if kind == "select_pair":
        pair = payload.get("pair")
        if not isinstance(pair, str) or not pair.strip():
            raise MalformedMessageError("select_pair requires a pair")
        return SelectPair(pair=pair.strip(), user_id=_optional_user_id(payload))
    if kind == "user_message":
        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise MalformedMessageError("user_message requires non-empty content")
        return UserMessage(content=content, user_id=_optional_user_id(payload))
    if kind == "history":
        return HistoryRequest()
    if kind == "new_session":
        return NewSessionRequest()
    raise MalformedMessageError(f"unknown message type: {kind!r}")


# ---------------------------------------------------------------------------
# Outbound variants
# ---------------------------------------------------------------------------

OutboundType = Literal[
    "bot_message",
    "typing",
    "prediction",
    "insufficient_credits",
    "credits_update",
]


@dataclass(frozen=True)
class ServerMessage:
    type: OutboundType
    content: str = ""
    prediction: Optional[Mapping[str, Any]] = None
    credits: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "content": self.content}
        if self.prediction is not None:
            data["prediction"] = dict(self.prediction)
        if self.credits is not None:
            data["credits"] = self.credits
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


INSUFFICIENT_CREDITS_TEXT = (
    "You've run out of analysis credits! Purchase more to continue analyzing crypto pairs."
)


def bot_message(content: str) -> ServerMessage:
    return ServerMessage(type="bot_message", content=content)


def typing_indicator() -> ServerMessage:
    return ServerMessage(type="typing", content="")


def prediction_message(prediction: Mapping[str, Any], content: str) -> ServerMessage:
    return ServerMessage(type="prediction", content=content, prediction=prediction)


def insufficient_credits(credits: int = 0) -> ServerMessage:
    return ServerMessage(type="insufficient_credits", content=INSUFFICIENT_CREDITS_TEXT, credits=credits)


def credits_update(credits: int) -> ServerMessage:
    return ServerMessage(type="credits_update", content="", credits=credits)


__all__ = [
    "ClientMessage",
    "HistoryRequest",
    "MalformedMessageError",
    "NewSessionRequest",
    "SelectPair",
    "ServerMessage",
    "UserMessage",
    "bot_message",
    "credits_update",
    "decode_client_message",
    "insufficient_credits",
    "prediction_message",
    "typing_indicator",
]
