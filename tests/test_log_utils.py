import csv
import json
import logging

import log_utils
import observability


def _reset_logger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        try:
            handler.close()
        except Exception:
            pass


def test_setup_logger_writes_to_rotating_file(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "signalix.log"
    monkeypatch.setattr(log_utils, "LOG_FILE", str(log_file))

    logger = log_utils.setup_logger("test_log_utils_file")
    try:
        assert log_utils.setup_logger("test_log_utils_file") is logger
        assert len(logger.handlers) == 2
        logger.info("Initialised credits for %s", "alice")
        for handler in logger.handlers:
            handler.flush()

        assert "Initialised credits for alice" in log_utils.read_logs(tail=5)
    finally:
        _reset_logger(logger)


def test_unwritable_log_directory_keeps_console_handler(tmp_path, monkeypatch):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    monkeypatch.setattr(log_utils, "LOG_FILE", str(blocker / "signalix.log"))

    logger = log_utils.setup_logger("test_log_utils_console_only")
    try:
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)
    finally:
        _reset_logger(logger)


def test_read_logs_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "LOG_FILE", str(tmp_path / "missing.log"))
    assert log_utils.read_logs() == ""


def test_log_event_emits_json(caplog):
    logger = logging.getLogger("test_observability_events")
    with caplog.at_level(logging.INFO, logger="test_observability_events"):
        observability.log_event(logger, "credit_decrement", user="u1", pair="BTC/USDT", extra=object())

    payload = json.loads(caplog.records[-1].message)
    assert payload["event"] == "credit_decrement"
    assert payload["user"] == "u1"
    assert payload["extra"].startswith("<object")


def test_record_metric_appends_csv(tmp_path):
    path = tmp_path / "metrics" / "m.csv"
    observability.set_metrics_path(str(path))

    observability.record_metric("analysis_latency_seconds", 2.5, labels={"pair": "ETH/USDT"})
    observability.record_metric("analysis_latency_seconds", 1.0)

    with open(path, newline="") as f:
        rows = list(csv.DictReader(f))
    assert [r["metric"] for r in rows] == ["analysis_latency_seconds"] * 2
    assert float(rows[0]["value"]) == 2.5
    assert json.loads(rows[0]["labels"]) == {"pair": "ETH/USDT"}
