"""Tests for telemetry sinks, listeners and logging setup."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from sitewright.ai.errors import FallbackExhausted
from sitewright.services import telemetry as telemetry_service
from sitewright.services.telemetry import (
    AssistantUsageEvent,
    InMemoryTelemetrySink,
    PersistentTelemetrySink,
)
from sitewright.utils import logging as logging_utils


def _event(**overrides: object) -> AssistantUsageEvent:
    base: dict[str, object] = {
        "document_id": "doc-1",
        "kind": "user_prompt",
        "prompt_tokens": 120,
        "token_count": 300,
        "retries": 0,
        "outcome": "success",
        "timestamp": 1.0,
    }
    base.update(overrides)
    return AssistantUsageEvent(**base)  # type: ignore[arg-type]


def test_in_memory_sink_is_a_ring_buffer() -> None:
    sink = InMemoryTelemetrySink(capacity=10)
    for index in range(15):
        sink.record(_event(timestamp=float(index)))

    assert len(sink) == 10
    assert [event.timestamp for event in sink.tail(2)] == [13.0, 14.0]


def test_persistent_sink_reloads_from_disk(tmp_path: Path) -> None:
    path = tmp_path / "usage.json"
    PersistentTelemetrySink(path).record(_event(conversation_id="conv-1"))

    reloaded = PersistentTelemetrySink(path)

    assert reloaded.tail()[0].conversation_id == "conv-1"
    assert json.loads(path.read_text(encoding="utf-8"))[0]["kind"] == "user_prompt"


def test_persistent_sink_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "usage.json"
    path.write_text("not json", encoding="utf-8")
    assert len(PersistentTelemetrySink(path)) == 0


def test_summarize_usage_totals_counts_failures() -> None:
    totals = telemetry_service.summarize_usage_totals(
        [_event(), _event(outcome="quota_exceeded", token_count=0, retries=0), _event(outcome="cancelled", retries=2)]
    )

    assert totals is not None
    assert totals.token_count == 600
    assert totals.retries == 2
    assert totals.failures == 1
    assert totals.as_status_text() == "Tokens 600 · Retries 2 · Failures 1 · Requests 3"
    assert telemetry_service.summarize_usage_totals([]) is None


def test_emit_reaches_registered_listeners() -> None:
    received: list[dict[str, object]] = []
    telemetry_service.register_event_listener("unit.test", received.append)
    try:
        telemetry_service.emit("unit.test", {"value": 1})
    finally:
        telemetry_service.unregister_event_listener("unit.test", received.append)
    telemetry_service.emit("unit.test", {"value": 2})

    assert received == [{"event": "unit.test", "value": 1}]


def test_setup_logging_writes_to_log_dir(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(logging.INFO, log_dir=tmp_path, console=False, force=True)
    logging.getLogger("sitewright.test").info("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == tmp_path / "sitewright.log"
    assert logging_utils.get_log_path() == log_path
    assert "hello from the test" in log_path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_log_records_carry_request_context_and_error_detail(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(logging.INFO, log_dir=tmp_path, console=False, force=True)
    logger = logging.getLogger("sitewright.test")
    error = FallbackExhausted(detail="no_effect: nothing matched #missing")

    with logging_utils.request_context(7, "doc-1") as label:
        assert logging_utils.current_request() == label == "req=7 doc=doc-1"
        logger.warning("Request 7 failed: %s", error.user_message, extra={"assistant_error": error})
    logger.info("between requests")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = log_path.read_text(encoding="utf-8")
    assert (
        "| req=7 doc=doc-1 | Request 7 failed: I couldn't complete that request. "
        "[fallback_exhausted] no_effect: nothing matched #missing"
    ) in text
    assert "| - | between requests" in text
    assert logging_utils.current_request() == "-"
