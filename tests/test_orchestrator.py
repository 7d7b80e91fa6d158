"""Tests for the request orchestrator."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from sitewright.ai.errors import ErrorCode, QuotaExceeded, SaveError, TransientUpstreamError
from sitewright.ai.orchestration.orchestrator import RETRY_PROMPT_SUFFIX, RequestOrchestrator
from sitewright.ai.orchestration.retry import RetryPolicy
from sitewright.ai.orchestration.state import RequestPhase
from sitewright.editor.soup_document import SoupDocument
from sitewright.events import (
    ChangesSaved,
    EventBus,
    MutationApplied,
    MutationFailed,
    QuotaRefreshRequested,
    RequestStarted,
    SaveFailed,
    StatusMessage,
    SuggestionReady,
)
from sitewright.services.persistence import PersistenceCoordinator, PersistencePolicy
from sitewright.services.telemetry import InMemoryTelemetrySink
from tests.helpers import FakeEndpoint, FakeTransport, GatedTransport, SleepRecorder, no_sleep, suggestion_response

Collect = Callable[[type], list]

FAILING_EDIT = {
    "explanation": "Here you go",
    "operations": [{"op": "set_content", "target": {"selector": "#missing"}, "value": "Acme Farms"}],
}


def _orchestrator(
    document: SoupDocument,
    transport: Any,
    event_bus: EventBus,
    *,
    endpoint: FakeEndpoint | None = None,
    sleep: Any = no_sleep,
    **kwargs: Any,
) -> RequestOrchestrator:
    persistence = PersistenceCoordinator(
        endpoint if endpoint is not None else FakeEndpoint(),
        PersistencePolicy(flush_cycles=1, flush_pause=0),
        sleep=no_sleep,
    )
    orchestrator = RequestOrchestrator(
        document,
        transport,
        persistence=persistence,
        event_bus=event_bus,
        retry_policy=RetryPolicy(ceiling=3),
        sleep=sleep,
        **kwargs,
    )
    orchestrator.load_document("doc-1")
    return orchestrator


async def _drain(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestSubmitInstruction:
    @pytest.mark.asyncio
    async def test_applies_saves_and_publishes(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        started, applied, saved = collect(RequestStarted), collect(MutationApplied), collect(ChangesSaved)
        endpoint = FakeEndpoint()
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus, endpoint=endpoint)

        change = await orchestrator.submit_instruction("Rename the business")

        assert change is not None and change.saved
        assert change.path == "replacement"
        assert document.get_markup() == "<h1>Acme Farms</h1>"
        assert endpoint.saves == [("doc-1", "<h1>Acme Farms</h1>", "h1 { color: #222; }")]
        assert [event.kind for event in started] == ["user_prompt"]
        assert applied[0].explanation == "I changed the title to 'Acme Farms'"
        assert saved[0].skipped is False
        assert orchestrator.state.phase is RequestPhase.IDLE
        assert orchestrator.state.conversation_id == "conv-1"
        assert orchestrator.metrics.token_count == 42

        sent = transport.requests[0]
        assert sent.is_user_prompt is True
        assert sent.user_input == "Rename the business"
        assert sent.document_id == "doc-1"
        assert '"Rename the business"' in sent.prompt

    @pytest.mark.asyncio
    async def test_conversation_id_is_echoed_on_follow_up(self, document: SoupDocument, event_bus: EventBus) -> None:
        transport = FakeTransport(suggestion_response(conversation_id="conv-5"))
        orchestrator = _orchestrator(document, transport, event_bus)

        await orchestrator.submit_instruction("First")
        await orchestrator.submit_instruction("Second")

        assert transport.requests[0].conversation_id is None
        assert transport.requests[1].conversation_id == "conv-5"

    @pytest.mark.asyncio
    async def test_selection_scopes_request(self, document: SoupDocument, event_bus: EventBus) -> None:
        transport = FakeTransport(
            suggestion_response(
                {
                    "explanation": "Renamed the section",
                    "operations": [{"op": "set_content", "target": {"selected": True}, "value": "Our story"}],
                }
            )
        )
        orchestrator = _orchestrator(document, transport, event_bus)
        document.select("#about")

        change = await orchestrator.submit_instruction("Rename this")

        assert change is not None and change.path == "imperative"
        assert document.find_nodes("#about")[0].get_content() == "Our story"
        assert "## Selected Element (CONSTRAINT)" in transport.requests[0].prompt

    @pytest.mark.asyncio
    async def test_fallback_recovers_and_saves_stash(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        applied = collect(MutationApplied)
        endpoint = FakeEndpoint()
        transport = FakeTransport(suggestion_response({**FAILING_EDIT, "explanation": "I changed the title to 'Acme Farms'"}))
        orchestrator = _orchestrator(document, transport, event_bus, endpoint=endpoint)

        change = await orchestrator.submit_instruction("Rename the business")

        assert change is not None
        assert change.path == "fallback"
        assert change.fallback is not None and change.fallback.strategy == "anchor"
        assert '<h1 data-slot="title">Acme Farms</h1>' in document.get_markup()
        assert '<h1 data-slot="title">Acme Farms</h1>' in endpoint.saves[0][1]
        assert applied[0].path == "fallback"

    @pytest.mark.asyncio
    async def test_exhausted_fallback_reports_diagnostic(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        failed, applied = collect(MutationFailed), collect(MutationApplied)
        endpoint = FakeEndpoint()
        before = document.get_markup()
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response(FAILING_EDIT)), event_bus, endpoint=endpoint)

        change = await orchestrator.submit_instruction("Rename the business")

        assert change is None
        assert applied == []
        assert endpoint.saves == []
        assert document.get_markup() == before
        assert failed[0].code == ErrorCode.FALLBACK_EXHAUSTED
        assert failed[0].message == "I couldn't complete that request. I couldn't find that element."
        assert orchestrator.state.phase is RequestPhase.FAILED
        assert orchestrator.metrics.error_count == 1

    @pytest.mark.asyncio
    async def test_unsafe_operations_fail_without_fallback(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        failed = collect(MutationFailed)
        unsafe = {
            "explanation": "I changed the title to 'Acme'",
            "operations": [{"op": "replace_with", "target": {"selector": "h1"}, "value": "<script>x()</script>"}],
        }
        before = document.get_markup()
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response(unsafe)), event_bus)

        await orchestrator.submit_instruction("Rename")

        assert failed[0].code == ErrorCode.UNSAFE_INSTRUCTION
        assert document.get_markup() == before

    @pytest.mark.asyncio
    async def test_quota_is_not_retried(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        quota, failed = collect(QuotaRefreshRequested), collect(MutationFailed)
        transport = FakeTransport(QuotaExceeded(error_code="AI_QUOTA_EXCEEDED"))
        orchestrator = _orchestrator(document, transport, event_bus)

        assert await orchestrator.submit_instruction("Rename") is None

        assert len(transport.requests) == 1
        assert quota[0].error_code == "AI_QUOTA_EXCEEDED"
        assert failed[0].code == ErrorCode.QUOTA_EXCEEDED
        assert orchestrator.metrics.retry_count == 0

    @pytest.mark.asyncio
    async def test_transient_failures_retry_up_to_ceiling(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        statuses, failed = collect(StatusMessage), collect(MutationFailed)
        transport = FakeTransport(TransientUpstreamError(detail="connection reset"))
        orchestrator = _orchestrator(document, transport, event_bus)

        await orchestrator.submit_instruction("Rename")

        assert len(transport.requests) == 4
        assert isinstance(orchestrator.last_error, TransientUpstreamError)
        assert orchestrator.last_error.retries == 3
        assert orchestrator.metrics.retry_count == 3
        assert len(statuses) == 3
        assert failed[0].code == ErrorCode.TRANSIENT

    @pytest.mark.asyncio
    async def test_transient_then_success(self, document: SoupDocument, event_bus: EventBus) -> None:
        transport = FakeTransport(TransientUpstreamError(), suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus)

        change = await orchestrator.submit_instruction("Rename")

        assert change is not None
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_save_failure_keeps_change(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        save_failed, statuses, failed = collect(SaveFailed), collect(StatusMessage), collect(MutationFailed)
        endpoint = FakeEndpoint(SaveError(status_code=403, detail="forbidden"))
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response()), event_bus, endpoint=endpoint)

        change = await orchestrator.submit_instruction("Rename")

        assert change is not None
        assert change.saved is False
        assert change.save_error is not None
        assert document.get_markup() == "<h1>Acme Farms</h1>"
        assert save_failed[0].message == "Changes applied but save failed. Please save manually."
        assert statuses[-1].timeout_ms == 0
        assert failed == []

    @pytest.mark.asyncio
    async def test_unsaved_fallback_content_is_not_reused_by_later_saves(
        self, document: SoupDocument, event_bus: EventBus, collect: Collect
    ) -> None:
        save_failed, saved = collect(SaveFailed), collect(ChangesSaved)
        endpoint = FakeEndpoint(SaveError(status_code=403, detail="forbidden"))
        tagline_edit = {
            "explanation": "Updated the tagline",
            "operations": [{"op": "set_content", "target": {"selector": ".tagline"}, "value": "Organic since 1990"}],
        }
        transport = FakeTransport(
            suggestion_response({**FAILING_EDIT, "explanation": "I changed the title to 'Acme Farms'"}),
            suggestion_response(tagline_edit),
        )
        orchestrator = _orchestrator(document, transport, event_bus, endpoint=endpoint)

        first = await orchestrator.submit_instruction("Rename the business")
        second = await orchestrator.submit_instruction("Change the tagline")

        assert first is not None and first.path == "fallback" and first.save_error is not None
        assert second is not None and second.saved
        assert len(save_failed) == 1 and len(saved) == 1
        assert "Organic since 1990" in document.get_markup()
        assert endpoint.saves[-1][1] == document.get_markup()

    @pytest.mark.asyncio
    async def test_telemetry_sink_records_usage(self, document: SoupDocument, event_bus: EventBus) -> None:
        sink = InMemoryTelemetrySink()
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response()), event_bus, telemetry_sink=sink)

        await orchestrator.submit_instruction("Rename")

        (event,) = sink.tail()
        assert event.outcome == "success"
        assert event.token_count == 42
        assert event.prompt_tokens > 0
        assert event.document_id == "doc-1"


class TestSuggestions:
    @pytest.mark.asyncio
    async def test_requested_suggestion_is_displayed_then_applied(
        self, document: SoupDocument, event_bus: EventBus, collect: Collect
    ) -> None:
        ready, applied = collect(SuggestionReady), collect(MutationApplied)
        before = document.get_markup()
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus)

        result = await orchestrator.request_suggestion()

        assert result is not None
        assert document.get_markup() == before
        assert ready[0].automatic is False
        assert orchestrator.state.suggestion_displayed is True
        assert transport.requests[0].is_user_prompt is False
        assert "suggest exactly ONE" in transport.requests[0].prompt

        change = await orchestrator.apply_suggestion()

        assert change is not None
        assert document.get_markup() == "<h1>Acme Farms</h1>"
        assert len(applied) == 1
        assert orchestrator.displayed_suggestion is None
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_dismiss_clears_suggestion(self, document: SoupDocument, event_bus: EventBus) -> None:
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response()), event_bus)
        await orchestrator.request_suggestion()

        orchestrator.dismiss_suggestion()

        assert orchestrator.displayed_suggestion is None
        assert await orchestrator.apply_suggestion() is None


class TestAutoSuggest:
    @pytest.mark.asyncio
    async def test_fires_after_threshold_and_quiet_period(
        self, document: SoupDocument, event_bus: EventBus, collect: Collect, sleep_recorder: SleepRecorder
    ) -> None:
        ready = collect(SuggestionReady)
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus, sleep=sleep_recorder)
        document.find_nodes("#about")[0].set_content("About our farm")

        for _ in range(5):
            orchestrator.notify_edit()
        await _drain()

        assert sleep_recorder.delays == [3.0]
        assert len(transport.requests) == 1
        assert transport.requests[0].is_user_prompt is False
        assert ready[0].automatic is True
        assert orchestrator.state.pending_edit_count == 0
        assert "About our farm" in document.get_markup()
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_below_threshold_never_fires(
        self, document: SoupDocument, event_bus: EventBus, sleep_recorder: SleepRecorder
    ) -> None:
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus, sleep=sleep_recorder)
        document.find_nodes("#about")[0].set_content("About our farm")

        for _ in range(4):
            orchestrator.notify_edit()
        await _drain()

        assert transport.requests == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_unchanged_document_does_not_fire(
        self, document: SoupDocument, event_bus: EventBus, sleep_recorder: SleepRecorder
    ) -> None:
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus, sleep=sleep_recorder)

        for _ in range(6):
            orchestrator.notify_edit()
        await _drain()

        assert transport.requests == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_explicit_action_disarms(self, document: SoupDocument, event_bus: EventBus, sleep_recorder: SleepRecorder) -> None:
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus, sleep=sleep_recorder)
        await orchestrator.submit_instruction("Rename")
        document.find_nodes("h1")[0].set_content("Something else entirely")

        for _ in range(10):
            orchestrator.notify_edit()
        await _drain()

        assert orchestrator.state.auto_suggest_armed is False
        assert len(transport.requests) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_explicit_action_cancels_inflight_auto_suggest(
        self, document: SoupDocument, event_bus: EventBus, collect: Collect
    ) -> None:
        ready, failed, applied = collect(SuggestionReady), collect(MutationFailed), collect(MutationApplied)
        transport = GatedTransport()
        transport.queue(suggestion_response({"explanation": "Auto idea", "newMarkup": "<p>auto</p>"}))
        user_gate = transport.queue(suggestion_response({"explanation": "User change", "newMarkup": "<p>user</p>"}))
        orchestrator = _orchestrator(document, transport, event_bus, debounce_seconds=0)
        document.find_nodes("#about")[0].set_content("About our farm")

        for _ in range(5):
            orchestrator.notify_edit()
        await asyncio.wait_for(transport.sent.wait(), timeout=1)
        assert orchestrator.is_awaiting()

        transport.sent.clear()
        submit = asyncio.create_task(orchestrator.submit_instruction("Make it mine"))
        await asyncio.wait_for(transport.sent.wait(), timeout=1)
        user_gate.set()
        change = await asyncio.wait_for(submit, timeout=1)

        assert change is not None
        assert document.get_markup() == "<p>user</p>"
        assert ready == []
        assert failed == []
        assert [event.explanation for event in applied] == ["User change"]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failed_apply_of_auto_suggestion_is_reported(
        self, document: SoupDocument, event_bus: EventBus, collect: Collect, sleep_recorder: SleepRecorder
    ) -> None:
        ready, failed = collect(SuggestionReady), collect(MutationFailed)
        transport = FakeTransport(suggestion_response(FAILING_EDIT))
        orchestrator = _orchestrator(document, transport, event_bus, sleep=sleep_recorder)
        document.find_nodes("#about")[0].set_content("About our farm")

        for _ in range(5):
            orchestrator.notify_edit()
        await _drain()
        assert ready[0].automatic is True
        assert failed == []

        change = await orchestrator.apply_suggestion()

        assert change is None
        assert [event.code for event in failed] == [ErrorCode.FALLBACK_EXHAUSTED]
        assert orchestrator.state.phase is RequestPhase.FAILED
        await orchestrator.close()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_last_request_wins(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        applied, failed = collect(MutationApplied), collect(MutationFailed)
        transport = GatedTransport()
        first_gate = transport.queue(suggestion_response({"explanation": "First", "newMarkup": "<p>first</p>"}))
        second_gate = transport.queue(suggestion_response({"explanation": "Second", "newMarkup": "<p>second</p>"}))
        orchestrator = _orchestrator(document, transport, event_bus)

        first = asyncio.create_task(orchestrator.submit_instruction("one"))
        await asyncio.wait_for(transport.sent.wait(), timeout=1)
        transport.sent.clear()
        second = asyncio.create_task(orchestrator.submit_instruction("two"))
        await asyncio.wait_for(transport.sent.wait(), timeout=1)
        first_gate.set()
        second_gate.set()

        assert await asyncio.wait_for(first, timeout=1) is None
        assert await asyncio.wait_for(second, timeout=1) is not None
        assert document.get_markup() == "<p>second</p>"
        assert [event.explanation for event in applied] == ["Second"]
        assert failed == []

    @pytest.mark.asyncio
    async def test_cancel_is_silent(self, document: SoupDocument, event_bus: EventBus, collect: Collect) -> None:
        failed = collect(MutationFailed)
        transport = GatedTransport()
        transport.queue(suggestion_response())
        before = document.get_markup()
        orchestrator = _orchestrator(document, transport, event_bus)

        pending = asyncio.create_task(orchestrator.submit_instruction("Rename"))
        await asyncio.wait_for(transport.sent.wait(), timeout=1)
        orchestrator.cancel()

        assert await asyncio.wait_for(pending, timeout=1) is None
        assert failed == []
        assert document.get_markup() == before
        assert orchestrator.state.phase is RequestPhase.CANCELLED


class TestRetryAndReload:
    @pytest.mark.asyncio
    async def test_retry_last_appends_suffix_once(self, document: SoupDocument, event_bus: EventBus) -> None:
        transport = FakeTransport(suggestion_response(FAILING_EDIT), suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus)

        assert await orchestrator.submit_instruction("Rename the title") is None
        change = await orchestrator.retry_last()
        await orchestrator.retry_last()

        assert change is not None
        retried = transport.requests[1]
        assert retried.user_input == f"Rename the title\n\n{RETRY_PROMPT_SUFFIX}"
        assert retried.is_user_prompt is True
        assert transport.requests[2].user_input == retried.user_input
        assert orchestrator.metrics.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_without_previous_request(self, document: SoupDocument, event_bus: EventBus) -> None:
        transport = FakeTransport(suggestion_response())
        orchestrator = _orchestrator(document, transport, event_bus)
        assert await orchestrator.retry_last() is None
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_load_document_resets_session(self, document: SoupDocument, event_bus: EventBus) -> None:
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response()), event_bus)
        await orchestrator.submit_instruction("Rename")

        orchestrator.load_document("doc-2")

        state = orchestrator.state
        assert state.document_id == "doc-2"
        assert state.conversation_id is None
        assert state.auto_suggest_armed is True
        assert state.pending_edit_count == 0
        assert orchestrator.metrics.token_count == 0
        assert await orchestrator.retry_last() is None

    @pytest.mark.asyncio
    async def test_disabled_auto_suggest_stays_disarmed(self, document: SoupDocument, event_bus: EventBus) -> None:
        orchestrator = _orchestrator(document, FakeTransport(suggestion_response()), event_bus, auto_suggest_enabled=False)
        orchestrator.load_document("doc-2")
        assert orchestrator.state.auto_suggest_armed is False
