"""Request orchestrator for the website assistant.

Owns the request lifecycle for one open document: debounced
auto-suggestions, last-request-wins cancellation, upstream retry with
backoff, conversation identity, and the apply path (executor, then the
textual fallback, then persistence). Errors from the pipeline stop here
and are turned into UI events.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

from ...editor.accessor import DocumentAccessor, DocumentNode
from ...editor.snapshot import DocumentSnapshot
from ...events import (
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
from ...services import telemetry as telemetry_service
from ...services.persistence import PersistenceCoordinator, SaveOutcome
from ...services.telemetry import AssistantUsageEvent, TelemetrySink
from ...utils import logging as logging_utils
from ..context_builder import ContextBuilder
from ..errors import (
    AssistantError,
    FallbackExhausted,
    MutationExecutionError,
    NoEffect,
    QuotaExceeded,
    RequestCancelled,
    SaveError,
)
from ..models import (
    AssistantRequest,
    AssistantResponse,
    ImperativeEdit,
    MutationRequest,
    MutationResult,
    RequestKind,
    parse_suggestion,
)
from ..mutation.executor import ExecutionOutcome, MutationExecutor
from ..mutation.fallback import FallbackResult, FallbackTextualMutator
from ..transport import AssistantTransport
from .retry import RetryPolicy, call_with_retry
from .state import CancellationToken, ConversationState, RequestPhase, TechnicalMetrics

LOGGER = logging.getLogger(__name__)

RETRY_PROMPT_SUFFIX = "The previous attempt failed. Please try a different approach."

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(slots=True)
class AppliedChange:
    """What an applied request did to the document and whether it was saved."""

    explanation: str
    path: str
    outcome: ExecutionOutcome | None = None
    fallback: FallbackResult | None = None
    save: SaveOutcome | None = None
    save_error: SaveError | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def saved(self) -> bool:
        return self.save is not None


@dataclass(slots=True)
class _DisplayedSuggestion:
    request: MutationRequest
    result: MutationResult
    token_id: int


class RequestOrchestrator:
    """Coordinates upstream requests against a single live document.

    Events Emitted:
        - RequestStarted: a request entered AwaitingResponse
        - SuggestionReady: a suggestion is displayed (not applied)
        - MutationApplied: a change reached the document
        - MutationFailed: an explicit request failed (never for cancellation)
        - QuotaRefreshRequested: upstream reported a usage cap
        - ChangesSaved / SaveFailed: outcome of persisting an applied change
        - StatusMessage: transient progress text
    """

    def __init__(
        self,
        document: DocumentAccessor,
        transport: AssistantTransport,
        *,
        persistence: PersistenceCoordinator | None = None,
        event_bus: EventBus | None = None,
        context_builder: ContextBuilder | None = None,
        executor: MutationExecutor | None = None,
        fallback: FallbackTextualMutator | None = None,
        retry_policy: RetryPolicy | None = None,
        debounce_seconds: float = 3.0,
        auto_suggest_threshold: int = 5,
        auto_suggest_enabled: bool = True,
        device_context: str = "Desktop",
        document_id: str | None = None,
        sleep: SleepFn | None = None,
        telemetry_sink: TelemetrySink | None = None,
    ) -> None:
        self._document = document
        self._transport = transport
        self._persistence = persistence
        self._bus = event_bus or EventBus()
        self._context_builder = context_builder or ContextBuilder()
        self._executor = executor or MutationExecutor()
        self._fallback = fallback or FallbackTextualMutator()
        self.retry_policy = retry_policy or RetryPolicy()
        self.debounce_seconds = max(0.0, debounce_seconds)
        self.auto_suggest_threshold = max(1, auto_suggest_threshold)
        self.device_context = device_context
        self._sleep = sleep or asyncio.sleep
        self._telemetry_sink = telemetry_sink

        self.auto_suggest_enabled = auto_suggest_enabled
        self._state = ConversationState.for_document(document_id)
        if not auto_suggest_enabled:
            self._state = self._state.disarmed()
        self._metrics = TechnicalMetrics()
        self._token: CancellationToken | None = None
        self._inflight: asyncio.Future[AssistantResponse] | None = None
        self._debounce_task: asyncio.Task[None] | None = None
        self._suggestion: _DisplayedSuggestion | None = None
        self._last_request: MutationRequest | None = None
        self.last_error: AssistantError | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def metrics(self) -> TechnicalMetrics:
        return self._metrics

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def document(self) -> DocumentAccessor:
        return self._document

    @property
    def displayed_suggestion(self) -> MutationResult | None:
        return self._suggestion.result if self._suggestion else None

    def is_awaiting(self) -> bool:
        return self._state.awaiting

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def notify_edit(self) -> None:
        """Count a user edit event and restart the auto-suggest quiet period."""

        self._state = self._state.with_edit()
        if not self._state.auto_suggest_armed or self._state.awaiting:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("notify_edit outside an event loop; auto-suggest check skipped")
            return
        self._cancel_debounce()
        self._debounce_task = loop.create_task(self._debounced_check())

    async def submit_instruction(
        self,
        text: str,
        selection: DocumentNode | None = None,
    ) -> AppliedChange | None:
        """Send an explicit user instruction and apply the result immediately."""

        scope = selection if selection is not None else self._document.get_selected_node()
        request = MutationRequest(
            instruction_text=text,
            selection_scope=scope,
            device_context=self.device_context,
            prior_conversation_id=self._state.conversation_id,
            kind=RequestKind.USER_PROMPT,
            document_id=self._state.document_id,
        )
        self._explicit_action()
        return await self._run(request, apply=True)

    async def request_suggestion(self) -> MutationResult | None:
        """Ask for one improvement and display it without applying."""

        request = MutationRequest(
            instruction_text=None,
            device_context=self.device_context,
            prior_conversation_id=self._state.conversation_id,
            kind=RequestKind.SUGGEST,
            document_id=self._state.document_id,
        )
        self._explicit_action()
        self._state = self._state.suggestion_started(self._fingerprint())
        return await self._run(request, apply=False)

    async def apply_suggestion(self) -> AppliedChange | None:
        """Apply the displayed suggestion, if any."""

        self._explicit_action()
        displayed = self._suggestion
        if displayed is None:
            LOGGER.debug("apply_suggestion called with no suggestion displayed")
            return None
        self._clear_suggestion()
        request = displayed.request
        if request.kind is RequestKind.AUTO_SUGGEST:
            # applying is explicit even when the suggestion was not
            request = replace(request, kind=RequestKind.SUGGEST)
        token = self._begin(request, publish=False)
        with logging_utils.request_context(token.id, request.document_id):
            try:
                return await self._apply(request, displayed.result, token)
            except AssistantError as exc:
                self._fail(token, request, exc)
                return None

    async def retry_last(self) -> AppliedChange | None:
        """Re-ask the model for the last explicit instruction, asking for a new approach."""

        previous = self._last_request
        if previous is None or previous.instruction_text is None:
            LOGGER.debug("retry_last called with no previous instruction")
            return None
        self._metrics.retry_count += 1
        request = MutationRequest(
            instruction_text=f"{previous.instruction_text}\n\n{RETRY_PROMPT_SUFFIX}",
            selection_scope=previous.selection_scope,
            device_context=previous.device_context,
            prior_conversation_id=self._state.conversation_id,
            kind=RequestKind.RETRY,
            document_id=self._state.document_id,
        )
        self._explicit_action()
        return await self._run(request, apply=True)

    def cancel(self) -> None:
        """Cancel the outstanding request silently."""

        self._supersede("cancelled by user")

    def dismiss_suggestion(self) -> None:
        if self._suggestion is not None:
            LOGGER.debug("Suggestion dismissed")
        self._clear_suggestion()

    def load_document(self, document_id: str | None) -> None:
        """Reset session state for a newly opened document."""

        self._supersede("document changed")
        self._cancel_debounce()
        self._clear_suggestion()
        snapshot = DocumentSnapshot.capture(self._document)
        self._state = ConversationState.for_document(document_id, snapshot.fingerprint)
        if not self.auto_suggest_enabled:
            self._state = self._state.disarmed()
        self._metrics = TechnicalMetrics()
        self._last_request = None
        self.last_error = None
        if self._persistence is not None:
            self._persistence.mark_persisted(snapshot)
        LOGGER.debug("Loaded document %s (fingerprint %s)", document_id, snapshot.fingerprint)

    async def close(self) -> None:
        """Cancel outstanding work; safe to call more than once."""

        self._supersede("closing")
        task = self._debounce_task
        self._cancel_debounce()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Auto-suggest
    # ------------------------------------------------------------------

    async def _debounced_check(self) -> None:
        await self._sleep(self.debounce_seconds)
        await self._maybe_auto_suggest()

    async def _maybe_auto_suggest(self) -> None:
        fingerprint = self._fingerprint()
        if not self._state.auto_suggest_eligible(self.auto_suggest_threshold, fingerprint):
            LOGGER.debug(
                "Auto-suggest skipped (edits=%s/%s, armed=%s, displayed=%s, phase=%s)",
                self._state.pending_edit_count,
                self.auto_suggest_threshold,
                self._state.auto_suggest_armed,
                self._state.suggestion_displayed,
                self._state.phase.value,
            )
            return
        self._state = self._state.suggestion_started(fingerprint)
        request = MutationRequest(
            instruction_text=None,
            device_context=self.device_context,
            prior_conversation_id=self._state.conversation_id,
            kind=RequestKind.AUTO_SUGGEST,
            document_id=self._state.document_id,
        )
        await self._run(request, apply=False)

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def _run(self, request: MutationRequest, *, apply: bool) -> Any:
        token = self._begin(request)
        with logging_utils.request_context(token.id, request.document_id):
            return await self._run_token(request, token, apply=apply)

    async def _run_token(self, request: MutationRequest, token: CancellationToken, *, apply: bool) -> Any:
        started = time.time()
        response: AssistantResponse | None = None
        prompt_tokens = 0
        try:
            payload = self._build_request(request)
            prompt_tokens = self._context_builder.count_tokens(payload.prompt)
            response = await self._await_upstream(payload, request, token)
            token.raise_if_cancelled()
            self._state = self._state.with_conversation(response.conversation_id)
            self._metrics.record_tokens(response.token_count)
            result = parse_suggestion(response.suggestion)
            if not apply:
                self._display(request, result, token)
                self._record_usage(request, response, "success", started, prompt_tokens)
                return result
            applied = await self._apply(request, result, token)
            self._record_usage(request, response, "success", started, prompt_tokens)
            return applied
        except RequestCancelled as exc:
            self._cancelled(token, exc.detail)
            self._record_usage(request, response, "cancelled", started, prompt_tokens)
            return None
        except asyncio.CancelledError:
            if not token.cancelled:
                self._cancelled(token, "task cancelled")
                raise
            self._cancelled(token, token.reason)
            self._record_usage(request, response, "cancelled", started, prompt_tokens)
            return None
        except AssistantError as exc:
            self._fail(token, request, exc)
            self._record_usage(request, response, exc.code, started, prompt_tokens)
            return None

    def _begin(self, request: MutationRequest, *, publish: bool = True) -> CancellationToken:
        self._supersede("superseded by a newer request")
        token = CancellationToken(label=request.kind.value)
        self._token = token
        if request.kind is RequestKind.USER_PROMPT:
            self._last_request = request
        self._state = self._state.with_phase(RequestPhase.AWAITING_RESPONSE)
        if publish:
            LOGGER.debug("Request %s started (%s)", token.id, request.kind.value)
            telemetry_service.emit(
                "assistant.request",
                {"kind": request.kind.value, "document_id": request.document_id, "request_id": token.id},
            )
            self._bus.publish(RequestStarted(request_id=token.id, kind=request.kind.value, document_id=request.document_id))
        return token

    async def _await_upstream(
        self,
        payload: AssistantRequest,
        request: MutationRequest,
        token: CancellationToken,
    ) -> AssistantResponse:

        async def attempt() -> AssistantResponse:
            return await self._transport.send(payload)

        inflight = asyncio.ensure_future(
            call_with_retry(
                attempt,
                self.retry_policy,
                token,
                sleep=self._sleep,
                on_retry=lambda number, exc, delay: self._on_retry(request, number, delay),
            )
        )
        self._inflight = inflight
        try:
            return await inflight
        finally:
            if self._inflight is inflight:
                self._inflight = None

    def _build_request(self, request: MutationRequest) -> AssistantRequest:
        prompt = self._context_builder.build(
            self._document,
            request.selection_scope,
            request.instruction_text,
            request.device_context,
        )
        return AssistantRequest(
            prompt=prompt,
            is_user_prompt=request.is_user_prompt,
            document_id=request.document_id,
            user_input=request.instruction_text,
            conversation_id=self._state.conversation_id or request.prior_conversation_id,
            markup=self._document.get_markup(),
            stylesheet=self._document.get_stylesheet(),
        )

    def _on_retry(self, request: MutationRequest, attempt_number: int, delay: float) -> None:
        self._metrics.retry_count += 1
        telemetry_service.emit("assistant.retry", {"kind": request.kind.value, "attempt": attempt_number, "delay": delay})
        if request.kind is not RequestKind.AUTO_SUGGEST:
            self._bus.publish(StatusMessage(message=f"Connection problem, retrying ({attempt_number}/{self.retry_policy.ceiling})…"))

    async def _apply(self, request: MutationRequest, result: MutationResult, token: CancellationToken) -> AppliedChange:
        self._state = self._state.with_phase(RequestPhase.APPLYING)
        if self._persistence is not None:
            self._persistence.clear_stash()
        try:
            outcome = self._executor.apply(self._document, result, request.selection_scope)
            change = AppliedChange(
                explanation=result.explanation,
                path=outcome.path,
                outcome=outcome,
                warnings=list(outcome.warnings),
            )
        except (NoEffect, MutationExecutionError) as exc:
            if not isinstance(result, ImperativeEdit):
                raise
            change = self._try_fallback(result, exc)

        self._bus.publish(
            MutationApplied(
                request_id=token.id,
                explanation=change.explanation,
                path=change.path,
                warnings=tuple(change.warnings),
            )
        )
        if self._token is token:
            self._state = self._state.with_phase(RequestPhase.IDLE)
        await self._save(change)
        return change

    def _try_fallback(self, result: ImperativeEdit, cause: AssistantError) -> AppliedChange:
        LOGGER.info("Primary mutation failed (%s); trying textual fallback", cause.code)
        fallback = self._fallback.try_fallback(self._document, result.explanation)
        if fallback is None:
            diagnostic = ""
            if isinstance(cause, NoEffect) and cause.outcome is not None and cause.outcome.diagnostic:
                diagnostic = f" {cause.outcome.diagnostic}"
            raise FallbackExhausted(
                user_message=f"I couldn't complete that request.{diagnostic}",
                detail=f"{cause.code}: {cause.detail}",
                context={"cause": cause.to_dict()},
            ) from cause
        if self._persistence is not None:
            self._persistence.stash(fallback.markup, self._document.get_stylesheet())
        return AppliedChange(explanation=result.explanation, path="fallback", fallback=fallback)

    async def _save(self, change: AppliedChange) -> None:
        document_id = self._state.document_id
        if self._persistence is None or not document_id:
            return
        try:
            change.save = await self._persistence.save(self._document, document_id)
        except SaveError as exc:
            change.save_error = exc
            self._metrics.error_count += 1
            LOGGER.warning("Change applied but not saved: %s", exc.detail)
            self._bus.publish(SaveFailed(document_id=document_id, message=exc.user_message))
            self._bus.publish(StatusMessage(message=exc.user_message, timeout_ms=0))
            return
        self._bus.publish(ChangesSaved(document_id=document_id, skipped=change.save.skipped))

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _display(self, request: MutationRequest, result: MutationResult, token: CancellationToken) -> None:
        self._suggestion = _DisplayedSuggestion(request=request, result=result, token_id=token.id)
        self._state = self._state.with_suggestion(True)
        if self._token is token:
            self._state = self._state.with_phase(RequestPhase.IDLE)
        self._bus.publish(
            SuggestionReady(
                request_id=token.id,
                explanation=result.explanation,
                automatic=request.kind is RequestKind.AUTO_SUGGEST,
            )
        )

    def _clear_suggestion(self) -> None:
        self._suggestion = None
        if self._state.suggestion_displayed:
            self._state = self._state.with_suggestion(False)

    def _explicit_action(self) -> None:
        if self._state.auto_suggest_armed:
            LOGGER.debug("Explicit user action; auto-suggest disarmed for this session")
        self._state = self._state.disarmed()
        self._cancel_debounce()

    def _supersede(self, reason: str) -> None:
        token = self._token
        if token is not None and not token.cancelled:
            token.cancel(reason)
            LOGGER.debug("Request %s cancelled: %s", token.id, reason)
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
        self._inflight = None

    def _cancel_debounce(self) -> None:
        task = self._debounce_task
        self._debounce_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _cancelled(self, token: CancellationToken, reason: str) -> None:
        LOGGER.debug("Request %s discarded (%s)", token.id, reason)
        if self._token is token:
            self._state = self._state.with_phase(RequestPhase.CANCELLED)

    def _fail(self, token: CancellationToken, request: MutationRequest, exc: AssistantError) -> None:
        if token.cancelled:
            self._cancelled(token, token.reason)
            return
        self.last_error = exc
        self._metrics.error_count += 1
        LOGGER.warning("Request %s failed: %s", token.id, exc.user_message, extra={"assistant_error": exc})
        if self._token is token:
            self._state = self._state.with_phase(RequestPhase.FAILED)
        if isinstance(exc, QuotaExceeded):
            self._bus.publish(QuotaRefreshRequested(error_code=exc.error_code))
        if request.kind is RequestKind.AUTO_SUGGEST or not exc.surfaced:
            return
        self._bus.publish(MutationFailed(request_id=token.id, code=exc.code, message=exc.user_message))

    def _fingerprint(self) -> str:
        return DocumentSnapshot.capture(self._document).fingerprint

    def _record_usage(
        self,
        request: MutationRequest,
        response: AssistantResponse | None,
        outcome: str,
        started: float,
        prompt_tokens: int = 0,
    ) -> None:
        if self._telemetry_sink is None:
            return
        self._telemetry_sink.record(
            AssistantUsageEvent(
                document_id=request.document_id,
                kind=request.kind.value,
                prompt_tokens=prompt_tokens,
                token_count=response.token_count if response else 0,
                retries=self._metrics.retry_count,
                outcome=outcome,
                timestamp=started,
                conversation_id=self._state.conversation_id,
            )
        )


__all__ = ["AppliedChange", "RETRY_PROMPT_SUFFIX", "RequestOrchestrator"]
