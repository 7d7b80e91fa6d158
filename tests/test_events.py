"""Unit tests for :mod:`sitewright.events`."""

from __future__ import annotations

import gc

from sitewright.events import (
    ChangesSaved,
    Event,
    EventBus,
    MutationApplied,
    MutationFailed,
    QuotaRefreshRequested,
    SaveFailed,
    StatusMessage,
)


class TestEventBusSubscription:
    """Tests for EventBus subscription functionality."""

    def test_subscribe_adds_handler(self) -> None:
        bus: EventBus[Event] = EventBus()
        bus.subscribe(ChangesSaved, lambda e: None)
        assert bus.handler_count(ChangesSaved) == 1

    def test_subscribe_different_event_types(self) -> None:
        """Handlers for different event types are tracked separately."""
        bus: EventBus[Event] = EventBus()

        bus.subscribe(ChangesSaved, lambda e: None)
        bus.subscribe(SaveFailed, lambda e: None)

        assert bus.handler_count(ChangesSaved) == 1
        assert bus.handler_count(SaveFailed) == 1
        assert bus.handler_count() == 2

    def test_unsubscribe_removes_handler(self) -> None:
        bus: EventBus[Event] = EventBus()

        def handler(event: ChangesSaved) -> None:
            pass

        bus.subscribe(ChangesSaved, handler)
        bus.unsubscribe(ChangesSaved, handler)
        assert bus.handler_count(ChangesSaved) == 0

    def test_unsubscribe_nonexistent_handler_is_safe(self) -> None:
        bus: EventBus[Event] = EventBus()
        bus.unsubscribe(ChangesSaved, lambda e: None)
        assert bus.handler_count() == 0


class TestEventBusPublish:
    """Tests for EventBus publish functionality."""

    def test_publish_invokes_handlers_in_order(self) -> None:
        bus: EventBus[Event] = EventBus()
        order: list[int] = []

        bus.subscribe(StatusMessage, lambda e: order.append(1))
        bus.subscribe(StatusMessage, lambda e: order.append(2))
        bus.publish(StatusMessage(message="hello"))

        assert order == [1, 2]

    def test_publish_only_invokes_matching_handlers(self) -> None:
        bus: EventBus[Event] = EventBus()
        failed: list[MutationFailed] = []
        applied: list[MutationApplied] = []

        bus.subscribe(MutationFailed, failed.append)
        bus.subscribe(MutationApplied, applied.append)
        bus.publish(MutationApplied(request_id=1, explanation="Done", path="imperative"))

        assert len(applied) == 1
        assert failed == []

    def test_publish_continues_after_handler_exception(self) -> None:
        """A raising handler is logged; later handlers still run."""
        bus: EventBus[Event] = EventBus()
        received: list[int] = []

        def broken(event: QuotaRefreshRequested) -> None:
            raise ValueError("boom")

        bus.subscribe(QuotaRefreshRequested, lambda e: received.append(1))
        bus.subscribe(QuotaRefreshRequested, broken)
        bus.subscribe(QuotaRefreshRequested, lambda e: received.append(3))

        bus.publish(QuotaRefreshRequested(error_code="AI_QUOTA_EXCEEDED"))

        assert received == [1, 3]

    def test_bound_method_handler_cleaned_up_on_gc(self) -> None:
        bus: EventBus[Event] = EventBus()
        received: list[StatusMessage] = []

        class Panel:
            def show(self, event: StatusMessage) -> None:
                received.append(event)

        panel = Panel()
        bus.subscribe(StatusMessage, panel.show)
        bus.publish(StatusMessage(message="before"))

        del panel
        gc.collect()
        bus.publish(StatusMessage(message="after"))

        assert [event.message for event in received] == ["before"]
        assert bus.handler_count(StatusMessage) == 0


class TestEventDefaults:
    """Default payloads carried by pipeline events."""

    def test_save_failed_default_message(self) -> None:
        event = SaveFailed(document_id="site-1")
        assert event.message == "Changes applied but save failed. Please save manually."

    def test_mutation_applied_warnings_default_empty(self) -> None:
        event = MutationApplied(request_id=3, explanation="Changed it", path="fallback")
        assert event.warnings == ()

    def test_status_message_details_are_independent(self) -> None:
        first = StatusMessage(message="a")
        second = StatusMessage(message="b")
        first.details["key"] = "value"
        assert second.details == {}
