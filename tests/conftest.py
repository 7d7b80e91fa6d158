"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Callable

import pytest

from sitewright.editor.soup_document import SoupDocument
from sitewright.events import EventBus
from tests.helpers import SAMPLE_MARKUP, SAMPLE_STYLESHEET, SleepRecorder


@pytest.fixture
def document() -> SoupDocument:
    return SoupDocument(SAMPLE_MARKUP, SAMPLE_STYLESHEET)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def collect(event_bus: EventBus) -> Callable[[type], list]:
    """Subscribe a list to *event_type* on the shared bus and return it."""

    def _collect(event_type: type) -> list:
        received: list = []
        event_bus.subscribe(event_type, received.append)
        return received

    return _collect


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
