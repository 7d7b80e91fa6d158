"""Application-level telemetry for assistant usage and mutation outcomes."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

_TELEMETRY_DIR = Path.home() / ".sitewright" / "telemetry"
_DEFAULT_TELEMETRY_PATH = _TELEMETRY_DIR / "assistant_usage.json"


@dataclass(slots=True)
class AssistantUsageEvent:
    """Represents a single upstream request's token usage and outcome."""

    document_id: str | None
    kind: str
    prompt_tokens: int
    token_count: int
    retries: int
    outcome: str
    timestamp: float
    conversation_id: str | None = None


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: AssistantUsageEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[AssistantUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: AssistantUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[AssistantUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


class PersistentTelemetrySink:
    """Telemetry sink that mirrors an in-memory buffer to disk."""

    def __init__(self, path: str | Path | None = None, *, capacity: int = 200) -> None:
        self._path = Path(path or _DEFAULT_TELEMETRY_PATH)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._memory = InMemoryTelemetrySink(capacity=capacity)
        self._lock = Lock()
        self._load_existing()

    def record(self, event: AssistantUsageEvent) -> None:
        with self._lock:
            self._memory.record(event)
            self._flush_locked()

    def tail(self, limit: int | None = None) -> list[AssistantUsageEvent]:
        return self._memory.tail(limit)

    def __len__(self) -> int:
        return len(self._memory)

    @property
    def path(self) -> Path:
        return self._path

    def _load_existing(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return
        for payload in raw[-self._memory.capacity :]:
            event = _event_from_payload(payload)
            if event is not None:
                self._memory.record(event)

    def _flush_locked(self) -> None:
        serialized = [asdict(event) for event in self._memory.tail()]
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(serialized, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)


@dataclass(slots=True)
class UsageTotals:
    """Aggregated totals across recorded usage events."""

    token_count: int
    retries: int
    failures: int
    event_count: int

    def as_status_text(self) -> str:
        parts = [f"Tokens {self.token_count:,}", f"Retries {self.retries}"]
        if self.failures:
            parts.append(f"Failures {self.failures}")
        parts.append(f"Requests {self.event_count}")
        return " · ".join(parts)


def snapshot_events(sink: TelemetrySink, limit: int | None = None) -> Sequence[AssistantUsageEvent]:
    """Best-effort helper to retrieve events from arbitrary sinks."""

    if hasattr(sink, "tail"):
        return list(getattr(sink, "tail")(limit))
    raise NotImplementedError("Telemetry sink does not support snapshotting")


def summarize_usage_totals(events: Iterable[AssistantUsageEvent] | None) -> UsageTotals | None:
    """Aggregate token/retry totals from recorded usage events."""

    if events is None:
        return None
    tokens = retries = failures = count = 0
    for event in events:
        if event is None:
            continue
        count += 1
        tokens += max(0, int(event.token_count))
        retries += max(0, int(event.retries))
        if event.outcome not in ("success", "cancelled"):
            failures += 1
    if count == 0:
        return None
    return UsageTotals(token_count=tokens, retries=retries, failures=failures, event_count=count)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


def default_telemetry_path() -> Path:
    """Return the default on-disk telemetry buffer location."""

    return _DEFAULT_TELEMETRY_PATH


def _event_from_payload(payload: object) -> AssistantUsageEvent | None:
    if not isinstance(payload, dict):
        return None
    try:
        return AssistantUsageEvent(
            document_id=payload.get("document_id"),
            kind=str(payload.get("kind") or ""),
            prompt_tokens=int(payload.get("prompt_tokens", 0)),
            token_count=int(payload.get("token_count", 0)),
            retries=int(payload.get("retries", 0)),
            outcome=str(payload.get("outcome") or ""),
            timestamp=float(payload.get("timestamp", 0.0)),
            conversation_id=payload.get("conversation_id"),
        )
    except (TypeError, ValueError):
        return None


__all__ = [
    "AssistantUsageEvent",
    "InMemoryTelemetrySink",
    "PersistentTelemetrySink",
    "TelemetrySink",
    "UsageTotals",
    "default_telemetry_path",
    "emit",
    "register_event_listener",
    "snapshot_events",
    "summarize_usage_totals",
    "unregister_event_listener",
]
