"""Application bootstrap helpers for the Sitewright assistant."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.context_builder import ContextBuilder
from .ai.orchestration.orchestrator import AppliedChange, RequestOrchestrator
from .ai.transport import AssistantTransport, HttpAssistantTransport, OpenAIAssistantTransport
from .editor.accessor import DocumentAccessor
from .editor.soup_document import SoupDocument
from .events import EventBus, MutationFailed, SaveFailed, StatusMessage, SuggestionReady
from .services.persistence import HttpPersistenceEndpoint, PersistenceCoordinator, PersistenceEndpoint
from .services.settings import Settings, SettingsStore, redact_secret
from .services.telemetry import PersistentTelemetrySink, TelemetrySink
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AssistantRuntime:
    """Everything wired for one open document; ``aclose`` releases the network clients."""

    settings: Settings
    document: DocumentAccessor
    event_bus: EventBus
    transport: AssistantTransport
    orchestrator: RequestOrchestrator
    persistence_endpoint: PersistenceEndpoint | None = None

    async def aclose(self) -> None:
        await self.orchestrator.close()
        await self.transport.aclose()
        close = getattr(self.persistence_endpoint, "aclose", None)
        if close is not None:
            await close()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_transport(settings: Settings) -> AssistantTransport:
    """Return the upstream transport selected by ``settings.transport``."""

    if settings.transport == "openai":
        return OpenAIAssistantTransport(
            model=settings.model,
            api_key=settings.api_key or None,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            temperature=settings.temperature,
        )
    return HttpAssistantTransport(
        settings.backend_url,
        auth_token=settings.auth_token or None,
        timeout=settings.request_timeout,
    )


def build_runtime(
    settings: Settings,
    document: DocumentAccessor,
    *,
    document_id: str | None = None,
    transport: AssistantTransport | None = None,
    persistence_endpoint: PersistenceEndpoint | None = None,
    event_bus: EventBus | None = None,
    telemetry_sink: TelemetrySink | None = None,
    save: bool = True,
) -> AssistantRuntime:
    """Wire the request pipeline for *document* from *settings*."""

    bus = event_bus or EventBus()
    active_transport = transport or build_transport(settings)
    endpoint = persistence_endpoint
    if endpoint is None and save and document_id:
        endpoint = HttpPersistenceEndpoint(
            settings.backend_url,
            auth_token=settings.auth_token or None,
            timeout=settings.request_timeout,
        )
    persistence = PersistenceCoordinator(endpoint, settings.persistence_policy()) if endpoint is not None else None
    if telemetry_sink is None and settings.telemetry_enabled:
        telemetry_sink = PersistentTelemetrySink()

    orchestrator = RequestOrchestrator(
        document,
        active_transport,
        persistence=persistence,
        event_bus=bus,
        context_builder=ContextBuilder(max_prompt_tokens=settings.max_prompt_tokens, model_name=settings.model),
        retry_policy=settings.retry_policy(),
        debounce_seconds=settings.auto_suggest_debounce,
        auto_suggest_threshold=settings.auto_suggest_threshold,
        auto_suggest_enabled=settings.auto_suggest_enabled,
        device_context=settings.device_context,
        telemetry_sink=telemetry_sink,
    )
    orchestrator.load_document(document_id)
    return AssistantRuntime(
        settings=settings,
        document=document,
        event_bus=bus,
        transport=active_transport,
        orchestrator=orchestrator,
        persistence_endpoint=endpoint,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``sitewright`` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("SITEWRIGHT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("SITEWRIGHT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not args.markup:
        print("A markup file is required unless --dump-settings is given.", file=sys.stderr)
        return 2
    if not args.instruction and not args.suggest:
        print("Pass --instruction TEXT or --suggest.", file=sys.stderr)
        return 2

    return asyncio.run(_run_cli(settings, args))


async def _run_cli(settings: Settings, args: argparse.Namespace) -> int:
    markup_path = Path(args.markup).expanduser()
    stylesheet_path = Path(args.stylesheet).expanduser() if args.stylesheet else None
    document = SoupDocument(
        markup_path.read_text(encoding="utf-8"),
        stylesheet_path.read_text(encoding="utf-8") if stylesheet_path else "",
    )
    if args.select:
        document.select(args.select)

    runtime = build_runtime(settings, document, document_id=args.document_id, save=not args.no_save)
    bus = runtime.event_bus
    bus.subscribe(StatusMessage, _print_status)
    bus.subscribe(MutationFailed, _print_failure)
    bus.subscribe(SaveFailed, _print_save_failure)
    bus.subscribe(SuggestionReady, _print_suggestion)

    try:
        change: AppliedChange | None
        if args.suggest:
            suggestion = await runtime.orchestrator.request_suggestion()
            if suggestion is None or not args.apply:
                return 0 if suggestion is not None else 1
            change = await runtime.orchestrator.apply_suggestion()
        else:
            change = await runtime.orchestrator.submit_instruction(args.instruction)
        if change is None:
            return 1
        print(f"Applied ({change.path}): {change.explanation}")
        for warning in change.warnings:
            print(f"warning: {warning}", file=sys.stderr)
        _write_outputs(document, args.output or markup_path, stylesheet_path if args.output is None else None)
        return 0
    finally:
        await runtime.aclose()


def _write_outputs(document: DocumentAccessor, markup_path: Path, stylesheet_path: Path | None) -> None:
    Path(markup_path).write_text(document.get_markup(), encoding="utf-8")
    if stylesheet_path is not None:
        stylesheet_path.write_text(document.get_stylesheet(), encoding="utf-8")


def _print_status(event: StatusMessage) -> None:
    print(event.message, file=sys.stderr)


def _print_failure(event: MutationFailed) -> None:
    print(f"error: {event.message}", file=sys.stderr)


def _print_save_failure(event: SaveFailed) -> None:
    print(f"error: {event.message}", file=sys.stderr)


def _print_suggestion(event: SuggestionReady) -> None:
    print(f"Suggestion: {event.explanation}")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sitewright",
        description="Apply an assistant instruction to a page or inspect the assistant configuration.",
    )
    parser.add_argument("markup", nargs="?", help="HTML file to edit.")
    parser.add_argument("--stylesheet", metavar="PATH", help="CSS file paired with the markup.")
    parser.add_argument("-i", "--instruction", metavar="TEXT", help="Instruction to apply.")
    parser.add_argument("--suggest", action="store_true", help="Ask for one suggested improvement.")
    parser.add_argument("--apply", action="store_true", help="Apply the suggestion returned by --suggest.")
    parser.add_argument("--select", metavar="SELECTOR", help="CSS selector of the element to treat as selected.")
    parser.add_argument("--document-id", metavar="ID", help="Website identifier used for conversation and saving.")
    parser.add_argument("--no-save", action="store_true", help="Skip persisting through the backend.")
    parser.add_argument("-o", "--output", metavar="PATH", help="Write the edited markup here instead of in place.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.sitewright/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and target is not str:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    for secret_field in ("api_key", "auth_token"):
        value = payload.get(secret_field, "")
        if isinstance(value, str):
            payload[secret_field] = redact_secret(value)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("SITEWRIGHT_"))


__all__ = [
    "AssistantRuntime",
    "build_runtime",
    "build_transport",
    "configure_logging",
    "load_settings",
    "main",
]
