"""Settings dataclass and persistence helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.orchestration.retry import RetryPolicy
from .persistence import PersistencePolicy

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "TRANSPORT_CHOICES",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".sitewright"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "SITEWRIGHT_BACKEND_URL": "backend_url",
    "SITEWRIGHT_AUTH_TOKEN": "auth_token",
    "SITEWRIGHT_TRANSPORT": "transport",
    "SITEWRIGHT_API_KEY": "api_key",
    "SITEWRIGHT_BASE_URL": "base_url",
    "SITEWRIGHT_MODEL": "model",
    "SITEWRIGHT_ORGANIZATION": "organization",
    "SITEWRIGHT_DEVICE": "device_context",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "SITEWRIGHT_DEBUG_LOGGING": "debug_logging",
    "SITEWRIGHT_AUTO_SUGGEST": "auto_suggest_enabled",
    "SITEWRIGHT_TELEMETRY": "telemetry_enabled",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "SITEWRIGHT_REQUEST_TIMEOUT": "request_timeout",
    "SITEWRIGHT_TEMPERATURE": "temperature",
    "SITEWRIGHT_AUTO_SUGGEST_DEBOUNCE": "auto_suggest_debounce",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "SITEWRIGHT_MAX_RETRIES": "max_retries",
    "SITEWRIGHT_AUTO_SUGGEST_THRESHOLD": "auto_suggest_threshold",
    "SITEWRIGHT_MAX_PROMPT_TOKENS": "max_prompt_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_SECRET_FIELDS: Mapping[str, str] = {
    "api_key": "api_key_ciphertext",
    "auth_token": "auth_token_ciphertext",
}
TRANSPORT_CHOICES: tuple[str, ...] = ("backend", "openai")
Transport = Literal["backend", "openai"]


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    backend_url: str = "http://localhost:5000"
    auth_token: str = ""
    transport: str = "backend"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 10.0
    auto_suggest_enabled: bool = True
    auto_suggest_debounce: float = 3.0
    auto_suggest_threshold: int = 5
    device_context: str = "Desktop"
    max_prompt_tokens: int | None = None
    save_flush_cycles: int = 3
    save_flush_pause: float = 0.05
    save_max_retries: int = 3
    debug_logging: bool = False
    telemetry_enabled: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            ceiling=max(0, int(self.max_retries)),
            base_delay=max(0.0, float(self.retry_base_seconds)),
            max_delay=max(0.0, float(self.retry_max_seconds)),
        )

    def persistence_policy(self) -> PersistencePolicy:
        return PersistencePolicy(
            flush_cycles=max(1, int(self.save_flush_cycles)),
            flush_pause=max(0.0, float(self.save_flush_pause)),
            max_retries=max(0, int(self.save_max_retries)),
        )


class SecretProvider(ABC):
    """Interface for encrypting and decrypting sensitive strings."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str:
        """Return an encoded representation of ``secret`` suitable for storage."""

    @abstractmethod
    def decrypt(self, token: str) -> str:
        """Return the plaintext representation of ``token``."""


class FernetSecretProvider(SecretProvider):
    """Secret provider that uses a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return token.decode("ascii")

    def decrypt(self, token: str) -> str:
        raw = self._get_fernet().decrypt(token.encode("ascii"))
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SecretVault:
    """Encrypts and decrypts sensitive strings for settings persistence."""

    def __init__(
        self,
        *,
        key_path: Path | None = None,
        provider: SecretProvider | None = None,
    ) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._provider = provider or FernetSecretProvider(self._key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        payload = self._provider.encrypt(secret)
        return f"{self._provider.name}:{payload}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, payload = self._split_token(token)
        if prefix not in (None, self._provider.name):
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:  # pragma: no cover - indicates tampering
            raise ValueError("Invalid Fernet token") from exc

    @staticmethod
    def _split_token(token: str) -> tuple[str | None, str]:
        if ":" not in token:
            return None, token
        prefix, payload = token.split(":", 1)
        return (prefix or None), payload


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        key_path = self._path.with_suffix(".key")
        self._vault = vault or SecretVault(key_path=key_path)

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        """Return the secret vault managing secret encryption."""

        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            secrets: Dict[str, str] = {}
            for field_name, cipher_field in _SECRET_FIELDS.items():
                plaintext, migrated = self._decrypt_secret(
                    payload.pop(cipher_field, None), payload.pop(field_name, None), field_name=field_name
                )
                needs_migration = needs_migration or migrated
                if plaintext:
                    secrets[field_name] = plaintext
            data = _filter_fields(payload)
            if "transport" in data:
                data["transport"] = _normalize_transport(data["transport"])
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if secrets:
                settings = replace(settings, **secrets)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only home directories
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for field_name, cipher_field in _SECRET_FIELDS.items():
            secret = data.pop(field_name, "") or ""
            ciphertext = self._encrypt_secret(secret, field_name=field_name)
            if ciphertext:
                data[cipher_field] = ciphertext
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if "transport" in filtered:
            filtered["transport"] = _normalize_transport(filtered["transport"])
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _encrypt_secret(self, secret: str, *, field_name: str) -> str | None:
        if not secret:
            return None
        token = self._vault.encrypt(secret)
        LOGGER.debug("%s encrypted via %s backend", field_name, self._vault.strategy)
        return token

    def _decrypt_secret(
        self, ciphertext: str | None, legacy_plaintext: str | None, *, field_name: str
    ) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt %s: %s", field_name, exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext %s; migrating to encrypted storage.", field_name)
            return legacy_plaintext, True
        return "", False


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - set(_SECRET_FIELDS)
    return {key: value for key, value in payload.items() if key in allowed}


def _normalize_transport(value: Any) -> Transport:
    normalized = str(value or "").strip().lower()
    if normalized in TRANSPORT_CHOICES:
        return normalized  # type: ignore[return-value]
    LOGGER.warning("Unknown transport '%s'; defaulting to backend.", value)
    return "backend"


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
