"""Token counting used to cap prompt size."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Protocol

import tiktoken

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def encode(self, text: str) -> list[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)

    def _load_encoding(self, model_name: str, encoding_name: str | None) -> Any:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: "TokenCounterRegistry | None" = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def ensure(self, model_name: str | None) -> TokenCounterProtocol:
        """Return the counter for *model_name*, registering a tiktoken one on first use."""

        key = self._normalize_key(model_name)
        if not key:
            return self._fallback
        if key not in self._counters:
            try:
                self._counters[key] = TiktokenCounter(key)
            except Exception as exc:  # pragma: no cover - encodings may need a download
                LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", key, exc)
                self._counters[key] = ApproxByteCounter(model_name=key)
        return self._counters[key]

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def truncate_to_tokens(text: str, limit: int | None, counter: TokenCounterProtocol) -> tuple[str, bool]:
    """Trim *text* to roughly *limit* tokens, returning ``(text, truncated)``."""

    if not text or limit is None or limit <= 0:
        return text, False
    if counter.count(text) <= limit:
        return text, False
    if isinstance(counter, TiktokenCounter):
        return counter.decode(counter.encode(text)[:limit]), True
    # approximate counters are byte based, so slice by the same ratio
    ratio = limit / max(1, counter.count(text))
    return text[: max(0, int(len(text) * ratio))], True


__all__ = [
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterProtocol",
    "TokenCounterRegistry",
    "truncate_to_tokens",
]
