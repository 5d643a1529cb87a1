"""Retry policies and failure classification for background builds."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, replace
from typing import Any, Dict

import httpx

from memdex.errors import BuildCancelled, ConfigError

DEFAULT_TEMPLATE = "balanced"

ERROR_CLASSES = ("auth", "rate_limit", "network", "config", "runtime", "canceled", "unknown")
RETRYABLE_CLASSES = frozenset({"network", "rate_limit"})


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How often and how fast a failed build is attempted again."""

    template: str = DEFAULT_TEMPLATE
    strategy: str = "exponential"
    retry_delay_ms: int = 800
    max_delay_ms: int = 6000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.15
    max_retries: int = 2

    def normalized(self) -> "RetryPolicy":
        """Clamp every field into its valid range."""
        delay = max(0, int(self.retry_delay_ms))
        return replace(
            self,
            strategy="exponential" if str(self.strategy).lower() == "exponential" else "fixed",
            retry_delay_ms=delay,
            max_delay_ms=max(delay, int(self.max_delay_ms)),
            backoff_multiplier=max(1.0, float(self.backoff_multiplier)),
            jitter_ratio=min(0.9, max(0.0, float(self.jitter_ratio))),
            max_retries=max(0, int(self.max_retries)),
        )

    def delay_ms(self, attempts: int) -> int:
        """Wait before the retry that follows attempt number ``attempts``."""
        delay = float(self.retry_delay_ms)
        if self.strategy == "exponential":
            delay *= self.backoff_multiplier ** max(0, attempts - 1)
        delay = min(delay, float(self.max_delay_ms))
        if self.jitter_ratio > 0:
            delay *= 1 + random.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0, round(delay))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template": self.template,
            "strategy": self.strategy,
            "retryDelayMs": self.retry_delay_ms,
            "maxDelayMs": self.max_delay_ms,
            "backoffMultiplier": self.backoff_multiplier,
            "jitterRatio": self.jitter_ratio,
            "maxRetries": self.max_retries,
        }


RETRY_TEMPLATES: Dict[str, RetryPolicy] = {
    "conservative": RetryPolicy("conservative", "fixed", 1500, 1500, 1.0, 0.0, 1),
    "balanced": RetryPolicy("balanced", "exponential", 800, 6000, 2.0, 0.15, 2),
    "aggressive": RetryPolicy("aggressive", "exponential", 500, 8000, 1.8, 0.25, 4),
}


def template_name(value: str | None, default: str = DEFAULT_TEMPLATE) -> str:
    """Validate a template name; empty means ``default``."""
    name = str(value or "").strip().lower() or default
    if name not in RETRY_TEMPLATES:
        choices = ", ".join(RETRY_TEMPLATES)
        raise ConfigError(f"Unknown retry template {value!r} (expected one of: {choices})")
    return name


def resolve_retry_policy(template: str | None = None, *, default: str = DEFAULT_TEMPLATE, **overrides: Any) -> RetryPolicy:
    """Start from a named template and apply every non-None override."""
    base = RETRY_TEMPLATES[template_name(template, default)]
    values = {key: value for key, value in overrides.items() if value is not None}
    return replace(base, **values).normalized()


def _status_code(exc: BaseException) -> int | None:
    current: BaseException | None = exc
    while current is not None:
        code = getattr(current, "status_code", None)
        if isinstance(code, int):
            return code
        current = current.__cause__
    return None


def _transport_failure(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, (httpx.TransportError, ConnectionError, TimeoutError)):
            return True
        current = current.__cause__
    return False


def classify_error(exc: BaseException) -> str:
    """Bucket a build failure into one of :data:`ERROR_CLASSES`."""
    if isinstance(exc, BuildCancelled):
        return "canceled"
    if isinstance(exc, ConfigError):
        return "config"
    code = _status_code(exc)
    if code in (401, 403):
        return "auth"
    if code == 429:
        return "rate_limit"
    if code is not None and code >= 500:
        return "network"
    if _transport_failure(exc):
        return "network"

    message = str(exc).lower()
    if not message:
        return "unknown"
    if "abort" in message or "canceled" in message:
        return "canceled"
    if any(word in message for word in ("401", "403", "api key", "unauthorized")):
        return "auth"
    if "429" in message or "rate limit" in message:
        return "rate_limit"
    if any(word in message for word in ("econn", "network", "fetch", "timeout")):
        return "network"
    if any(word in message for word in ("missing", "unknown provider", "invalid")):
        return "config"
    return "runtime"


def is_retryable(error_class: str) -> bool:
    return error_class in RETRYABLE_CLASSES


_URL = re.compile(r"https?://\S+")
_QUOTED = re.compile(r"['\"`].{1,80}?['\"`]")
_HEX_ID = re.compile(r"[a-f0-9]{8,}")
_NUMBER = re.compile(r"\b\d+\b")
_SPACE = re.compile(r"\s+")


def normalize_error_message(message: str) -> str:
    """Strip the volatile parts of an error so similar failures group together."""
    text = str(message or "").lower()
    text = _URL.sub("<url>", text)
    text = _QUOTED.sub("<quoted>", text)
    text = _HEX_ID.sub("<id>", text)
    text = _NUMBER.sub("<n>", text)
    return _SPACE.sub(" ", text).strip()[:180]


def cluster_key(error_class: str | None, message: str | None) -> str:
    return f"{error_class or 'unknown'}:{normalize_error_message(message or '') or '<empty>'}"
