"""
PII redaction pipeline.

An ordered list of pattern -> replacement rules applied to log text, plus a
key-based pass that blanks values stored under sensitive keys.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

REDACTED = "[REDACTED]"

# Matched against the last word of a key, so ``api_key`` and ``access_token``
# are blanked while ``key_id``, ``api_key_name`` and ``token_type`` are kept.
SENSITIVE_KEYS: tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "key",
    "authorization",
    "credentials",
    "cookie",
)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_KEY_SEPARATORS = re.compile(r"[_\-.\s]+")


@dataclass(frozen=True)
class RedactionRule:
    """A single pattern -> replacement rule."""

    name: str
    pattern: re.Pattern[str]
    replacement: str

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


def _rule(name: str, pattern: str, replacement: str, flags: int = 0) -> RedactionRule:
    return RedactionRule(name=name, pattern=re.compile(pattern, flags), replacement=replacement)


DEFAULT_RULES: tuple[RedactionRule, ...] = (
    _rule("email", r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", "***@***.***"),
    _rule("card_number", r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b", "****-****-****-****"),
    _rule("ssn", r"\b\d{3}-\d{2}-\d{4}\b", "***-**-****"),
    _rule("phone", r"\b\d{10,12}\b", "***********"),
    _rule(
        "credential",
        r"(password|passwd|pwd|secret|key|token)[\"\s:=]+[^\s\"]+",
        r"\1: " + REDACTED,
        re.IGNORECASE,
    ),
    _rule(
        "authorization",
        r"(authorization|auth)[\"\s:=]+(bearer\s+)?[^\s\"]+",
        r"\1: " + REDACTED,
        re.IGNORECASE,
    ),
)


class Redactor:
    """Applies redaction rules to strings and nested containers."""

    def __init__(
        self,
        rules: Iterable[RedactionRule] = DEFAULT_RULES,
        sensitive_keys: Iterable[str] = SENSITIVE_KEYS,
    ) -> None:
        self.rules = list(rules)
        self.sensitive_keys = tuple(k.lower() for k in sensitive_keys)

    def is_sensitive_key(self, key: str) -> bool:
        words = [w for w in _KEY_SEPARATORS.split(_CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()) if w]
        return bool(words) and words[-1] in self.sensitive_keys

    def redact_text(self, text: str) -> str:
        for rule in self.rules:
            text = rule.apply(text)
        return text

    def redact(self, value: Any) -> Any:
        """Return a redacted copy of ``value``."""
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, Mapping):
            return {
                k: REDACTED if isinstance(k, str) and self.is_sensitive_key(k) else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, list | tuple):
            return type(value)(self.redact(v) for v in value)
        return value


default_redactor = Redactor()


# Keys structlog itself adds; never rewritten.
_STRUCTLOG_KEYS = frozenset({"event", "level", "logger", "timestamp", "exc_info", "stack_info"})


def redact_event_dict(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor scrubbing PII from every log entry."""
    redacted: dict[str, Any] = {}
    for key, value in event_dict.items():
        if key in _STRUCTLOG_KEYS:
            redacted[key] = value
        elif default_redactor.is_sensitive_key(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = default_redactor.redact(value)
    return redacted
