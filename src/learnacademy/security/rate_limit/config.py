"""
Rate limit rule definitions.
"""

from dataclasses import dataclass, replace
from enum import Enum

from learnacademy.security.settings import get_settings


class RateLimitRuleType(str, Enum):
    """Rule families with distinct abuse costs."""

    CONTACT = "contact"
    ENROLLMENT = "enrollment"
    API = "api"
    AUTH = "auth"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class RateLimitRule:
    identifier: str
    window_seconds: int
    max_requests: int
    label: str


DEFAULT_RULES: dict[str, RateLimitRule] = {
    RateLimitRuleType.CONTACT.value: RateLimitRule("contact", 15 * 60, 3, "Contact form submissions"),
    RateLimitRuleType.ENROLLMENT.value: RateLimitRule(
        "enrollment", 30 * 60, 2, "Enrollment form submissions"
    ),
    RateLimitRuleType.API.value: RateLimitRule("api", 60, 100, "General API requests"),
    RateLimitRuleType.AUTH.value: RateLimitRule("auth", 15 * 60, 5, "Authentication attempts"),
    RateLimitRuleType.PASSWORD_RESET.value: RateLimitRule(
        "password_reset", 60 * 60, 3, "Password reset requests"
    ),
}


def load_rules(overrides: dict[str, dict[str, int]] | None = None) -> dict[str, RateLimitRule]:
    """Default rules with ``window_seconds`` / ``max_requests`` overrides applied."""
    if overrides is None:
        overrides = get_settings().rate_limit.rules

    rules = dict(DEFAULT_RULES)
    for name, values in overrides.items():
        base = rules.get(name, RateLimitRule(name, 60, 100, name))
        rules[name] = replace(
            base,
            window_seconds=values.get("window_seconds", base.window_seconds),
            max_requests=values.get("max_requests", base.max_requests),
        )
    return rules
