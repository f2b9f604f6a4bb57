"""Failure classification for agent runs: credential expiry and quota exhaustion."""

import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class ErrorCategory(str, enum.Enum):
    AUTH_EXPIRED = "auth_expired"
    QUOTA_EXHAUSTED = "quota_exhausted"


@dataclass(frozen=True)
class Rule:
    pattern: re.Pattern
    category: ErrorCategory


def _rule(regex: str, category: ErrorCategory) -> Rule:
    return Rule(re.compile(regex, re.IGNORECASE), category)


AUTH_RULES = [
    _rule(r"oauth token (?:has )?expired", ErrorCategory.AUTH_EXPIRED),
    _rule(r"authentication_error", ErrorCategory.AUTH_EXPIRED),
    _rule(r"invalid api key", ErrorCategory.AUTH_EXPIRED),
    _rule(r"please run /login", ErrorCategory.AUTH_EXPIRED),
    _rule(r"not logged in", ErrorCategory.AUTH_EXPIRED),
    _rule(r"\b401\b", ErrorCategory.AUTH_EXPIRED),
]

QUOTA_RULES = [
    _rule(r"hit your limit", ErrorCategory.QUOTA_EXHAUSTED),
    _rule(r"rate limit", ErrorCategory.QUOTA_EXHAUSTED),
    _rule(r"out of credits", ErrorCategory.QUOTA_EXHAUSTED),
    _rule(r"\b429\b", ErrorCategory.QUOTA_EXHAUSTED),
    _rule(r"quota exceeded", ErrorCategory.QUOTA_EXHAUSTED),
    _rule(r"billing", ErrorCategory.QUOTA_EXHAUSTED),
    _rule(r"usage cap", ErrorCategory.QUOTA_EXHAUSTED),
]


class ErrorClassifier:
    """Ordered rule table. The first matching rule wins."""

    def __init__(self, rules: list[Rule] | None = None):
        # Auth before quota: an expired token can surface alongside a 429.
        self.rules = list(rules) if rules is not None else AUTH_RULES + QUOTA_RULES

    def add_rule(self, regex: str, category: ErrorCategory):
        self.rules.append(_rule(regex, category))

    def classify(self, stderr: str) -> ErrorCategory | None:
        """Match the error stream only. Agent stdout is work output and may quote anything."""
        for rule in self.rules:
            if rule.pattern.search(stderr):
                return rule.category
        return None


_RESET_RE = re.compile(
    r"resets\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s+\(([^)]+)\)", re.IGNORECASE
)


def parse_reset_time(text: str, now: datetime) -> datetime | None:
    """Parse "resets 9pm (America/Mexico_City)" into an aware UTC datetime.

    Returns that wall-clock time today in the named zone, or tomorrow if it has
    already passed. None when nothing matches or the zone is unknown.
    """
    match = _RESET_RE.search(text)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    ampm = match.group(3).lower()
    zone_name = match.group(4).strip()
    if hour > 12 or minute > 59:
        return None
    if ampm == "pm" and hour != 12:
        hour += 12
    if ampm == "am" and hour == 12:
        hour = 0

    try:
        zone = ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone in reset notice: %s", zone_name)
        return None

    local_now = now.astimezone(zone)
    reset = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if reset <= local_now:
        reset = reset + timedelta(days=1)
    return reset.astimezone(timezone.utc)


def compute_pause_until(text: str, now: datetime) -> datetime:
    """Parsed reset time, falling back to one hour from now."""
    parsed = parse_reset_time(text, now)
    if parsed is not None:
        return parsed
    return now + timedelta(hours=1)
