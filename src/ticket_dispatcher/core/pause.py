"""Process-wide pause gate: credential expiry and quota exhaustion.

The state is read once per dispatch cycle into a PauseState and the gating
decision is made from that object, so the logic can be exercised without a
live store.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta

from ticket_dispatcher.core.settings import delete_setting, get_setting, set_setting
from ticket_dispatcher.db.models import parse_dt, to_iso, utcnow

logger = logging.getLogger(__name__)

AUTH_EXPIRED = "auth_expired"
CREDITS_PAUSED_UNTIL = "credits_paused_until"
CREDITS_PAUSE_REASON = "credits_pause_reason"

HEARTBEAT_LAST_PING = "heartbeat_last_ping"
HEARTBEAT_STATUS = "heartbeat_status"
HEARTBEAT_LAST_RESULT = "heartbeat_last_result"
HEARTBEAT_LAST_COMPLETED = "heartbeat_last_completed"

REASON_MAX_CHARS = 500


@dataclass(frozen=True)
class PauseState:
    auth_expired: bool = False
    quota_paused_until: datetime | None = None
    quota_reason: str | None = None

    def quota_active(self, now: datetime) -> bool:
        return self.quota_paused_until is not None and self.quota_paused_until > now

    def quota_expired(self, now: datetime) -> bool:
        return self.quota_paused_until is not None and self.quota_paused_until <= now

    def remaining(self, now: datetime) -> timedelta:
        if not self.quota_active(now):
            return timedelta(0)
        return self.quota_paused_until - now


@dataclass(frozen=True)
class GateDecision:
    proceed: bool
    reason: str | None = None
    clear_expired_quota: bool = False


def gate(state: PauseState, now: datetime) -> GateDecision:
    """Decide whether a dispatch cycle may run."""
    if state.auth_expired:
        return GateDecision(False, "credentials expired; waiting for re-authentication")
    if state.quota_active(now):
        return GateDecision(
            False, f"quota paused until {to_iso(state.quota_paused_until)}"
        )
    return GateDecision(True, clear_expired_quota=state.quota_expired(now))


def load_pause_state(db: sqlite3.Connection) -> PauseState:
    until = get_setting(db, CREDITS_PAUSED_UNTIL)
    try:
        paused_until = parse_dt(until)
    except ValueError:
        logger.warning("Ignoring malformed %s value: %r", CREDITS_PAUSED_UNTIL, until)
        paused_until = None
    return PauseState(
        auth_expired=get_setting(db, AUTH_EXPIRED) == "true",
        quota_paused_until=paused_until,
        quota_reason=get_setting(db, CREDITS_PAUSE_REASON),
    )


def set_auth_expired(db: sqlite3.Connection):
    set_setting(db, AUTH_EXPIRED, "true")
    logger.warning("Credentials expired; dispatch halted until cleared")


def clear_auth_expired(db: sqlite3.Connection):
    delete_setting(db, AUTH_EXPIRED)
    logger.info("Auth-expired flag cleared")


def set_quota_pause(db: sqlite3.Connection, until: datetime, reason: str):
    set_setting(db, CREDITS_PAUSED_UNTIL, to_iso(until))
    set_setting(db, CREDITS_PAUSE_REASON, reason[:REASON_MAX_CHARS])
    logger.warning("Quota exhausted; paused until %s: %s", to_iso(until), reason[:100])


def set_manual_pause(db: sqlite3.Connection, now: datetime | None = None):
    """Pause indefinitely (one year) until explicitly cleared."""
    now = now or utcnow()
    set_quota_pause(db, now + timedelta(days=365), "manual")


def clear_quota_pause(db: sqlite3.Connection):
    delete_setting(db, CREDITS_PAUSED_UNTIL)
    delete_setting(db, CREDITS_PAUSE_REASON)
    logger.info("Quota pause cleared")


# ── Heartbeat ───────────────────────────────────────────────────────────────


def mark_heartbeat_running(db: sqlite3.Connection, now: datetime):
    set_setting(db, HEARTBEAT_LAST_PING, to_iso(now))
    set_setting(db, HEARTBEAT_STATUS, "running")


def mark_heartbeat_idle(
    db: sqlite3.Connection,
    now: datetime,
    dispatched: int,
    completed: int,
    skipped: int,
):
    set_setting(db, HEARTBEAT_STATUS, "idle")
    set_setting(
        db,
        HEARTBEAT_LAST_RESULT,
        json.dumps({"dispatched": dispatched, "completed": completed, "skipped": skipped}),
    )
    set_setting(db, HEARTBEAT_LAST_COMPLETED, to_iso(now))


def get_heartbeat_status(db: sqlite3.Connection) -> dict:
    raw = get_setting(db, HEARTBEAT_LAST_RESULT)
    last_result = None
    if raw:
        try:
            last_result = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed %s value", HEARTBEAT_LAST_RESULT)
    return {
        "status": get_setting(db, HEARTBEAT_STATUS) or "unknown",
        "lastPing": get_setting(db, HEARTBEAT_LAST_PING),
        "lastCompleted": get_setting(db, HEARTBEAT_LAST_COMPLETED),
        "lastResult": last_result,
        "authExpired": get_setting(db, AUTH_EXPIRED) == "true",
    }
