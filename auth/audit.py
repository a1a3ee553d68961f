"""
auth/audit.py -- Append-only audit trail for security-relevant events.

Every account state transition, API key lifecycle change, and security
rejection is recorded here as (kind, actor, source address, context). The
guard, key authority, and gate depend only on the AuditSink protocol, so tests
can swap in a list-backed fake.

Recording is fire-and-forget: a failed write is logged at ERROR and swallowed
so an audit outage never turns a login into a 500. Events are also mirrored to
the "sentinel.audit" logger so they reach the process log even when the table
is unreachable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEvent
from auth.store import make_engine

logger = logging.getLogger("sentinel.audit")

_CRITICAL = frozenset({"BRUTE_FORCE_DETECTED", "PRIVILEGE_ESCALATION_ATTEMPT", "SUSPICIOUS_ACTIVITY"})
_HIGH = frozenset(
    {
        "LOGIN_BLOCKED",
        "ACCOUNT_LOCKED",
        "PERMISSION_DENIED",
        "API_KEY_IP_BLOCKED",
        "API_KEY_RATE_LIMITED",
        "API_KEY_SCOPE_DENIED",
        "API_KEY_REVOKED_USE",
    }
)
_MEDIUM = frozenset(
    {
        "LOGIN_FAILED",
        "PASSWORD_RESET_REQUEST",
        "MFA_DISABLED",
        "ACCOUNT_DISABLED",
        "API_KEY_REVOKED",
        "API_KEY_EXPIRED_USE",
    }
)

_LOG_LEVELS = {"critical": logging.ERROR, "high": logging.WARNING}

# Failed logins from one address inside the lookback window before the
# address is reported as suspicious.
SUSPICIOUS_FAILURE_THRESHOLD = 3


def severity_for(kind: str) -> str:
    if kind in _CRITICAL:
        return "critical"
    if kind in _HIGH:
        return "high"
    if kind in _MEDIUM:
        return "medium"
    return "low"


class AuditSink(Protocol):
    def record(self, kind: str, actor: str, source_address: str | None, context: str = "") -> None: ...


_metadata = MetaData()

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(64), nullable=False, index=True),
    Column("actor", String(255), nullable=False, index=True),
    Column("source_address", String(64), nullable=False, server_default=""),
    Column("context", Text, nullable=False, server_default=""),
    Column("severity", String(16), nullable=False),
    Column("created_at", String(32), nullable=False, index=True),
)


class AuditLog:
    """SQLAlchemy-backed AuditSink.

    Usage:
        audit = AuditLog("sqlite:///:memory:")
        audit.record("LOGIN_FAILED", "alice", "10.0.0.7", "Invalid password")
        events = audit.list_events(actor="alice")
    """

    def __init__(self, db_url: str, clock: Callable[[], datetime] | None = None) -> None:
        self.engine = make_engine(db_url)
        _metadata.create_all(self.engine)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(self, kind: str, actor: str, source_address: str | None, context: str = "") -> None:
        severity = severity_for(kind)
        source = source_address or ""
        logger.log(
            _LOG_LEVELS.get(severity, logging.INFO),
            "%s actor=%s source=%s %s",
            kind,
            actor,
            source or "-",
            context,
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_events.insert().values(
                        kind=kind,
                        actor=actor,
                        source_address=source,
                        context=context,
                        severity=severity,
                        created_at=self._clock().isoformat(),
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception("Audit write failed for %s (actor=%s)", kind, actor)

    def list_events(
        self,
        actor: str | None = None,
        kind: str | None = None,
        source_address: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return matching events, newest first."""
        query = _audit_events.select()
        if actor is not None:
            query = query.where(_audit_events.c.actor == actor)
        if kind is not None:
            query = query.where(_audit_events.c.kind == kind)
        if source_address is not None:
            query = query.where(_audit_events.c.source_address == source_address)
        query = query.order_by(_audit_events.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def failed_login_count(self, source_address: str, since: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_audit_events)
                .where(
                    (_audit_events.c.kind == "LOGIN_FAILED")
                    & (_audit_events.c.source_address == source_address)
                    & (_audit_events.c.created_at >= since.isoformat())
                )
            ).scalar()
        return result or 0

    def detect_suspicious_activity(self, source_address: str, window_minutes: int = 15) -> bool:
        """Flag an address with repeated failed logins; records BRUTE_FORCE_DETECTED once tripped."""
        since = self._clock() - timedelta(minutes=window_minutes)
        failures = self.failed_login_count(source_address, since)
        if failures < SUSPICIOUS_FAILURE_THRESHOLD:
            return False
        self.record(
            "BRUTE_FORCE_DETECTED",
            "system",
            source_address,
            f"{failures} failed logins in {window_minutes} minutes",
        )
        return True

    def close(self) -> None:
        self.engine.dispose()


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        kind=row.kind,
        actor=row.actor,
        source_address=row.source_address,
        context=row.context,
        severity=row.severity,
        created_at=datetime.fromisoformat(row.created_at),
    )
