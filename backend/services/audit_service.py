"""Audit trail for consent and connection events.

Recording is fire-and-forget: the default recorder hands the write to a
small thread pool with its own session, and any failure is logged and
dropped.  An audit problem never changes the outcome of a link, sync or
disconnect.
"""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from config import settings
from models import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditEvent:
    """Event types written to ``audit_logs.event_type``."""

    CONSENT_GIVEN = "consent_given"
    CONSENT_REVOKED = "consent_revoked"
    BANK_CONNECTED = "bank_connected"
    BANK_LINK_FAILED = "bank_link_failed"
    BANK_DISCONNECTED = "bank_disconnected"
    BANK_SYNCED = "bank_synced"


class AuditRecorder(Protocol):
    def record(
        self,
        owner_id: str | None,
        event_type: str,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...


class NullAuditRecorder:
    """Recorder used when audit logging is disabled."""

    def record(self, owner_id, event_type, subject_id=None, metadata=None) -> None:
        return None


class DatabaseAuditRecorder:
    """Writes AuditLogEntry rows on a background thread."""

    def __init__(self, session_factory=None, max_workers: int = 2):
        self._session_factory = session_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")

    def _get_session(self):
        if self._session_factory is None:
            from database import get_session_local

            self._session_factory = get_session_local()
        return self._session_factory()

    def record(
        self,
        owner_id: str | None,
        event_type: str,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Future | None:
        try:
            return self._executor.submit(self._write, owner_id, event_type, subject_id, metadata)
        except RuntimeError:
            # Executor already shut down
            logger.warning("Audit recorder unavailable; dropped %s event", event_type)
            return None

    def _write(self, owner_id, event_type, subject_id, metadata) -> None:
        db = self._get_session()
        try:
            db.add(
                AuditLogEntry(
                    owner_id=owner_id,
                    event_type=event_type,
                    subject_id=subject_id,
                    event_metadata=json.dumps(metadata, default=str) if metadata else None,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Failed to write %s audit event", event_type, exc_info=True)
        finally:
            db.close()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_recorder: AuditRecorder | None = None


def get_audit_recorder() -> AuditRecorder:
    """Dependency returning the process-wide recorder (overridable in tests)."""
    global _recorder
    if _recorder is None:
        _recorder = DatabaseAuditRecorder() if settings.AUDIT_LOGGING_ENABLED else NullAuditRecorder()
    return _recorder


def shutdown_audit_recorder() -> None:
    """Drain pending audit writes (called on application shutdown)."""
    global _recorder
    if isinstance(_recorder, DatabaseAuditRecorder):
        _recorder.shutdown(wait=True)
    _recorder = None
