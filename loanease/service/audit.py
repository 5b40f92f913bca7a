from __future__ import annotations

from typing import List, Optional, Protocol

from loanease.logging import get_logger
from loanease.service.clock import Clock, SystemClock
from loanease.storage.errors import StorageUnavailable
from loanease.storage.models import AuditEntry

logger = get_logger(__name__)


class AuditSink(Protocol):
    def append(self, entry: AuditEntry) -> None: ...


class AuditStore(Protocol):
    def append_audit_entry(self, entry: AuditEntry) -> None: ...


class StoreAuditSink:
    """Audit sink that writes entries to the primary store."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def append(self, entry: AuditEntry) -> None:
        self.store.append_audit_entry(entry)


class MemoryAuditSink:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


def record_audit(
    sink: Optional[AuditSink],
    action: str,
    *,
    clock: Optional[Clock] = None,
    actor_user_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    description: Optional[str] = None,
    table_name: str = "auth",
) -> Optional[AuditEntry]:
    """Append an audit entry; failures are logged and never propagate."""
    if sink is None:
        return None
    entry = AuditEntry(
        action=action,
        timestamp=(clock or SystemClock()).now(),
        actor_user_id=actor_user_id,
        subject_id=subject_id,
        ip_address=ip_address,
        table_name=table_name,
        description=description,
        user_agent=user_agent,
    )
    try:
        sink.append(entry)
    except (StorageUnavailable, OSError, ValueError) as exc:
        logger.warning(
            "audit_append_failed",
            action=action,
            subject_id=subject_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None
    return entry
