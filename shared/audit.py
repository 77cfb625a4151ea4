"""
Audit sink.

Audit persistence is owned by another subsystem; this engine only
emits entries through an AuditSink. Recording is fire-and-forget: a
failing sink is logged as a warning and never fails the domain
operation that produced the entry.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """
    One audit record.

    Attributes:
        actor_id: User that performed the action
        action: Dotted action name, e.g. ``facility.reservation.approve``
        target_type: Kind of object acted upon
        target_id: Id of that object
        success: Whether the action went through
        reason: Free text reason supplied by the actor or the failure message
        error_code: Taxonomy code of a failed action
        diff: Before/after values
    """
    actor_id: Optional[int]
    action: str
    target_type: str
    target_id: Any
    success: bool = True
    reason: Optional[str] = None
    error_code: Optional[str] = None
    diff: Optional[dict] = None


class AuditSink:
    """Interface of the external audit log writer."""

    def record(self, entry: AuditEntry):
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """Default sink: writes entries to the ``facility.audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger("facility.audit")

    def record(self, entry: AuditEntry):
        self.logger.info("audit %s", asdict(entry))


class MemoryAuditSink(AuditSink):
    """Keeps entries in a list; used by scripts and tests."""

    def __init__(self):
        self.entries: List[AuditEntry] = []

    def record(self, entry: AuditEntry):
        self.entries.append(entry)

    def actions(self) -> List[str]:
        return [e.action for e in self.entries]


default_sink = LoggingAuditSink()


def get_audit_sink() -> AuditSink:
    """FastAPI dependency returning the process audit sink."""
    return default_sink


def record_audit(sink: Optional[AuditSink], **kwargs) -> bool:
    """
    Record an audit entry without ever raising.

    Args:
        sink: Target sink; None disables auditing
        **kwargs: AuditEntry fields

    Returns:
        bool: True if the sink accepted the entry
    """
    if sink is None:
        return False
    entry = AuditEntry(**kwargs)
    try:
        sink.record(entry)
        return True
    except Exception as e:
        logger.warning(f"Audit write failed for {entry.action} {entry.target_type}:{entry.target_id}: {e}")
        return False
