from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

AuditAction = Literal["initiate", "callback", "refresh", "revoke", "error"]


@dataclass(frozen=True)
class AuditEvent:
    """Immutable record of a security-relevant OAuth action.

    ``timestamp`` and ``environment`` are left empty by callers and stamped by
    the audit pipeline right before the record is written.
    """

    user_id: str
    organization_id: str
    platform: str
    action: AuditAction
    success: bool
    ip: str
    user_agent: str
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    environment: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        if self.timestamp is not None:
            record["timestamp"] = self.timestamp.isoformat()
        return record


@dataclass(frozen=True)
class RateWindow:
    """Result of one atomic admission attempt against a tumbling window."""

    count: int
    reset_ms: int


@dataclass(frozen=True)
class SweepReport:
    audit_deleted: int = 0
    keys_removed: int = 0
    errors: tuple[str, ...] = ()
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
