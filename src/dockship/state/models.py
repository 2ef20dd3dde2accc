"""Data models for the deployment ledger."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Outcome(str, Enum):
    """State of one deploy attempt."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self is not Outcome.IN_PROGRESS


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_deploy_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class DeploymentRecord:
    """One row of the ledger.

    A deploy attempt is written at least twice: once when it starts
    (``in_progress``) and once with its outcome. The latest row for a
    ``deploy_id`` is the attempt's current state.
    """

    deploy_id: str
    service: str
    image: str
    outcome: Outcome = Outcome.IN_PROGRESS
    digest: Optional[str] = None
    image_ref: Optional[str] = None          # pinned reference, usable for rollback
    previous_digest: Optional[str] = None
    started_at: str = field(default_factory=utcnow)
    finished_at: Optional[str] = None
    step: Optional[str] = None
    error: Optional[str] = None
    retries: Dict[str, int] = field(default_factory=dict)
    descriptor_path: Optional[str] = None
    rollback_of: Optional[str] = None        # deploy_id this rollback reverted

    @property
    def retry_count(self) -> int:
        return sum(self.retries.values())

    def evolve(self, **changes: Any) -> "DeploymentRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        return cls(
            deploy_id=data["deploy_id"],
            service=data["service"],
            image=data.get("image", ""),
            outcome=Outcome(data.get("outcome", Outcome.IN_PROGRESS.value)),
            digest=data.get("digest"),
            image_ref=data.get("image_ref"),
            previous_digest=data.get("previous_digest"),
            started_at=data.get("started_at", ""),
            finished_at=data.get("finished_at"),
            step=data.get("step"),
            error=data.get("error"),
            retries=dict(data.get("retries") or {}),
            descriptor_path=data.get("descriptor_path"),
            rollback_of=data.get("rollback_of"),
        )


@dataclass
class ServiceStatus:
    """Summary of a service derived from its ledger rows."""

    service: str
    current: Optional[DeploymentRecord] = None
    last_success: Optional[DeploymentRecord] = None
    attempts: int = 0

    @property
    def in_progress(self) -> bool:
        return self.current is not None and self.current.outcome is Outcome.IN_PROGRESS
