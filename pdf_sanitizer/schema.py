from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageName(str, Enum):
    UNLOCK = "unlock"
    SANITIZE = "sanitize"
    ATTACHMENT_STRIP = "attachment_strip"
    METADATA_STRIP = "metadata_strip"
    REWRITE = "rewrite"
    RELOCK = "relock"


# Snapshot tags for the stages that produce a working artifact.
SNAPSHOT_STEP_NUMBERS = {
    StageName.SANITIZE: 1,
    StageName.ATTACHMENT_STRIP: 2,
    StageName.METADATA_STRIP: 3,
}


class OutcomeKind(str, Enum):
    APPLIED = "applied"
    APPLIED_WITH_WARNING = "applied_with_warning"
    SKIPPED = "skipped"


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SKIPPED = "skipped"
    FAILED = "failed"
    SUCCEEDED = "succeeded"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.SKIPPED, ItemStatus.FAILED, ItemStatus.SUCCEEDED)


@dataclass(frozen=True)
class WorkItem:
    """One input/output pair, fixed before processing starts."""

    input_path: Path
    output_path: Path
    relative_dir: Optional[Path] = None  # set in batch mode with mirroring

    @property
    def label(self) -> str:
        return self.input_path.name


@dataclass(frozen=True)
class AttachmentRecord:
    path: Path


@dataclass(frozen=True)
class StageOutcome:
    stage: StageName
    started_at: datetime
    finished_at: datetime
    kind: OutcomeKind
    detail: Optional[str] = None


@dataclass
class PipelineState:
    """
    Mutable per-item state, owned by the orchestrator thread processing the item.

    Stages only move forward; outcomes are append-only.
    """

    item: WorkItem
    artifact: Path
    stage: Optional[StageName] = None
    password: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    reason: Optional[str] = None
    outcomes: List[StageOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    attachments: List[AttachmentRecord] = field(default_factory=list)
    temp_paths: List[Path] = field(default_factory=list)
    work_dir: Optional[Path] = None
    was_encrypted: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def advance(self, stage: StageName) -> None:
        order = list(StageName)
        if self.stage is not None and order.index(stage) <= order.index(self.stage):
            raise ValueError(f"stage {stage.value} does not follow {self.stage.value}")
        self.stage = stage

    def record(
        self,
        stage: StageName,
        started_at: datetime,
        kind: OutcomeKind,
        detail: Optional[str] = None,
    ) -> StageOutcome:
        outcome = StageOutcome(
            stage=stage,
            started_at=started_at,
            finished_at=utcnow(),
            kind=kind,
            detail=detail,
        )
        self.outcomes.append(outcome)
        return outcome

    def finish(self, status: ItemStatus, reason: Optional[str] = None) -> None:
        if self.status.is_terminal:
            raise ValueError(f"item already finished as {self.status.value}")
        self.status = status
        self.reason = reason
        self.finished_at = utcnow()
        self.password = None
