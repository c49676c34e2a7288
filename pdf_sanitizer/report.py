from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

import pandas as pd

from .schema import ItemStatus, PipelineState, StageOutcome

logger = logging.getLogger(__name__)


@dataclass
class ItemReport:
    """Final record for one work item."""

    position: int
    input_path: Path
    output_path: Path
    status: ItemStatus
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    encrypted: bool = False
    outcomes: List[StageOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_state(cls, position: int, state: PipelineState) -> "ItemReport":
        return cls(
            position=position,
            input_path=state.item.input_path,
            output_path=state.item.output_path,
            status=state.status,
            reason=state.reason,
            started_at=state.started_at,
            finished_at=state.finished_at,
            encrypted=state.was_encrypted,
            outcomes=list(state.outcomes),
            warnings=list(state.warnings),
        )

    def summary(self) -> str:
        return f"{self.input_path.name}: {self.status.value} ({self.reason or 'ok'})"


class RunReport:
    """
    Append-only collection of item reports.

    Appends are locked so worker threads can record concurrently; reads
    always return items in work-item order.
    """

    def __init__(self) -> None:
        self._items: List[ItemReport] = []
        self._lock = threading.Lock()

    def add(self, report: ItemReport) -> None:
        with self._lock:
            self._items.append(report)

    @property
    def items(self) -> List[ItemReport]:
        with self._lock:
            return sorted(self._items, key=lambda r: r.position)

    def count(self, status: ItemStatus) -> int:
        return sum(1 for r in self.items if r.status == status)

    @property
    def has_failures(self) -> bool:
        return self.count(ItemStatus.FAILED) > 0

    def totals(self) -> str:
        return (
            f"{self.count(ItemStatus.SUCCEEDED)} succeeded, "
            f"{self.count(ItemStatus.SKIPPED)} skipped, "
            f"{self.count(ItemStatus.FAILED)} failed"
        )

    def to_dataframe(self) -> pd.DataFrame:
        """
        One row per item.

        Columns: input, output, status, reason, encrypted, started_at,
        finished_at, stages, warnings
        """
        rows: List[dict[str, Any]] = []
        for res in self.items:
            rows.append(
                {
                    "input": str(res.input_path),
                    "output": str(res.output_path),
                    "status": res.status.value,
                    "reason": res.reason,
                    "encrypted": res.encrypted,
                    "started_at": res.started_at,
                    "finished_at": res.finished_at,
                    "stages": "; ".join(f"{o.stage.value}:{o.kind.value}" for o in res.outcomes),
                    "warnings": "; ".join(res.warnings),
                }
            )
        return pd.DataFrame(rows)

    def stages_dataframe(self) -> pd.DataFrame:
        """One row per stage outcome."""
        rows: List[dict[str, Any]] = []
        for res in self.items:
            for outcome in res.outcomes:
                rows.append(
                    {
                        "input": str(res.input_path),
                        "stage": outcome.stage.value,
                        "result": outcome.kind.value,
                        "detail": outcome.detail,
                        "started_at": outcome.started_at,
                        "finished_at": outcome.finished_at,
                    }
                )
        return pd.DataFrame(
            rows, columns=["input", "stage", "result", "detail", "started_at", "finished_at"]
        )

    def to_excel(self, output_path: Path) -> None:
        """Write sheets 'items' and 'stages'."""
        items = _without_tz(self.to_dataframe())
        stages = _without_tz(self.stages_dataframe())
        output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing run report to %s", output_path)
        with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
            items.to_excel(writer, sheet_name="items", index=False)
            stages.to_excel(writer, sheet_name="stages", index=False)

    def to_csv(self, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Writing run report to %s", output_path)
        self.to_dataframe().to_csv(output_path, index=False)

    def write(self, output_path: Path) -> None:
        if output_path.suffix.lower() in (".xlsx", ".xlsm"):
            self.to_excel(output_path)
        else:
            self.to_csv(output_path)


def _without_tz(df: pd.DataFrame) -> pd.DataFrame:
    # Excel cannot store timezone-aware datetimes.
    for column in ("started_at", "finished_at"):
        if column in df.columns:
            df[column] = pd.to_datetime(df[column], utc=True).dt.tz_localize(None)
    return df
