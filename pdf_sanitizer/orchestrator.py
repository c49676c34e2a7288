from __future__ import annotations

import logging
import re
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .config import RunConfig
from .errors import (
    DisposalWarning,
    EncryptionError,
    RelockWarning,
    SideActionWarning,
    SnapshotWarning,
    StageError,
)
from .password import PasswordProvider, TerminalPasswordPrompt
from .report import ItemReport, RunReport
from .schema import (
    SNAPSHOT_STEP_NUMBERS,
    AttachmentRecord,
    ItemStatus,
    OutcomeKind,
    PipelineState,
    StageName,
    WorkItem,
    utcnow,
)
from .stages import Stage, StageContext, StageSet, default_stages

logger = logging.getLogger(__name__)

PASSWORD_TIMEOUT_REASON = "password timeout"
DECRYPTION_FAILED_REASON = "decryption failed"
DRY_RUN_REASON = "would process"


def _safe_stem(path: Path) -> str:
    s = re.sub(r"[^A-Za-z0-9._-]+", "_", path.stem)
    s = re.sub(r"_+", "_", s).strip("_")
    return s or "pdf"


def unique_target(directory: Path, name: str) -> Path:
    """First free path for `name` in `directory`, adding _1, _2, ... on collision."""
    candidate = directory / name
    stem, suffix = Path(name).stem, Path(name).suffix
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{n}{suffix}"
        n += 1
    return candidate


class SanitizationOrchestrator:
    """
    Drives every work item through the sanitization state machine.

    Items are independent: a skip or failure is recorded for that item and
    the run moves on to the next one.
    """

    def __init__(
        self,
        config: RunConfig,
        stages: StageSet | None = None,
        password_provider: PasswordProvider | None = None,
        report: RunReport | None = None,
    ):
        self.config = config
        self.stages = stages or default_stages()
        self.password_provider = password_provider or TerminalPasswordPrompt()
        self.report = report or RunReport()
        self._disposal_lock = threading.Lock()

    def run(self, items: Sequence[WorkItem], *, workers: int = 1) -> RunReport:
        """
        Process all items and return the run report.

        With `workers > 1` items are processed in a thread pool; the report
        still lists them in work-item order.
        """
        if workers <= 1 or len(items) <= 1:
            for position, item in enumerate(items):
                self.report.add(self.process(item, position))
            return self.report

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.process, item, position): item
                for position, item in enumerate(items)
            }
            for future in as_completed(futures):
                self.report.add(future.result())
        return self.report

    def process(self, item: WorkItem, position: int = 0) -> ItemReport:
        state = PipelineState(item=item, artifact=item.input_path)
        logger.info("Processing: %s -> %s", item.input_path, item.output_path)

        if self.config.dry_run:
            logger.info("[DRY RUN] Would process: %s -> %s", item.input_path, item.output_path)
            state.finish(ItemStatus.SUCCEEDED, DRY_RUN_REASON)
            return ItemReport.from_state(position, state)

        state.status = ItemStatus.IN_PROGRESS
        try:
            status, reason = self._execute(state)
        except Exception as exc:
            logger.exception("Unexpected error while processing %s", item.input_path)
            status, reason = ItemStatus.FAILED, f"unexpected error: {exc}"
        finally:
            self._cleanup(state)

        state.finish(status, reason)
        if status == ItemStatus.SUCCEEDED:
            logger.info("Sanitization complete. Output: %s", item.output_path)
        elif status == ItemStatus.SKIPPED:
            logger.warning("Skipped %s: %s", item.input_path, reason)
        else:
            logger.error("Failed %s: %s", item.input_path, reason)
        return ItemReport.from_state(position, state)

    # state machine

    def _execute(self, state: PipelineState) -> Tuple[ItemStatus, Optional[str]]:
        item = state.item
        try:
            encrypted = self.stages.probe.is_encrypted(item.input_path)
        except StageError as exc:
            return ItemStatus.FAILED, f"encryption check: {exc}"

        try:
            state.work_dir = self._make_work_dir(item)
        except OSError as exc:
            return ItemStatus.FAILED, f"cannot create working directory: {exc}"

        if encrypted:
            state.was_encrypted = True
            logger.info("PDF is locked/encrypted: %s", item.input_path)
            try:
                self._unlock(state)
            except EncryptionError as exc:
                return ItemStatus.SKIPPED, str(exc)
        else:
            logger.info("PDF is not encrypted: %s", item.input_path)

        for stage in [*self.stages.sanitizing_stages(), self.stages.rewrite]:
            try:
                self._run_stage(state, stage)
            except StageError as exc:
                return ItemStatus.FAILED, f"{exc.stage}: {exc}"

        if not item.output_path.exists():
            return ItemStatus.FAILED, f"{StageName.REWRITE.value}: output missing at {item.output_path}"

        self._relock(state)
        return ItemStatus.SUCCEEDED, None

    def _make_work_dir(self, item: WorkItem) -> Path:
        root = self.config.work_dir
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{_safe_stem(item.input_path)}_", dir=root))

    def _context(self, state: PipelineState, password: Optional[str] = None) -> StageContext:
        work_dir = state.work_dir
        if work_dir is None:
            raise RuntimeError(f"no working directory for {state.item.input_path}")
        return StageContext(
            config=self.config,
            item=state.item,
            work_dir=work_dir,
            password=password if password is not None else state.password,
        )

    def _unlock(self, state: PipelineState) -> None:
        item = state.item
        timeout = self.config.password_timeout
        state.advance(StageName.UNLOCK)
        started = utcnow()

        logger.info("Prompting for password for %s (timeout: %d seconds)...", item.input_path, timeout)
        password = self.password_provider.request(item, timeout)
        if password is None:
            state.record(StageName.UNLOCK, started, OutcomeKind.SKIPPED, PASSWORD_TIMEOUT_REASON)
            logger.warning(
                "No password entered for %s after %d seconds. Skipping file.", item.input_path, timeout
            )
            raise EncryptionError(PASSWORD_TIMEOUT_REASON, item=item.input_path, stage=StageName.UNLOCK.value)

        result = self.stages.unlock.run(item.input_path, self._context(state, password))
        if result.artifact is not None and result.artifact != item.input_path:
            state.temp_paths.append(result.artifact)
        if not result.ok:
            state.record(StageName.UNLOCK, started, OutcomeKind.SKIPPED, str(result.failure))
            logger.warning("Failed to unlock PDF %s: %s", item.input_path, result.failure)
            raise EncryptionError(
                DECRYPTION_FAILED_REASON,
                item=item.input_path,
                stage=StageName.UNLOCK.value,
                details={"cause": str(result.failure)},
            )

        state.password = password
        state.artifact = result.artifact or item.input_path
        kind = OutcomeKind.APPLIED_WITH_WARNING if result.warning else OutcomeKind.APPLIED
        state.record(StageName.UNLOCK, started, kind, result.warning)
        logger.info("Successfully unlocked PDF: %s", item.input_path)

    def _run_stage(self, state: PipelineState, stage: Stage) -> None:
        item = state.item
        state.advance(stage.name)
        started = utcnow()
        logger.info("Running %s on %s", stage.name.value, item.input_path.name)

        result = stage.run(state.artifact, self._context(state))
        if not result.ok:
            failure = result.failure
            raise StageError(
                str(failure),
                item=item.input_path,
                stage=stage.name.value,
                details={"code": failure.code, **(failure.detail or {})},
            )

        artifact = result.artifact or state.artifact
        if artifact not in (item.input_path, item.output_path) and artifact not in state.temp_paths:
            state.temp_paths.append(artifact)
        state.artifact = artifact

        if stage.name == StageName.ATTACHMENT_STRIP:
            self._dispose_attachments(state, result.attachments)

        backup = stage.backup_path(artifact)
        if backup is not None and backup.exists():
            self._discard_backup(state, backup)

        kind = OutcomeKind.APPLIED_WITH_WARNING if result.warning else OutcomeKind.APPLIED
        state.record(stage.name, started, kind, result.warning or result.note)
        if result.warning:
            state.warnings.append(f"{stage.name.value}: {result.warning}")
            logger.warning("%s on %s: %s", stage.name.value, item.input_path.name, result.warning)
        else:
            logger.info("%s on %s: %s", stage.name.value, item.input_path.name, result.note or "done")

        self._snapshot(state, stage.name)

    def _discard_backup(self, state: PipelineState, backup: Path) -> None:
        try:
            backup.unlink()
        except OSError as exc:
            # Cleanup tries again.
            state.temp_paths.append(backup)
            self._warn(state, DisposalWarning(f"could not discard backup {backup.name}: {exc}"))
            return
        logger.info("Discarded pre-scrub backup %s", backup.name)

    def _relock(self, state: PipelineState) -> None:
        item = state.item
        state.advance(StageName.RELOCK)
        started = utcnow()
        if not self.config.relock_cleaned:
            state.record(StageName.RELOCK, started, OutcomeKind.SKIPPED, "relock disabled")
            return
        if state.password is None:
            state.record(StageName.RELOCK, started, OutcomeKind.SKIPPED, "no password recovered")
            logger.info("Not relocking %s: input was not encrypted", item.output_path)
            return

        logger.info("Relocking sanitized PDF with original password: %s", item.output_path)
        result = self.stages.relock.run(item.output_path, self._context(state))
        if not result.ok:
            state.record(StageName.RELOCK, started, OutcomeKind.SKIPPED, f"relock failed: {result.failure}")
            self._warn(
                state,
                RelockWarning(
                    f"Failed to relock PDF {item.output_path}: {result.failure}",
                    item=item.input_path,
                    stage=StageName.RELOCK.value,
                ),
            )
            return
        state.record(StageName.RELOCK, started, OutcomeKind.APPLIED, result.note)
        logger.info("PDF relocked: %s", item.output_path)

    # side actions

    def _warn(self, state: PipelineState, warning: SideActionWarning) -> None:
        state.warnings.append(str(warning))
        logger.warning("%s", warning)

    def _snapshot(self, state: PipelineState, stage_name: StageName) -> None:
        step = SNAPSHOT_STEP_NUMBERS.get(stage_name)
        if step is None or not self.config.save_intermediate:
            return
        out = state.item.output_path
        target = out.with_name(f"{out.stem}_step{step}{out.suffix or '.pdf'}")
        try:
            shutil.copy2(state.artifact, target)
        except OSError as exc:
            self._warn(
                state,
                SnapshotWarning(
                    f"Could not save intermediate PDF for step {step}: {exc}",
                    item=state.item.input_path,
                    stage=stage_name.value,
                ),
            )
            return
        logger.info("Saved intermediate PDF for step %d: %s", step, target)

    def _dispose_attachments(self, state: PipelineState, records: List[AttachmentRecord]) -> None:
        state.attachments = list(records)
        if not records:
            return

        destination = self.config.attachment_dir
        if destination is not None:
            try:
                destination.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                self._warn(state, DisposalWarning(f"Cannot create attachment directory {destination}: {exc}"))
                return
            for record in records:
                # Items running in parallel may extract files with the same name.
                with self._disposal_lock:
                    target = unique_target(destination, record.path.name)
                    try:
                        shutil.move(str(record.path), str(target))
                    except OSError as exc:
                        self._warn(state, DisposalWarning(f"Could not move attachment {record.path.name}: {exc}"))
                        continue
                logger.info("Moved attachment: %s -> %s", record.path.name, target)
        elif self.config.delete_attachments:
            for record in records:
                try:
                    record.path.unlink()
                except OSError as exc:
                    self._warn(state, DisposalWarning(f"Could not delete attachment {record.path.name}: {exc}"))
                    continue
                logger.info("Deleted attachment: %s", record.path.name)
        else:
            logger.info(
                "Left %d attachment(s) in %s", len(records), records[0].path.parent
            )

    def _cleanup(self, state: PipelineState) -> None:
        """Remove temporary artifacts; extracted attachments that were left in place survive."""
        item = state.item
        logger.info("Cleaning up temporary files for %s", item.input_path.name)
        protected = {item.input_path, item.output_path}

        for path in state.temp_paths:
            if path in protected:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                self._warn(state, DisposalWarning(f"Could not remove temporary file {path}: {exc}"))

        work_dir = state.work_dir
        if work_dir is None or not work_dir.exists():
            return
        keep = {record.path.parent for record in state.attachments if record.path.exists()}
        for child in work_dir.iterdir():
            if child in keep or child in protected:
                continue
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as exc:
                self._warn(state, DisposalWarning(f"Could not remove temporary file {child}: {exc}"))
        if not keep:
            try:
                work_dir.rmdir()
            except OSError as exc:
                self._warn(state, DisposalWarning(f"Could not remove working directory {work_dir}: {exc}"))
