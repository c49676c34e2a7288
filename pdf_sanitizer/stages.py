"""
External sanitization transforms.

Every stage takes one artifact and returns either the next artifact or a
typed StageFailure. Tool problems (missing binary, timeout, non-zero exit)
are converted into failures here and never escape as exceptions.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF

from .config import EncryptionStrength, RunConfig
from .errors import StageError
from .schema import AttachmentRecord, StageName, WorkItem

logger = logging.getLogger(__name__)

# qpdf exits 3 when it wrote its output but emitted warnings.
QPDF_WARNING_EXIT = 3


@dataclass(frozen=True)
class StageFailure:
    code: str
    message: str
    detail: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class StageResult:
    stage: StageName
    artifact: Optional[Path] = None
    attachments: List[AttachmentRecord] = field(default_factory=list)
    note: Optional[str] = None
    warning: Optional[str] = None
    failure: Optional[StageFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class StageContext:
    """What a stage may read besides its input artifact."""

    config: RunConfig
    item: WorkItem
    work_dir: Path
    password: Optional[str] = None


def run_tool(
    cmd: Sequence[str],
    *,
    timeout: float,
    stdin_text: str | None = None,
) -> Tuple[Optional[subprocess.CompletedProcess], Optional[StageFailure]]:
    """Run one external tool without a shell and classify how it ended."""
    tool = cmd[0]
    # Arguments can carry passwords; only the tool name is logged.
    logger.debug("Running %s (timeout %ss)", tool, timeout)
    try:
        proc = subprocess.run(
            list(cmd),
            check=False,
            capture_output=True,
            text=True,
            input=stdin_text,
            timeout=timeout,
        )
    except FileNotFoundError:
        return None, StageFailure(
            code="TOOL_NOT_INSTALLED",
            message=f"{tool} not found on PATH",
            detail={"expected_command": tool},
        )
    except subprocess.TimeoutExpired:
        return None, StageFailure(
            code="TOOL_TIMEOUT",
            message=f"{tool} timed out after {timeout:g}s",
            detail={"timeout_s": timeout},
        )
    return proc, None


def _qpdf_warning(proc: subprocess.CompletedProcess) -> Optional[str]:
    if proc.returncode != QPDF_WARNING_EXIT:
        return None
    return (proc.stderr or "").strip() or "qpdf reported warnings"


def _nonzero_exit(proc: subprocess.CompletedProcess, message: str) -> StageFailure:
    return StageFailure(
        code="TOOL_FAILED",
        message=message,
        detail={
            "returncode": proc.returncode,
            "stderr": (proc.stderr or "")[-4000:],
        },
    )


class Stage(ABC):
    """A single artifact-in, artifact-or-failure-out transform."""

    name: StageName

    @abstractmethod
    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        raise NotImplementedError

    def backup_path(self, artifact: Path) -> Optional[Path]:
        """Where the tool leaves a pre-edit copy of `artifact`, if it does."""
        return None

    def _ok(self, artifact: Path, **kwargs: Any) -> StageResult:
        return StageResult(stage=self.name, artifact=artifact, **kwargs)

    def _fail(self, failure: StageFailure) -> StageResult:
        return StageResult(stage=self.name, failure=failure)


class QpdfUnlockStage(Stage):
    """Decrypt with qpdf; the password is passed on stdin."""

    name = StageName.UNLOCK

    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        if ctx.password is None:
            return self._fail(StageFailure(code="UNLOCK_NO_PASSWORD", message="no password supplied"))
        out = ctx.work_dir / "unlocked.pdf"
        proc, failure = run_tool(
            ["qpdf", "--password-file=-", "--decrypt", str(artifact), str(out)],
            timeout=ctx.config.tool_timeout,
            stdin_text=ctx.password + "\n",
        )
        if failure is not None:
            return self._fail(failure)
        if proc.returncode not in (0, QPDF_WARNING_EXIT) or not out.exists():
            return self._fail(_nonzero_exit(proc, "wrong password or unsupported encryption"))
        return self._ok(out, warning=_qpdf_warning(proc))


class QpdfLinearizeStage(Stage):
    """Rewrite the input into the working directory, linearized."""

    name = StageName.SANITIZE

    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        out = ctx.work_dir / "sanitized.pdf"
        proc, failure = run_tool(
            ["qpdf", "--linearize", str(artifact), str(out)],
            timeout=ctx.config.tool_timeout,
        )
        if failure is not None:
            return self._fail(failure)
        if proc.returncode not in (0, QPDF_WARNING_EXIT) or not out.exists():
            return self._fail(_nonzero_exit(proc, "qpdf could not rewrite the document"))
        return self._ok(out, warning=_qpdf_warning(proc))


def _remove_embedded_files(source: Path, target: Path) -> int:
    """Save `source` as `target` without embedded files or file-attachment annotations."""
    removed = 0
    with fitz.open(source) as doc:
        for name in doc.embfile_names():
            doc.embfile_del(name)
            removed += 1
        for page in doc:
            annot = page.first_annot
            while annot:
                if annot.type[0] == fitz.PDF_ANNOT_FILE_ATTACHMENT:
                    annot = page.delete_annot(annot)
                    removed += 1
                else:
                    annot = annot.next
        # garbage collection drops the now unreferenced file streams
        doc.save(str(target), garbage=3, deflate=True)
    return removed


class PdfDetachStage(Stage):
    """
    Extract embedded files with pdfdetach, then write a copy without them.

    The extracted files become the item's AttachmentRecords; a document with
    nothing embedded passes through unchanged.
    """

    name = StageName.ATTACHMENT_STRIP

    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        extract_dir = ctx.work_dir / "attachments"
        extract_dir.mkdir(parents=True, exist_ok=True)
        proc, failure = run_tool(
            ["pdfdetach", "-saveall", "-o", str(extract_dir), str(artifact)],
            timeout=ctx.config.tool_timeout,
        )
        if failure is not None:
            return self._fail(failure)
        if proc.returncode != 0:
            return self._fail(_nonzero_exit(proc, "pdfdetach failed"))

        records = [AttachmentRecord(path=p) for p in sorted(extract_dir.iterdir()) if p.is_file()]
        if not records:
            return self._ok(artifact, note="no attachments present")

        out = ctx.work_dir / "detached.pdf"
        try:
            removed = _remove_embedded_files(artifact, out)
        except Exception as exc:
            out.unlink(missing_ok=True)
            return self._fail(
                StageFailure(
                    code="ATTACHMENT_REMOVE_FAILED",
                    message=f"could not remove embedded files: {exc}",
                    detail={"extracted": len(records)},
                )
            )
        return self._ok(
            out,
            attachments=records,
            note=f"extracted {len(records)} attachment(s), removed {removed} embedded object(s)",
        )


class ExiftoolScrubStage(Stage):
    """Remove metadata in place with exiftool."""

    name = StageName.METADATA_STRIP

    def backup_path(self, artifact: Path) -> Optional[Path]:
        # exiftool keeps the pre-edit file as `<name>_original`.
        return artifact.with_name(artifact.name + "_original")

    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        proc, failure = run_tool(
            ["exiftool", *ctx.config.exiftool_args, str(artifact)],
            timeout=ctx.config.tool_timeout,
        )
        if failure is not None:
            return self._fail(failure)
        if proc.returncode != 0:
            return self._fail(_nonzero_exit(proc, "exiftool could not scrub metadata"))
        return self._ok(artifact, note=(proc.stdout or "").strip() or None)


class GhostscriptRewriteStage(Stage):
    """Re-distill the working artifact to the item's output path."""

    name = StageName.REWRITE

    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        out = ctx.item.output_path
        quality = ctx.config.gs_quality.value
        proc, failure = run_tool(
            [
                "gs",
                "-q",
                "-dSAFER",
                "-dNOPAUSE",
                "-dBATCH",
                "-sDEVICE=pdfwrite",
                "-dPreserveEmbeddedFiles=false",
                f"-dPDFSETTINGS=/{quality}",
                "-o",
                str(out),
                str(artifact),
            ],
            timeout=ctx.config.tool_timeout,
        )
        if failure is None and proc.returncode != 0:
            failure = _nonzero_exit(proc, "ghostscript rewrite failed")
        if failure is None and not out.exists():
            failure = StageFailure(
                code="REWRITE_OUTPUT_MISSING",
                message="ghostscript finished but wrote no output",
                detail={"output": str(out)},
            )
        if failure is not None:
            # Never leave a half-written output behind.
            out.unlink(missing_ok=True)
            return self._fail(failure)
        return self._ok(out, note=f"quality /{quality}")


class QpdfRelockStage(Stage):
    """
    Encrypt the final output with the recovered password and replace it.

    The --encrypt arguments go through a qpdf argument file read from stdin,
    so the password never appears on the command line.
    """

    name = StageName.RELOCK

    def run(self, artifact: Path, ctx: StageContext) -> StageResult:
        if ctx.password is None:
            return self._fail(StageFailure(code="RELOCK_NO_PASSWORD", message="no password to relock with"))
        bits = ctx.config.encryption_strength
        locked = ctx.work_dir / "locked.pdf"
        cmd = ["qpdf"]
        if bits != EncryptionStrength.BITS_256:
            cmd.append("--allow-weak-crypto")
        cmd += ["@-", str(artifact), str(locked)]
        encrypt_args = ["--encrypt", ctx.password, ctx.password, str(int(bits)), "--"]
        proc, failure = run_tool(
            cmd,
            timeout=ctx.config.tool_timeout,
            stdin_text="\n".join(encrypt_args) + "\n",
        )
        if failure is not None:
            return self._fail(failure)
        if proc.returncode not in (0, QPDF_WARNING_EXIT) or not locked.exists():
            return self._fail(_nonzero_exit(proc, "qpdf could not encrypt the output"))
        try:
            shutil.move(str(locked), str(artifact))
        except OSError as exc:
            return self._fail(
                StageFailure(code="RELOCK_REPLACE_FAILED", message=f"could not replace output: {exc}")
            )
        return self._ok(artifact, note=f"{int(bits)}-bit")


class EncryptionProbe:
    """Tell whether a PDF is password protected, using PyMuPDF."""

    def is_encrypted(self, path: Path) -> bool:
        try:
            with fitz.open(path) as doc:
                if doc.needs_pass:
                    return True
                metadata = doc.metadata or {}
                return bool(metadata.get("encryption"))
        except Exception as exc:
            raise StageError(f"cannot open {path.name}: {exc}", item=path) from exc


@dataclass
class StageSet:
    """The collaborators one orchestrator drives, in pipeline order."""

    unlock: Stage
    sanitize: Stage
    attachment_strip: Stage
    metadata_strip: Stage
    rewrite: Stage
    relock: Stage
    probe: EncryptionProbe

    def sanitizing_stages(self) -> List[Stage]:
        return [self.sanitize, self.attachment_strip, self.metadata_strip]


def default_stages() -> StageSet:
    return StageSet(
        unlock=QpdfUnlockStage(),
        sanitize=QpdfLinearizeStage(),
        attachment_strip=PdfDetachStage(),
        metadata_strip=ExiftoolScrubStage(),
        rewrite=GhostscriptRewriteStage(),
        relock=QpdfRelockStage(),
        probe=EncryptionProbe(),
    )
