from __future__ import annotations

import logging
import shlex
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import BootstrapError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("sanitize_pdf.conf")

DEFAULT_CONFIG_TEXT = """\
# Configuration for pdf-sanitize
# Values use KEY="value" syntax; lines starting with # are ignored.

# INPUT_DIR: Directory searched (recursively) for PDFs to sanitize
INPUT_DIR="./input"
# OUTPUT_DIR: Directory receiving sanitized PDFs and per-step snapshots
OUTPUT_DIR="./output"

# ATTACHMENT_DIR: Where extracted attachments are moved (default: none)
#   When set, this wins over DELETE_ATTACHMENTS.
ATTACHMENT_DIR=""

# RELOCK_CLEANED: Re-encrypt cleaned PDFs with the password used to unlock them (yes/no)
RELOCK_CLEANED="no"

# LOG_FILE: Append-only log of actions, skips and failures
LOG_FILE="sanitize_pdf.log"

# FILE_PATTERN: Only process files whose name matches this glob
#   Example: "*_secure.pdf"
FILE_PATTERN="*.pdf"

# PASSWORD_TIMEOUT: Seconds to wait for a password before skipping an encrypted PDF
PASSWORD_TIMEOUT=120

# DRY_RUN: Only report what would be processed, change nothing (yes/no)
DRY_RUN="no"

# OUTPUT_PREFIX: Prefix added to output file names in batch mode
OUTPUT_PREFIX="sanitized_"

# MIRROR_DIR_STRUCTURE: Recreate input subdirectories under OUTPUT_DIR (yes/no)
MIRROR_DIR_STRUCTURE="no"

# ENCRYPTION_STRENGTH: Key length used when relocking (40, 128 or 256)
ENCRYPTION_STRENGTH=256

# EXIFTOOL_ARGS: Arguments passed to exiftool for metadata scrubbing
#   Example: "-all= -XMP:Author= -XMP:Creator="
EXIFTOOL_ARGS="-all="

# DELETE_ATTACHMENTS: Delete extracted attachments when ATTACHMENT_DIR is empty (yes/no)
DELETE_ATTACHMENTS="no"

# GS_QUALITY: Ghostscript rewrite quality
#   /screen, /ebook, /printer or /prepress (largest, default)
GS_QUALITY="/prepress"

# CLI_OVERRIDE: Honor "INPUT OUTPUT" command-line arguments (yes/no)
CLI_OVERRIDE="no"

# SAVE_INTERMEDIATE: Keep a copy of the working PDF after each step (yes/no)
SAVE_INTERMEDIATE="yes"

# TOOL_TIMEOUT: Seconds before an external tool invocation is abandoned
TOOL_TIMEOUT=600

# WORK_DIR: Root for per-file temporary directories (default: system temp)
WORK_DIR=""
"""

CONFIG_KEYS: Dict[str, str] = {
    "INPUT_DIR": "input_dir",
    "OUTPUT_DIR": "output_dir",
    "ATTACHMENT_DIR": "attachment_dir",
    "RELOCK_CLEANED": "relock_cleaned",
    "LOG_FILE": "log_file",
    "FILE_PATTERN": "file_pattern",
    "PASSWORD_TIMEOUT": "password_timeout",
    "DRY_RUN": "dry_run",
    "OUTPUT_PREFIX": "output_prefix",
    "MIRROR_DIR_STRUCTURE": "mirror_dir_structure",
    "ENCRYPTION_STRENGTH": "encryption_strength",
    "EXIFTOOL_ARGS": "exiftool_args",
    "DELETE_ATTACHMENTS": "delete_attachments",
    "GS_QUALITY": "gs_quality",
    "CLI_OVERRIDE": "cli_override",
    "SAVE_INTERMEDIATE": "save_intermediate",
    "TOOL_TIMEOUT": "tool_timeout",
    "WORK_DIR": "work_dir",
}


class EncryptionStrength(IntEnum):
    BITS_40 = 40
    BITS_128 = 128
    BITS_256 = 256


class RewriteQuality(str, Enum):
    """Ghostscript -dPDFSETTINGS presets."""

    SCREEN = "screen"
    EBOOK = "ebook"
    PRINTER = "printer"
    PREPRESS = "prepress"


class RunConfig(BaseModel):
    """
    Immutable settings shared by every work item of a run.

    `single_input`/`single_output` are only set when CLI_OVERRIDE=yes and an
    explicit pair was given on the command line.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    input_dir: Path = Path("./input")
    output_dir: Path = Path("./output")
    attachment_dir: Optional[Path] = None
    relock_cleaned: bool = False
    log_file: Path = Path("sanitize_pdf.log")
    file_pattern: str = "*.pdf"
    password_timeout: int = Field(120, gt=0)
    dry_run: bool = False
    output_prefix: str = "sanitized_"
    mirror_dir_structure: bool = False
    encryption_strength: EncryptionStrength = EncryptionStrength.BITS_256
    exiftool_args: Tuple[str, ...] = ("-all=",)
    delete_attachments: bool = False
    gs_quality: RewriteQuality = RewriteQuality.PREPRESS
    cli_override: bool = False
    save_intermediate: bool = True
    tool_timeout: int = Field(600, gt=0)
    work_dir: Optional[Path] = None
    single_input: Optional[Path] = None
    single_output: Optional[Path] = None

    @field_validator(
        "relock_cleaned",
        "dry_run",
        "mirror_dir_structure",
        "delete_attachments",
        "cli_override",
        "save_intermediate",
        mode="before",
    )
    @classmethod
    def parse_yes_no(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("yes", "y", "true", "1"):
            return True
        if text in ("no", "n", "false", "0", ""):
            return False
        raise ValueError(f"expected yes or no, got {value!r}")

    @field_validator("attachment_dir", "work_dir", "single_input", "single_output", mode="before")
    @classmethod
    def empty_path_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("file_pattern", "log_file", mode="before")
    @classmethod
    def require_non_empty(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("encryption_strength", mode="before")
    @classmethod
    def parse_strength(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError as exc:
                raise ValueError("must be one of 40, 128, 256") from exc
        return value

    @field_validator("gs_quality", mode="before")
    @classmethod
    def strip_quality_slash(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lstrip("/").lower()
        return value

    @field_validator("exiftool_args", mode="before")
    @classmethod
    def split_exiftool_args(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(shlex.split(value))
        return value

    @model_validator(mode="after")
    def validate_single_pair(self) -> "RunConfig":
        if (self.single_input is None) != (self.single_output is None):
            raise ValueError("single_input and single_output must be given together")
        return self

    @property
    def is_single_file(self) -> bool:
        return self.single_input is not None


def ensure_config_file(config_path: Path) -> bool:
    """
    Write the documented default configuration when `config_path` is missing.

    Returns True when a new file was written.
    """
    if config_path.exists():
        return False
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(DEFAULT_CONFIG_TEXT, encoding="utf-8")
    except OSError as exc:
        raise BootstrapError(
            f"Cannot create default config file at {config_path}: {exc}",
            details={"config_path": str(config_path)},
        ) from exc
    logger.info("Created default config file at %s", config_path)
    return True


def read_config_values(config_path: Path) -> Dict[str, str]:
    """Parse the KEY="value" document into RunConfig field names."""
    try:
        raw = dotenv_values(config_path, interpolate=False)
    except (OSError, UnicodeDecodeError) as exc:
        raise BootstrapError(
            f"Cannot read config file {config_path}: {exc}",
            details={"config_path": str(config_path)},
        ) from exc

    values: Dict[str, str] = {}
    for key, value in raw.items():
        field_name = CONFIG_KEYS.get(key)
        if field_name is None:
            logger.warning("Ignoring unknown config key %s in %s", key, config_path)
            continue
        if value is None:
            continue
        values[field_name] = value
    return values


def _build(values: Dict[str, Any], config_path: Path) -> RunConfig:
    try:
        return RunConfig(**values)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        keys = [k for k, f in CONFIG_KEYS.items() if f in fields] or fields
        raise BootstrapError(
            f"Invalid configuration in {config_path}: {', '.join(keys)}",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def resolve_run_config(
    config_path: Path = DEFAULT_CONFIG_PATH,
    cli_args: Sequence[str] = (),
) -> RunConfig:
    """
    Build the run configuration from the persisted file and positional CLI args.

    An explicit INPUT OUTPUT pair only replaces batch discovery when
    CLI_OVERRIDE=yes; every other value still comes from the file.
    """
    ensure_config_file(config_path)
    values: Dict[str, Any] = dict(read_config_values(config_path))
    config = _build(values, config_path)

    args = list(cli_args)
    if len(args) == 2:
        if config.cli_override:
            values["single_input"] = Path(args[0])
            values["single_output"] = Path(args[1])
            config = _build(values, config_path)
            logger.info("CLI override: single file %s -> %s", args[0], args[1])
        else:
            logger.info("CLI_OVERRIDE is off; ignoring positional arguments, running batch mode")
    elif args:
        logger.warning(
            "Expected 0 or 2 positional arguments, got %d; running batch mode", len(args)
        )
    return config
