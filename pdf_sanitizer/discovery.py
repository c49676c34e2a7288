from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, List

from .config import RunConfig
from .errors import DiscoveryError
from .schema import WorkItem

logger = logging.getLogger(__name__)


def _is_inside(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return True


def discover_inputs(input_dir: Path, pattern: str, *, exclude_dir: Path | None = None) -> List[Path]:
    """
    Recursively list files under `input_dir` whose name matches `pattern`.

    Results are sorted by their input-relative POSIX path so that runs and
    logs are reproducible.
    """
    matches: List[Path] = []
    for path in input_dir.rglob("*"):
        if not path.is_file() or not fnmatchcase(path.name, pattern):
            continue
        if exclude_dir is not None and _is_inside(path, exclude_dir):
            continue
        matches.append(path)
    return sorted(matches, key=lambda p: p.relative_to(input_dir).as_posix())


def output_path_for(config: RunConfig, input_path: Path) -> tuple[Path, Path | None]:
    name = f"{config.output_prefix}{input_path.name}"
    if not config.mirror_dir_structure:
        return config.output_dir / name, None
    relative_dir = input_path.parent.relative_to(config.input_dir)
    return config.output_dir / relative_dir / name, relative_dir


def resolve_work_items(config: RunConfig) -> List[WorkItem]:
    """
    Produce the ordered work items for a run.

    Output directories are created here unless the run is a dry run.
    """
    single_input, single_output = config.single_input, config.single_output
    if single_input is not None and single_output is not None:
        item = WorkItem(input_path=single_input, output_path=single_output)
        if not config.dry_run:
            item.output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Single-file mode: %s -> %s", item.input_path, item.output_path)
        return [item]

    if not config.input_dir.is_dir():
        raise DiscoveryError(
            f"Input directory not found: {config.input_dir}",
            details={"input_dir": str(config.input_dir)},
        )

    # Outputs nested inside the input tree must not be picked up again.
    exclude_dir = None
    if config.output_dir.resolve() != config.input_dir.resolve() and _is_inside(
        config.output_dir, config.input_dir
    ):
        exclude_dir = config.output_dir

    inputs = discover_inputs(config.input_dir, config.file_pattern, exclude_dir=exclude_dir)
    if not inputs:
        raise DiscoveryError(
            f"No PDF files found in {config.input_dir} matching pattern {config.file_pattern}.",
            details={"input_dir": str(config.input_dir), "pattern": config.file_pattern},
        )

    items: List[WorkItem] = []
    claimed: Dict[Path, Path] = {}
    for input_path in inputs:
        output_path, relative_dir = output_path_for(config, input_path)
        earlier = claimed.setdefault(output_path, input_path)
        if earlier != input_path:
            logger.warning(
                "%s and %s both map to %s; the later file will overwrite the earlier output "
                "(set MIRROR_DIR_STRUCTURE=yes to keep them apart)",
                earlier,
                input_path,
                output_path,
            )
        if not config.dry_run:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        items.append(
            WorkItem(input_path=input_path, output_path=output_path, relative_dir=relative_dir)
        )
    logger.info("Discovered %d file(s) in %s matching %s", len(items), config.input_dir, config.file_pattern)
    return items
