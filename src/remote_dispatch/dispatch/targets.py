"""Target list loading for the CLI: ``ID:KIND[:URL]`` specs and CSV files."""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable
from pathlib import Path

from remote_dispatch.dispatch.models import TargetDescriptor, TargetValidationError

logger = logging.getLogger(__name__)

CSV_COLUMNS = ("target_id", "target_kind", "target_url")


def parse_target_spec(spec: str) -> TargetDescriptor:
    """Parse ``ID:KIND`` or ``ID:KIND:URL``; the URL itself may contain colons."""

    parts = spec.strip().split(":", 2)
    if len(parts) < 2:  # noqa: PLR2004
        raise TargetValidationError(
            f"Invalid target {spec!r}. Expected ID:KIND or ID:KIND:URL.",
        )
    target_id, target_kind = parts[0], parts[1]
    target_url = parts[2] if len(parts) == 3 else None  # noqa: PLR2004
    return TargetDescriptor(
        target_id=target_id.strip(),
        target_kind=target_kind,
        target_url=target_url,
    )


def load_targets_csv(path: Path) -> list[TargetDescriptor]:
    """Load targets from a CSV file with a ``target_id,target_kind,target_url`` header."""

    targets: list[TargetDescriptor] = []
    with path.open(encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        missing = [
            column for column in CSV_COLUMNS[:2] if column not in (reader.fieldnames or [])
        ]
        if missing:
            raise TargetValidationError(
                f"{path}: missing required column(s): {', '.join(missing)}.",
            )
        for row in reader:
            if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
                continue
            try:
                targets.append(
                    TargetDescriptor(
                        target_id=(row.get("target_id") or "").strip(),
                        target_kind=(row.get("target_kind") or "").strip(),
                        target_url=row.get("target_url") or None,
                    ),
                )
            except TargetValidationError as error:
                raise TargetValidationError(f"{path}:{reader.line_num}: {error}") from error
    logger.info("Loaded %d target(s) from %s", len(targets), path)
    return targets


def merge_targets(*groups: Iterable[TargetDescriptor]) -> list[TargetDescriptor]:
    """Concatenate target groups, dropping repeated target ids (first wins)."""

    merged: list[TargetDescriptor] = []
    seen: set[str] = set()
    for group in groups:
        for target in group:
            if target.target_id in seen:
                logger.warning("Skipping duplicate target %s", target.target_id)
                continue
            seen.add(target.target_id)
            merged.append(target)
    return merged
