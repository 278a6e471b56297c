from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write ``data`` next to ``path`` and rename it into place.

    Readers see either the previous complete file or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


def backup_file(path: Path, backups_dir: Path, now: datetime, keep: int = 0) -> Path | None:
    if not path.exists():
        return None
    backups_dir.mkdir(parents=True, exist_ok=True)
    stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
    target = backups_dir / f"{path.stem}_{stamp}{path.suffix}"
    shutil.copy2(path, target)
    logger.debug("backup created %s", target)
    if keep > 0:
        prune_backups(backups_dir, path.stem, keep)
    return target


def prune_backups(backups_dir: Path, stem: str, keep: int) -> None:
    backups = sorted(backups_dir.glob(f"{stem}_*"))
    for old in backups[:-keep]:
        try:
            old.unlink()
        except OSError as e:
            logger.warning("failed to prune backup %s: %s", old, e)
