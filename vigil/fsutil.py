"""Small filesystem helpers shared by the stores."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_text(path: Path, text: str, *, mode: int | None = 0o600) -> None:
    """Atomic write with tempfile + rename in the target directory.

    Readers see either the old file or the new one, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            best_effort_chmod(Path(tmp_path), mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, payload: Any, *, mode: int | None = 0o600) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2), mode=mode)


def best_effort_chmod(path: Path, mode: int) -> None:
    """Harden permissions without failing on filesystems that ignore them."""
    try:
        path.chmod(mode)
    except OSError:
        logger.debug("fsutil.chmod_skipped", path=str(path), mode=oct(mode))
