from __future__ import annotations
"""Housekeeping for persisted fleet artifacts (daemon key files and logs).

Policy:
  - Only the paths handed in are considered; nothing is globbed
  - A path that is already gone counts as removed (purge may run twice)
  - Directories are never removed
  - Best-effort: one path failing does not stop the others
"""

from pathlib import Path
from typing import Iterable
import logging
import os

from ..errors import RemovalFailed
from ..types import OperationResult, Scope, scope_label

logger = logging.getLogger(__name__)


def remove_fleet_artifacts(scope: Scope, paths: Iterable[Path]) -> OperationResult:
    """Delete the given files for one scope, one outcome per path."""
    result = OperationResult("remove-files")
    for path in paths:
        p = Path(path)
        if not p.exists() and not p.is_symlink():
            result.success(scope, path=str(p), removed=False)
            continue
        if p.is_dir() and not p.is_symlink():
            err = RemovalFailed(f"{p} is a directory; refusing to remove", scope=scope)
            result.failure(scope, err, path=str(p))
            continue
        try:
            os.remove(p)
        except FileNotFoundError:
            result.success(scope, path=str(p), removed=False)
            continue
        except OSError as exc:
            logger.warning("%s: could not remove %s: %s", scope_label(scope), p, exc)
            result.failure(scope, RemovalFailed(f"could not remove {p}: {exc}", scope=scope), path=str(p))
            continue
        logger.debug("%s: removed %s", scope_label(scope), p)
        result.success(scope, path=str(p), removed=True)
    return result


__all__ = ["remove_fleet_artifacts"]
