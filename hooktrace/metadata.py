from __future__ import annotations

import logging
import os
import subprocess
from typing import Any, Dict, List, Optional


JsonDict = Dict[str, Any]

logger = logging.getLogger(__name__)

GIT_TIMEOUT_S = 2.0


def _git(cwd: str, args: List[str]) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as err:
        logger.debug("git %s failed: %r", " ".join(args), err)
        return None
    if proc.returncode != 0:
        return None
    out = proc.stdout.strip()
    return out or None


def collect_git_metadata(cwd: str) -> JsonDict:
    """Static description of the repository a session runs in; empty outside git."""
    if not cwd or not os.path.isdir(cwd):
        return {}
    top = _git(cwd, ["rev-parse", "--show-toplevel"])
    if not top:
        return {}
    meta: JsonDict = {"repository": os.path.basename(top)}
    branch = _git(cwd, ["rev-parse", "--abbrev-ref", "HEAD"])
    if branch:
        meta["branch"] = branch
    commit = _git(cwd, ["rev-parse", "--short", "HEAD"])
    if commit:
        meta["commit"] = commit
    dirty = _git(cwd, ["status", "--porcelain", "--untracked-files=no"])
    meta["dirty"] = bool(dirty)
    return meta
