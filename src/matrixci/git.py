# git.py
# Small wrapper around the Git CLI, used to fill in push events from the
# local checkout when the caller doesn't name a branch.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Name of the checked-out branch, or None on a detached HEAD.

    `git rev-parse --abbrev-ref HEAD` prints "HEAD" when detached.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)
