# git.py
# Small, focused wrapper around the Git CLI.
# The generator only needs a few facts about the checkout it runs in, and
# only when the CI engine did not already hand them over in the environment.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def commit_message(ref: str = "HEAD", cwd: Optional[str] = None) -> str:
    """Full message (subject and body) of a commit."""
    return _git(["log", "-1", "--pretty=%B", ref], cwd=cwd)


def commit_message_or_none(cwd: Optional[str] = None) -> Optional[str]:
    """Like commit_message() but None when there is no repository or no git."""
    try:
        return commit_message(cwd=cwd) or None
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def current_branch_or_none(cwd: Optional[str] = None) -> Optional[str]:
    try:
        return current_branch(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
