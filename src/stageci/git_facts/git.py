# git.py
# Facts about the checkout a run starts from. Everything here shells out to
# the git CLI; callers decide what to do when git is missing or fails.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Tuple


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """Run `git <args>` and return stripped stdout. Raises CalledProcessError on non-zero exit."""
    return subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    ).strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Checked-out branch, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def current_tag(cwd: Optional[str] = None) -> Optional[str]:
    """A tag pointing exactly at HEAD, or None."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def detect_ref(cwd: Optional[str] = None) -> Tuple[str, str]:
    """
    Work out (ref_name, ref_kind) for the checkout.

    A branch wins over a tag: pushing a branch whose tip is tagged is a
    branch run. On a detached HEAD we fall back to the tag, then to the SHA.
    """
    branch = current_branch(cwd)
    if branch:
        return branch, "branch"
    tag = current_tag(cwd)
    if tag:
        return tag, "tag"
    return head_sha(cwd), "branch"


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def project_name(cwd: Optional[str] = None) -> str:
    """Repository name from the origin URL, else the checkout directory name."""
    try:
        url = remote_url("origin", cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return repo_root(cwd).name
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name[:-4] if name.endswith(".git") else name
