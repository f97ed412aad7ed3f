"""Read-only git probes used to derive workspace and VCS metadata.

Every probe is best-effort: a missing ``git`` binary, a directory outside a
repository or a failing command yields ``None`` rather than an exception.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from collections import abc as cabc
from pathlib import Path

from terraflow._terraflow_models import VcsInfo

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30

_GITHUB_URL = re.compile(r"github\.com[:/]([^/]+/[^/]+?)(?:\.git)?/?$")
_GITLAB_URL = re.compile(r"gitlab[^/:]*[:/](.+?)(?:\.git)?/?$")


def run_git(
    args: list[str],
    cwd: Path,
    env: cabc.Mapping[str, str] | None = None,
) -> str | None:
    """Run a git command and return its stripped stdout.

    Parameters
    ----------
    args : list[str]
        Git arguments (without the ``git`` prefix).
    cwd : Path
        Directory to run the command in.
    env : Mapping[str, str] | None, optional
        Environment for the command; defaults to the process environment.

    Returns
    -------
    str | None
        Stdout of the command, or ``None`` when git is unavailable, times
        out or exits non-zero.
    """
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            env=dict(env) if env is not None else dict(os.environ),
            capture_output=True,
            text=True,
            check=False,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("git %s unavailable: %s", " ".join(args), exc)
        return None

    if result.returncode != 0:
        logger.debug("git %s failed: %s", " ".join(args), result.stderr.strip())
        return None
    return result.stdout.strip()


def is_git_repository(cwd: Path) -> bool:
    """Return whether *cwd* or one of its parents holds a ``.git`` entry."""
    return any((candidate / ".git").exists() for candidate in (cwd, *cwd.parents))


def get_branch(cwd: Path) -> str | None:
    """Return the checked-out branch name, or ``None`` on a detached HEAD."""
    branch = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if not branch or branch == "HEAD":
        return None
    return branch


def get_tag(cwd: Path) -> str | None:
    """Return the tag HEAD points at exactly, if any."""
    return run_git(["describe", "--tags", "--exact-match"], cwd) or None


def get_commit_sha(cwd: Path) -> str | None:
    return run_git(["rev-parse", "HEAD"], cwd) or None


def get_short_sha(cwd: Path) -> str | None:
    return run_git(["rev-parse", "--short", "HEAD"], cwd) or None


def is_clean(cwd: Path) -> bool:
    """Return ``False`` only when git reports uncommitted changes.

    Outside a repository, or when git cannot be run, the tree counts as
    clean.
    """
    status = run_git(["status", "--porcelain"], cwd)
    return not status


def get_remote_url(cwd: Path, remote: str = "origin") -> str | None:
    return run_git(["config", "--get", f"remote.{remote}.url"], cwd) or None


def parse_github_url(url: str) -> str | None:
    """Return ``owner/repo`` for a GitHub remote URL.

    Examples
    --------
    >>> parse_github_url("git@github.com:owner/repo.git")
    'owner/repo'
    >>> parse_github_url("https://gitlab.com/owner/repo") is None
    True
    """
    match = _GITHUB_URL.search(url.strip())
    return match.group(1) if match else None


def parse_gitlab_url(url: str) -> str | None:
    """Return the project path, subgroups included, for a GitLab remote URL.

    Examples
    --------
    >>> parse_gitlab_url("https://gitlab.com/group/subgroup/project.git")
    'group/subgroup/project'
    """
    match = _GITLAB_URL.search(url.strip())
    return match.group(1) if match else None


def get_github_repository(cwd: Path) -> str | None:
    url = get_remote_url(cwd)
    return parse_github_url(url) if url else None


def get_gitlab_project_path(cwd: Path) -> str | None:
    url = get_remote_url(cwd)
    return parse_gitlab_url(url) if url else None


def inspect_vcs(cwd: Path) -> VcsInfo:
    """Collect git metadata for *cwd*; absent outside a repository."""
    if not is_git_repository(cwd):
        return VcsInfo()
    commit_sha = get_commit_sha(cwd)
    url = get_remote_url(cwd)
    return VcsInfo(
        branch=get_branch(cwd),
        tag=get_tag(cwd),
        commit_sha=commit_sha,
        short_sha=commit_sha[:7] if commit_sha else get_short_sha(cwd),
        is_clean=is_clean(cwd),
        github_repository=parse_github_url(url) if url else None,
        gitlab_project_path=parse_gitlab_url(url) if url else None,
    )
