"""Keep an application's working directory in sync with its source branch.

The working directory is a disposable mirror: local modifications are
discarded on every sync.  Credentials only ever travel inside the URL passed
to one clone/fetch call; ``origin`` records the plain URL.
"""
from __future__ import annotations

import enum
import logging
import os
import subprocess
from pathlib import Path
from typing import Iterable

from scripts.server_init.app_spec import Credentials
from scripts.server_init.errors import BranchNotFoundError, CloneFailedError, FetchFailedError, SyncError
from scripts.server_init.repo_url import (
    compose_authenticated_url,
    has_embedded_secret,
    plain_url,
    redact_secrets,
    same_repository,
)


LOG_PREFIX = "[GIT-SYNC]"
REMOTE_NAME = "origin"
LS_REMOTE_TIMEOUT_SECONDS = 5

logger = logging.getLogger(__name__)


class RepoState(str, enum.Enum):
    ABSENT = "absent"
    CLONED = "cloned"


# ---------------------------------------------------------------------------
# git capability
# ---------------------------------------------------------------------------


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


def _git(
    args: list[str],
    *,
    cwd: Path | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        env=_git_env(),
        capture_output=True,
        text=True,
        check=check,
        timeout=timeout,
    )


def _error_text(exc: subprocess.CalledProcessError) -> str:
    stderr = str(exc.stderr or "").strip()
    stdout = str(exc.stdout or "").strip()
    return stderr or stdout


def ls_remote_heads(url: str, *, timeout: float = LS_REMOTE_TIMEOUT_SECONDS) -> bool:
    """Return True when *url* answers anonymously (or with the URL's own auth)."""
    try:
        _git(["ls-remote", "--heads", url], timeout=timeout)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
        return False
    return True


def clone(url: str, branch: str, directory: Path) -> None:
    _git(["clone", "--branch", branch, url, str(directory)])


def fetch(directory: Path, url: str) -> None:
    _git(
        ["fetch", "--prune", url, f"+refs/heads/*:refs/remotes/{REMOTE_NAME}/*"],
        cwd=directory,
    )


def list_remote_branches(directory: Path) -> set[str]:
    result = _git(
        ["for-each-ref", "--format=%(refname:strip=3)", f"refs/remotes/{REMOTE_NAME}"],
        cwd=directory,
    )
    return {line.strip() for line in str(result.stdout or "").splitlines() if line.strip() and line.strip() != "HEAD"}


def checkout_reset_clean(directory: Path, branch: str, *, keep: Iterable[str] = ()) -> None:
    remote_ref = f"{REMOTE_NAME}/{branch}"
    _git(["checkout", "-f", "-B", branch, remote_ref], cwd=directory)
    _git(["reset", "--hard", remote_ref], cwd=directory)
    clean_cmd = ["clean", "-fd"]
    for name in keep:
        clean_cmd.extend(["-e", name])
    _git(clean_cmd, cwd=directory)


def get_remote_url(directory: Path) -> str:
    result = _git(["remote", "get-url", REMOTE_NAME], cwd=directory, check=False)
    if result.returncode != 0:
        return ""
    return str(result.stdout or "").strip()


def set_remote_url(directory: Path, url: str) -> None:
    _git(["remote", "set-url", REMOTE_NAME, url], cwd=directory)


def tree_hash(directory: Path) -> str:
    result = _git(["rev-parse", "HEAD^{tree}"], cwd=directory)
    return str(result.stdout or "").strip()


def repo_state(directory: Path) -> RepoState:
    if (directory / ".git" / "HEAD").is_file():
        return RepoState.CLONED
    return RepoState.ABSENT


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------


def resolve_remote_urls(*, current_remote: str, plain: str, authenticated: str) -> tuple[str, str | None]:
    """Pick the URL to fetch through and the URL to record as origin.

    Returns ``(fetch_url, record_url)`` where ``record_url`` is None when
    origin must stay as it is.  A stored remote that already carries a
    secret for the same repository is kept when no fresh credentials were
    supplied, so a rerun never downgrades it to anonymous access.
    """
    if authenticated != plain:
        return authenticated, (plain if current_remote != plain else None)
    if current_remote and has_embedded_secret(current_remote) and same_repository(current_remote, plain):
        return current_remote, None
    return plain, (plain if current_remote != plain else None)


def sync_repository(
    *,
    directory: Path,
    repo_url: str,
    branch: str,
    credentials: Credentials | None = None,
    keep: Iterable[str] = (),
) -> RepoState:
    """Clone or fast-forward *directory* to ``origin/<branch>``.

    Returns the state the directory was in before the sync.
    """
    creds = credentials or Credentials()
    plain = plain_url(repo_url)
    authenticated = compose_authenticated_url(repo_url, creds)
    state = repo_state(directory)

    if state is RepoState.ABSENT:
        logger.info("%s Cloning %s (branch %s)", LOG_PREFIX, plain, branch)
        try:
            clone(authenticated, branch, directory)
            set_remote_url(directory, plain)
        except subprocess.CalledProcessError as exc:
            detail = redact_secrets(_error_text(exc), creds)
            raise CloneFailedError(f"Failed to clone repository {plain}: {detail}") from None
        logger.info("%s Repository cloned successfully", LOG_PREFIX)
        return state

    logger.info("%s Repository exists, updating %s", LOG_PREFIX, directory)
    current_remote = get_remote_url(directory)
    fetch_url, record_url = resolve_remote_urls(
        current_remote=current_remote,
        plain=plain,
        authenticated=authenticated,
    )
    try:
        if record_url is not None:
            logger.info("%s Updating %s remote URL", LOG_PREFIX, REMOTE_NAME)
            set_remote_url(directory, record_url)
        fetch(directory, fetch_url)
    except subprocess.CalledProcessError as exc:
        detail = redact_secrets(_error_text(exc), creds)
        raise FetchFailedError(f"Failed to fetch from repository {plain}: {detail}") from None

    if branch not in list_remote_branches(directory):
        raise BranchNotFoundError(branch)

    try:
        checkout_reset_clean(directory, branch, keep=keep)
    except subprocess.CalledProcessError as exc:
        raise SyncError(f"Failed to reset working tree to {REMOTE_NAME}/{branch}: {_error_text(exc)}") from None
    logger.info("%s Repository updated to branch: %s", LOG_PREFIX, branch)
    return state
