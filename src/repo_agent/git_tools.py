"""Git helpers for materialising a repository into a run workspace."""

from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path

from repo_agent.process import CommandResult, ProcessLaunchError, run_command

logger = logging.getLogger(__name__)

_REMOTE_PREFIXES = ("http://", "https://", "ssh://", "git://", "git@", "file://")


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


class GitTimeout(GitError):
    """Raised when a git command, or a clone as a whole, runs out of time."""


def _redact(text: str, secret: str) -> str:
    return text.replace(secret, "***") if secret else text


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: float = 30,
    secret: str = "",
) -> CommandResult:
    """Run a git command through the process manager and return its result.

    *secret* is masked in log lines and error messages. Git and anything it
    spawns (remote helpers, ssh) share one process group, so a timeout takes
    them all down.
    """
    shown = _redact(" ".join(args), secret)
    # Never block on a credential prompt inside a worker thread.
    env = {"GIT_TERMINAL_PROMPT": os.environ.get("GIT_TERMINAL_PROMPT", "0")}
    result = run_command(["git", *args], cwd, timeout, env, display=f"git {shown}")
    if result.timed_out:
        raise GitTimeout(f"`git {shown}` timed out after {timeout:g}s")
    if check and result.exit_code != 0:
        raise GitError(
            _redact(
                f"`git {' '.join(args)}` failed (rc={result.exit_code}): {result.output.strip()}",
                secret,
            )
        )
    return result


def is_remote_url(source: str) -> bool:
    return str(source or "").strip().startswith(_REMOTE_PREFIXES)


def is_git_source(source: str) -> bool:
    """Return ``True`` when *source* should be cloned rather than copied."""
    if is_remote_url(source):
        return True
    path = Path(source)
    return path.is_dir() and (path / ".git").exists()


def authenticated_url(url: str, token: str) -> str:
    """Embed *token* into an HTTPS clone URL; other URLs are returned unchanged."""
    if not token or not url.startswith("https://") or "@" in url.split("/", 3)[2]:
        return url
    return url.replace("https://", f"https://{token}@", 1)


def _checkout_target(ref: str) -> str:
    ref = ref.strip()
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref


# ---------------------------------------------------------------------------
# Mutating helpers
# ---------------------------------------------------------------------------


def _remaining(deadline: float, timeout: float) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise GitTimeout(f"clone timed out after {timeout:g}s")
    return left


def clone_repository(
    url: str,
    dest: str | Path,
    ref: str = "",
    *,
    token: str = "",
    timeout: float = 300,
) -> None:
    """Clone *url* into *dest* and check out *ref* when given.

    *timeout* bounds the clone and the checkout together. Raises
    :class:`GitTimeout` when it runs out and :class:`GitError` on any other
    failure.
    """
    deadline = time.monotonic() + timeout
    dest_path = Path(dest)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    _run_git(
        "clone",
        "--quiet",
        authenticated_url(url, token),
        str(dest_path),
        cwd=dest_path.parent,
        timeout=_remaining(deadline, timeout),
        secret=token,
    )
    target = _checkout_target(ref)
    if target:
        _run_git(
            "checkout",
            "--quiet",
            target,
            cwd=dest_path,
            timeout=_remaining(deadline, timeout),
        )
    logger.info("Cloned %s%s into %s", url, f" @ {target}" if target else "", dest_path)


def copy_tree(source: str | Path, dest: str | Path) -> None:
    """Copy a plain local directory without following symlinks."""
    src = Path(source)
    if not src.is_dir():
        raise GitError(f"source directory not found: {src}")
    shutil.copytree(src, dest, symlinks=True)
    logger.info("Copied %s into %s", src, dest)


def materialize_source(
    source: str,
    dest: str | Path,
    ref: str = "",
    *,
    token: str = "",
    timeout: float = 300,
) -> str:
    """Clone or copy *source* into *dest*; return ``"clone"`` or ``"copy"``."""
    if not str(source or "").strip():
        raise GitError("no repository source given")
    if is_git_source(source):
        clone_repository(source, dest, ref, token=token, timeout=timeout)
        return "clone"
    copy_tree(source, dest)
    return "copy"


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def head_sha(repo: str | Path) -> str:
    """Return the full SHA of HEAD, or ``""`` when *repo* is not a git checkout."""
    repo_path = Path(repo)
    if not (repo_path / ".git").exists():
        return ""
    try:
        return _run_git("rev-parse", "HEAD", cwd=repo_path).output.strip()
    except (GitError, ProcessLaunchError) as exc:
        logger.debug("Could not read HEAD of %s: %s", repo_path, exc)
        return ""
