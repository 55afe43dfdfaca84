"""
Git workspace operations for a supervised run.

This module handles:
- Building credentialed clone URLs for the token type in use
- Shallow cloning with terminal prompts disabled
- Branch creation, change detection, commit and push

Every git error surfaced to callers is sanitized. Clone URLs carry the
token and must never reach logs, messages or the clone's .git/config;
origin is reset to the plain URL as soon as the clone succeeds.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from patch_swarm.config import GitConfig
from patch_swarm.errors import (
    BranchFailure,
    CloneFailure,
    CommitFailure,
    ErrorClassifier,
    PatchSwarmError,
    PushFailure,
    sanitize_error_message,
)

if TYPE_CHECKING:
    from patch_swarm.logger import RunLogger


# Keeps git from ever waiting on a credential prompt
NON_INTERACTIVE_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "echo",
    "GCM_INTERACTIVE": "never",
}


def git_env() -> dict[str, str]:
    env = os.environ.copy()
    env.update(NON_INTERACTIVE_ENV)
    return env


def authenticated_urls(repo_url: str, token: Optional[str]) -> list[str]:
    """
    Candidate clone URLs for a token, most likely to work first.

    GitHub App installation tokens (ghs_) authenticate as x-access-token,
    OAuth tokens (gho_) as oauth2; anything else is tried bare, then with
    both usernames. Non-HTTP URLs and missing tokens are returned as-is.
    """
    parts = urlsplit(repo_url)
    if not token or parts.scheme not in ("http", "https") or not parts.hostname:
        return [repo_url]

    host = parts.hostname
    if parts.port:
        host = f"{host}:{parts.port}"

    def with_userinfo(userinfo: str) -> str:
        return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))

    if host != "github.com":
        return [with_userinfo(token)]
    if token.startswith("ghs_"):
        return [with_userinfo(f"x-access-token:{token}"), with_userinfo(token)]
    if token.startswith("gho_"):
        return [with_userinfo(f"oauth2:{token}"), with_userinfo(token)]
    return [
        with_userinfo(token),
        with_userinfo(f"x-access-token:{token}"),
        with_userinfo(f"oauth2:{token}"),
    ]


def strip_userinfo(url: str) -> str:
    """The URL with any user:token@ part removed."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def _porcelain_path(line: str) -> str:
    path = line[3:]
    if " -> " in path:
        path = path.split(" -> ", 1)[1]
    return path.strip().strip('"')


class GitWorkspace:
    """A cloned repository owned by one supervisor run."""

    def __init__(
        self,
        path: Path,
        config: Optional[GitConfig] = None,
        logger: Optional[RunLogger] = None,
        secrets: Sequence[str] = (),
    ) -> None:
        self.path = Path(path)
        self.config = config or GitConfig()
        self._logger = logger
        self._secrets = [s for s in secrets if s]
        # Credentialed remote URL, kept in memory only
        self._push_url: Optional[str] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "git"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _sanitize(self, text: str) -> str:
        return sanitize_error_message(text, self._secrets)

    def _run_git(
        self,
        args: list[str],
        timeout: int = 30,
        error_class: type[PatchSwarmError] = PatchSwarmError,
        operation: str = "git",
    ) -> str:
        """
        Run a git command in the workspace.

        Returns:
            Command stdout.

        Raises:
            error_class: If git exits non-zero or times out.
        """
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=str(self.path),
                env=git_env(),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise error_class(f"{operation} timed out after {timeout}s")
        except FileNotFoundError:
            raise error_class("git executable not found")

        if result.returncode != 0:
            message = ErrorClassifier.describe_git_failure(operation, result.stderr or result.stdout)
            raise error_class(self._sanitize(message))
        return result.stdout

    @classmethod
    def clone(
        cls,
        repo_url: str,
        target: Path,
        config: Optional[GitConfig] = None,
        credential: Optional[str] = None,
        base_branch: Optional[str] = None,
        logger: Optional[RunLogger] = None,
    ) -> GitWorkspace:
        """
        Shallow-clone a repository, trying each credential URL form in turn.

        Args:
            repo_url: Repository URL or local path.
            target: Directory to clone into; must not exist yet.
            config: Git settings (depth, timeouts, identity).
            credential: Token for HTTPS remotes.
            base_branch: Branch to check out instead of the default.
            logger: Optional run logger.

        Raises:
            CloneFailure: When every candidate URL fails.
        """
        config = config or GitConfig()
        secrets = [credential] if credential else []
        workspace = cls(target, config, logger, secrets)

        last_error = "no clone attempted"
        candidates = authenticated_urls(repo_url, credential)
        for attempt, url in enumerate(candidates, start=1):
            if target.exists():
                shutil.rmtree(target, ignore_errors=True)

            args = ["git", "clone"]
            if config.clone_depth > 0 and not _is_local(repo_url):
                args += ["--depth", str(config.clone_depth)]
            if base_branch:
                args += ["--branch", base_branch]
            args += [url, str(target)]

            try:
                result = subprocess.run(
                    args,
                    env=git_env(),
                    capture_output=True,
                    text=True,
                    timeout=config.clone_timeout_seconds,
                )
            except subprocess.TimeoutExpired:
                last_error = f"Clone timed out after {config.clone_timeout_seconds}s"
                continue
            except FileNotFoundError:
                raise CloneFailure("git executable not found")

            if result.returncode == 0:
                public_url = strip_userinfo(repo_url)
                if url != public_url:
                    # git clone writes the URL it was given into .git/config
                    workspace._push_url = url
                    workspace._run_git(
                        ["remote", "set-url", "origin", public_url],
                        error_class=CloneFailure,
                        operation="Reset origin URL",
                    )
                workspace._log("clone_complete", {
                    "attempt": attempt,
                    "base_branch": base_branch,
                })
                return workspace

            last_error = ErrorClassifier.describe_git_failure("Clone", result.stderr)
            workspace._log("clone_attempt_failed", {
                "attempt": attempt,
                "error": workspace._sanitize(last_error),
            }, level="warn")

        raise CloneFailure(workspace._sanitize(last_error))

    def configure_identity(self) -> None:
        """Set the committer identity used for harvested commits."""
        self._run_git(["config", "user.name", self.config.committer_name])
        self._run_git(["config", "user.email", self.config.committer_email])

    def create_branch(self, name: str) -> None:
        """Create and check out the working branch."""
        self._run_git(
            ["checkout", "-b", name],
            error_class=BranchFailure,
            operation=f"Create branch {name}",
        )
        self._log("branch_created", {"branch": name})

    def head(self) -> str:
        """Current HEAD commit sha."""
        return self._run_git(["rev-parse", "HEAD"]).strip()

    def status_paths(self) -> list[str]:
        """Paths with uncommitted changes, untracked files included."""
        output = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        return [_porcelain_path(line) for line in output.splitlines() if len(line) > 3]

    def has_uncommitted_changes(self) -> bool:
        return bool(self.status_paths())

    def changed_files(self, baseline: str) -> list[str]:
        """
        Files that differ from the baseline commit.

        Covers commits the agent made itself as well as uncommitted and
        untracked work.
        """
        diffed = self._run_git(["diff", "--name-only", baseline]).splitlines()
        paths = [p.strip() for p in diffed if p.strip()] + self.status_paths()
        return list(dict.fromkeys(paths))

    def stage_all(self) -> None:
        self._run_git(["add", "-A"], error_class=CommitFailure, operation="Stage changes")

    def commit(self, message: str) -> None:
        self._run_git(["commit", "-m", message], error_class=CommitFailure, operation="Commit")
        self._log("changes_committed", {"message": message.splitlines()[0]})

    def push(self, branch: str) -> None:
        """Push the branch to origin, authenticating with the clone credential."""
        self._run_git(
            ["push", self._push_url or "origin", f"HEAD:refs/heads/{branch}"],
            timeout=self.config.push_timeout_seconds,
            error_class=PushFailure,
            operation="Push",
        )
        self._log("branch_pushed", {"branch": branch})


def _is_local(repo_url: str) -> bool:
    """Local paths ignore --depth and git warns; skip it for them."""
    return "://" not in repo_url and not repo_url.startswith("git@")
