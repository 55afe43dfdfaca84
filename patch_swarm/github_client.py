"""
GitHub issue access through the gh CLI.

This module provides:
- IssueCommenter, the protocol the sequencer posts progress through
- GitHubIssueClient, which reads an issue and comments on it with `gh`

Operations are optional for a run: failures are logged and reported as
False/None rather than raised.
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from patch_swarm.config import PatchSwarmConfig
    from patch_swarm.logger import RunLogger


class IssueCommenter(Protocol):
    """Anything that can post a comment on the issue being worked."""

    def add_issue_comment(self, body: str) -> bool:
        ...


@dataclass
class IssueDetails:
    """The parts of an issue a run needs."""
    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    url: str = ""


class GitHubIssueClient:
    """
    Reads and comments on one GitHub issue.

    Uses the gh CLI, so authentication follows `gh auth` or GH_TOKEN.
    """

    def __init__(
        self,
        config: PatchSwarmConfig,
        issue_number: int,
        logger: Optional[RunLogger] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: PatchSwarmConfig with repo_root and github.repo.
            issue_number: Issue to read and comment on.
            logger: Optional logger for recording operations.
        """
        self.config = config
        self.issue_number = issue_number
        self._logger = logger
        self._gh_available: Optional[bool] = None

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "github", "issue": self.issue_number}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _repo_args(self) -> list[str]:
        return ["--repo", self.config.github.repo] if self.config.github.repo else []

    def _check_gh_available(self) -> bool:
        """
        Check if gh CLI is available and authenticated.

        Results are cached after first check.
        """
        if self._gh_available is not None:
            return self._gh_available

        try:
            result = subprocess.run(
                ["gh", "auth", "status"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            self._gh_available = result.returncode == 0
            if not self._gh_available:
                self._log("gh_auth_failed", {
                    "stderr": result.stderr[:200] if result.stderr else "",
                }, level="warn")
        except FileNotFoundError:
            self._gh_available = False
            self._log("gh_not_found", level="warn")
        except subprocess.TimeoutExpired:
            self._gh_available = False
            self._log("gh_timeout", level="warn")

        return self._gh_available

    def _run_gh_command(
        self,
        args: list[str],
        timeout: int = 30,
    ) -> tuple[bool, str, str]:
        """
        Run a gh CLI command.

        Returns:
            Tuple of (success, stdout, stderr).
        """
        if not self._check_gh_available():
            return False, "", "gh CLI not available"

        try:
            result = subprocess.run(
                ["gh"] + args,
                cwd=str(self.config.repo_root),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
            return result.returncode == 0, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            return False, "", "Command timed out"
        except OSError as e:
            return False, "", str(e)

    def get_issue(self) -> Optional[IssueDetails]:
        """Fetch the issue's title, body and labels."""
        success, stdout, stderr = self._run_gh_command([
            "issue", "view", str(self.issue_number),
            "--json", "number,title,body,labels,url",
            *self._repo_args(),
        ])
        if not success:
            self._log("issue_fetch_failed", {"error": stderr[:200]}, level="warn")
            return None

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            self._log("issue_fetch_failed", {"error": "invalid JSON from gh"}, level="warn")
            return None

        return IssueDetails(
            number=int(data.get("number", self.issue_number)),
            title=data.get("title", ""),
            body=data.get("body") or "",
            labels=[label.get("name", "") for label in data.get("labels", []) if label.get("name")],
            url=data.get("url", ""),
        )

    def get_clone_url(self) -> Optional[str]:
        """HTTPS clone URL of the configured repository."""
        success, stdout, stderr = self._run_gh_command([
            "repo", "view", *([self.config.github.repo] if self.config.github.repo else []),
            "--json", "url",
        ])
        if not success:
            self._log("repo_lookup_failed", {"error": stderr[:200]}, level="warn")
            return None
        try:
            url = json.loads(stdout).get("url", "")
        except json.JSONDecodeError:
            return None
        return f"{url}.git" if url and not url.endswith(".git") else url or None

    def add_issue_comment(self, body: str) -> bool:
        """
        Post a comment on the issue.

        Returns:
            True if the comment was posted.
        """
        success, _, stderr = self._run_gh_command([
            "issue", "comment", str(self.issue_number),
            "--body", body,
            *self._repo_args(),
        ])
        if not success:
            self._log("comment_failed", {"error": stderr[:200]}, level="warn")
        return success
