"""
Error taxonomy and classification for Patch Swarm.

This module provides:
- FailureKind enum for categorizing run failures
- Exception classes carrying a FailureKind
- ErrorClassifier for turning agent/git output into user-facing messages
- sanitize_error_message for stripping credentials from any text that
  leaves the supervisor
"""

from __future__ import annotations

import re
from enum import Enum, auto
from typing import Iterable, Optional


class FailureKind(Enum):
    """
    Classification of run failures.

    Used by the sequencer to decide whether a pass is worth retrying and by
    the CLI to pick a user message.
    """

    # Configuration and startup - fatal, raised out of init()
    CONFIG = auto()
    AGENT_INIT = auto()

    # Repository preparation
    CLONE_FAILED = auto()
    BRANCH_FAILED = auto()

    # Agent process
    SPAWN_FAILED = auto()
    PROMPT_WRITE_FAILED = auto()
    TIMEOUT = auto()
    STUCK = auto()
    AGENT_EXIT_ERROR = auto()     # Non-zero exit and nothing changed

    # Controlled outcomes, not errors
    UPSTREAM_UPGRADE_RESTART = auto()
    NO_CHANGES = auto()

    # Harvesting
    COMMIT_FAILED = auto()
    PUSH_FAILED = auto()

    # Sequencing
    SECONDARY_PASS_FAILED = auto()

    UNKNOWN = auto()


class PatchSwarmError(Exception):
    """
    Base exception for Patch Swarm errors.

    Includes a failure kind for handling decisions.
    """

    kind: FailureKind = FailureKind.UNKNOWN

    def __init__(
        self,
        message: str,
        kind: Optional[FailureKind] = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigError(PatchSwarmError):
    """Raised when configuration is invalid or cannot be loaded."""

    kind = FailureKind.CONFIG


class AgentInitError(PatchSwarmError):
    """Raised by init() when the agent binary is missing and cannot be installed."""

    kind = FailureKind.AGENT_INIT


class CloneFailure(PatchSwarmError):
    """Raised when the repository cannot be cloned."""

    kind = FailureKind.CLONE_FAILED


class BranchFailure(PatchSwarmError):
    """Raised when the working branch cannot be created."""

    kind = FailureKind.BRANCH_FAILED


class SpawnFailure(PatchSwarmError):
    """Raised when the agent subprocess cannot be started."""

    kind = FailureKind.SPAWN_FAILED


class PromptWriteFailure(PatchSwarmError):
    """Raised when an answer cannot be written to the agent's stdin."""

    kind = FailureKind.PROMPT_WRITE_FAILED


class AgentTimeout(PatchSwarmError):
    """The agent was terminated by the hard timeout or the absolute ceiling."""

    kind = FailureKind.TIMEOUT

    def __init__(self, message: str, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class StuckProcessTerminated(PatchSwarmError):
    """The agent stopped producing output and ignored liveness probes."""

    kind = FailureKind.STUCK

    def __init__(self, message: str, inactive_seconds: float = 0.0) -> None:
        super().__init__(message)
        self.inactive_seconds = inactive_seconds


class CommitFailure(PatchSwarmError):
    """Raised when harvested changes cannot be committed."""

    kind = FailureKind.COMMIT_FAILED


class PushFailure(PatchSwarmError):
    """Raised when the derived branch cannot be pushed."""

    kind = FailureKind.PUSH_FAILED


class SecondaryPassFailure(PatchSwarmError):
    """A refinement pass failed after a successful structural pass."""

    kind = FailureKind.SECONDARY_PASS_FAILED

    def __init__(self, message: str, inner_kind: Optional[FailureKind] = None) -> None:
        super().__init__(message)
        self.inner_kind = inner_kind


# Patterns removed from any text that leaves the supervisor
_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(https?://)[^@/\s:]+:[^@/\s]+@"), r"\1"),
    (re.compile(r"(https?://)[^@/\s]+@"), r"\1"),
    (re.compile(r"\b(gh[pousr])_[A-Za-z0-9]{16,}"), r"\1_REDACTED"),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}"), "github_pat_REDACTED"),
    (re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{20,}"), "sk-REDACTED"),
    (re.compile(r"\bkey[-_][A-Za-z0-9]{20,}"), "key-REDACTED"),
]


def sanitize_error_message(message: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """
    Strip credential-shaped substrings from a message.

    Args:
        message: Text that may contain URLs with userinfo or raw tokens.
        secrets: Literal secrets to remove wherever they appear.

    Returns:
        The message with credentials replaced.
    """
    for secret in secrets:
        if secret:
            message = message.replace(secret, "***")
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message


class ErrorClassifier:
    """
    Classifies agent and git output into user-facing explanations.

    Uses pattern matching on the captured output tail.
    """

    OPENAI_KEY_PATTERNS = [
        r"OPENAI_API_KEY",
        r"openai\.error\.AuthenticationError",
        r"openai\.AuthenticationError",
    ]

    ANTHROPIC_KEY_PATTERNS = [
        r"ANTHROPIC_API_KEY",
        r"anthropic\.AuthenticationError",
        r"anthropic\.api_key",
    ]

    BAD_ARGS_PATTERNS = [
        r"unrecognized arguments",
        r"error: argument",
    ]

    GIT_AUTH_PATTERNS = [
        r"Authentication failed",
        r"Invalid username or password",
        r"could not read Username",
        r"\b403\b",
        r"\b401\b",
    ]

    @staticmethod
    def _matches_any(text: str, patterns: list[str]) -> bool:
        return any(re.search(p, text, re.IGNORECASE) for p in patterns)

    @classmethod
    def describe_agent_failure(
        cls,
        output: str,
        returncode: int,
        binary: str = "aider",
        claude_model: bool = False,
    ) -> str:
        """
        Explain a failed agent run from its output.

        Args:
            output: Captured agent output (tail is enough).
            returncode: Process exit code.
            binary: Agent binary name, for install hints.
            claude_model: Whether an Anthropic model was configured.

        Returns:
            A message suitable for an issue comment.
        """
        if cls._matches_any(output, cls.ANTHROPIC_KEY_PATTERNS) or (
            claude_model and cls._matches_any(output, cls.OPENAI_KEY_PATTERNS)
        ):
            return (
                "Anthropic API key is missing or invalid. "
                "Please set the ANTHROPIC_API_KEY environment variable."
            )
        if cls._matches_any(output, cls.OPENAI_KEY_PATTERNS):
            return (
                "OpenAI API key is missing or invalid. "
                "Please set the OPENAI_API_KEY environment variable."
            )
        if cls._matches_any(output, cls.BAD_ARGS_PATTERNS):
            return (
                f"{binary} command line error. This may be due to version "
                f"differences; try upgrading {binary}."
            )
        tail = output.strip().splitlines()[-1:] if output.strip() else []
        detail = f": {tail[0][:200]}" if tail else ""
        return f"{binary} exited with code {returncode}{detail}"

    @classmethod
    def describe_git_failure(cls, operation: str, stderr: str) -> str:
        """Explain a failed clone or push."""
        if cls._matches_any(stderr, cls.GIT_AUTH_PATTERNS):
            if re.search(r"Permission to .* denied", stderr):
                return (
                    f"{operation} failed: permission denied. The token does not "
                    f"have access to this repository."
                )
            return (
                f"{operation} failed: authentication error. The token may be "
                f"invalid or missing required permissions."
            )
        if re.search(r"timed out|ETIMEDOUT", stderr, re.IGNORECASE):
            return f"{operation} timed out. Check network connectivity or repository size."
        first_line = stderr.strip().splitlines()[0] if stderr.strip() else "unknown error"
        return f"{operation} failed: {first_line[:300]}"


def get_user_action_message(error: PatchSwarmError) -> str:
    """
    Get a user-friendly message for an error.

    Args:
        error: The error that occurred.

    Returns:
        Message with instructions where the user can act on it.
    """
    if error.kind == FailureKind.AGENT_INIT:
        return (
            f"Agent is not available: {error}\n"
            "Install it manually (for example: pip install aider-chat) and retry."
        )
    if error.kind == FailureKind.CONFIG:
        return f"Configuration error: {error}"
    if error.kind in (FailureKind.TIMEOUT, FailureKind.STUCK):
        return f"{error}\nThe agent may succeed on retry or with a longer timeout."
    return str(error)
