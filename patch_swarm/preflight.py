"""
Pre-flight checks for the agent CLI.

This module validates that the agent binary is:
- Installed and on PATH
- Able to report its version
- Installable through the configured bootstrap command when missing

Problems are detected before any repository is cloned, with a clear
message, rather than failing mid-run.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from patch_swarm.errors import AgentInitError

if TYPE_CHECKING:
    from patch_swarm.config import AgentConfig
    from patch_swarm.logger import RunLogger


@dataclass
class PreFlightResult:
    """Result of the agent availability check."""

    success: bool
    installed: bool = False
    version: Optional[str] = None
    bootstrapped: bool = False                 # Installed during this check
    errors: list[str] = field(default_factory=list)


class AgentPreflight:
    """
    Ensures the agent CLI can be launched.

    Checks:
    - binary exists (via shutil.which)
    - `<binary> --version` succeeds
    - otherwise runs the install command once and checks again
    """

    def __init__(
        self,
        binary: str = "aider",
        install_command: Optional[list[str]] = None,
        timeout_seconds: int = 30,
        logger: Optional[RunLogger] = None,
    ) -> None:
        self.binary = binary
        self.install_command = list(install_command or [])
        self.timeout_seconds = timeout_seconds
        self._logger = logger

    @classmethod
    def from_config(cls, config: AgentConfig, logger: Optional[RunLogger] = None) -> AgentPreflight:
        return cls(
            binary=config.binary,
            install_command=config.install_command,
            timeout_seconds=config.version_timeout_seconds,
            logger=logger,
        )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "preflight"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def check_installed(self) -> bool:
        """Check if the agent binary is on PATH."""
        return shutil.which(self.binary) is not None

    def get_version(self) -> Optional[str]:
        """
        Ask the agent for its version.

        Returns:
            The first line of `--version` output, or None if it failed.
        """
        try:
            result = subprocess.run(
                [self.binary, "--version"],
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired):
            return None

        if result.returncode != 0:
            return None
        output = (result.stdout or result.stderr).strip()
        return output.splitlines()[0] if output else ""

    def install(self) -> bool:
        """Run the bootstrap install command."""
        if not self.install_command:
            return False

        self._log("agent_install_start", {"command": " ".join(self.install_command)})
        try:
            result = subprocess.run(
                self.install_command,
                capture_output=True,
                text=True,
                timeout=max(self.timeout_seconds * 10, 300),
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            self._log("agent_install_failed", {"error": str(e)}, level="error")
            return False

        if result.returncode != 0:
            self._log("agent_install_failed", {
                "returncode": result.returncode,
                "stderr": result.stderr[-500:] if result.stderr else "",
            }, level="error")
            return False
        return True

    def run_checks(self) -> PreFlightResult:
        """Check the agent, bootstrapping it if it is missing."""
        version = self.get_version() if self.check_installed() else None
        if version is not None:
            self._log("agent_available", {"binary": self.binary, "version": version})
            return PreFlightResult(success=True, installed=True, version=version)

        if not self.install_command:
            return PreFlightResult(
                success=False,
                errors=[f"{self.binary} not found and no install command is configured"],
            )

        if not self.install():
            return PreFlightResult(
                success=False,
                errors=[f"{self.binary} not found and `{' '.join(self.install_command)}` failed"],
            )

        version = self.get_version() if self.check_installed() else None
        if version is None:
            return PreFlightResult(
                success=False,
                bootstrapped=True,
                errors=[f"{self.binary} was installed but still cannot be run"],
            )

        self._log("agent_available", {"binary": self.binary, "version": version, "bootstrapped": True})
        return PreFlightResult(success=True, installed=True, version=version, bootstrapped=True)

    def ensure_available(self) -> str:
        """
        Make sure the agent can run.

        Returns:
            The agent version string.

        Raises:
            AgentInitError: If the agent is missing and cannot be installed.
        """
        result = self.run_checks()
        if not result.success:
            raise AgentInitError("; ".join(result.errors))
        return result.version or ""
