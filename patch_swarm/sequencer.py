"""
Pass sequencing for Patch Swarm.

Runs the process supervisor once per selected mode:
- single pass for one mode, or the default mode when nothing was selected
- structural pass then refinement pass when the selection asks for it,
  with the second pass starting from the first pass's branch

Passes run strictly one after another; each gets a fresh supervisor.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from patch_swarm.config import PatchSwarmConfig
from patch_swarm.errors import SecondaryPassFailure
from patch_swarm.github_client import IssueCommenter
from patch_swarm.logger import RunLogger
from patch_swarm.mode_selector import ModeSelector, SelectorSettings
from patch_swarm.models import ModeSelection, RunOptions, RunResult, SequenceResult
from patch_swarm.modes import ModeCatalog
from patch_swarm.progress import ProgressCallback
from patch_swarm.supervisor import ProcessSupervisor

SupervisorFactory = Callable[[RunOptions], ProcessSupervisor]

REFINEMENT_NOTE = (
    "This is a second pass after an initial {primary} pass. The first pass made "
    "architectural changes and refactoring. This {secondary} pass should focus on "
    "fine-tuning the implementation details and ensuring all requirements are met."
)

STEP_COMMENT = (
    "{badge}\n\n"
    "✅ Step 1 completed: Changes applied with **{primary}** mode.\n\n"
    "Moving to step 2: Applying **{secondary}** mode..."
)


class PassSequencer:
    """
    Chains supervisor runs into ordered passes.

    The selector, configuration and supervisor factory are supplied by the
    caller; the sequencer keeps no state between run() calls.
    """

    def __init__(
        self,
        config: PatchSwarmConfig,
        selector: Optional[ModeSelector] = None,
        supervisor_factory: Optional[SupervisorFactory] = None,
        logger: Optional[RunLogger] = None,
    ) -> None:
        self.config = config
        self.selector = selector or ModeSelector(
            ModeCatalog.load(config.modes_path),
            SelectorSettings.from_config(config),
        )
        self._logger = logger
        self._supervisor_factory = supervisor_factory or self._default_supervisor

    def _default_supervisor(self, options: RunOptions) -> ProcessSupervisor:
        return ProcessSupervisor(
            self.config,
            options,
            catalog=self.selector.catalog,
            logger=self._logger,
        )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "sequencer"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def options_for(self, mode: str) -> RunOptions:
        """Run options for one pass, with any per-mode model override."""
        agent = self.config.agent
        return RunOptions(
            mode=mode,
            model=self.selector.model_for_mode(mode) or agent.model,
            timeout_seconds=agent.timeout_seconds,
            credentials=agent.get_credentials(),
        )

    def run(
        self,
        repo_url: str,
        issue_title: str,
        issue_body: str,
        issue_labels: Iterable[str],
        base_branch_hint: str,
        commenter: Optional[IssueCommenter] = None,
        credential: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        selection: Optional[ModeSelection] = None,
    ) -> SequenceResult:
        """
        Resolve modes for an issue and run the passes.

        Args:
            repo_url: Repository to clone.
            issue_title: Issue title.
            issue_body: Issue body.
            issue_labels: Issue label names, used for mode selection.
            base_branch_hint: Base for branch names, e.g. "issue-42".
            commenter: Receives a progress comment between passes.
            credential: Hosting token for clone and push.
            on_progress: Best-effort progress callback for every pass.
            selection: Explicit selection (e.g. from a /mode command);
                       overrides label-based selection.

        Returns:
            SequenceResult aggregating the passes that ran.
        """
        hint = base_branch_hint or "issue"
        if selection is None:
            selection = self.selector.select_from_labels(list(issue_labels))

        if selection is None:
            mode = self.config.sequencing.default_mode
            self._log("mode_selected", {"primary": mode, "source": "default"})
            return self._single_pass(mode, repo_url, issue_title, issue_body, hint, credential, on_progress)

        self._log("mode_selected", selection.to_dict())

        if not (selection.needs_sequencing and selection.secondary_mode and self.config.sequencing.enabled):
            return self._single_pass(
                selection.primary_mode, repo_url, issue_title, issue_body, hint, credential, on_progress
            )

        primary = selection.primary_mode
        secondary = selection.secondary_mode

        first = self._run_pass(
            primary,
            repo_url,
            issue_title,
            issue_body,
            f"{primary}-{hint}",
            credential,
            None,
            on_progress,
        )
        if not first.success:
            return SequenceResult(
                success=False,
                touched_files=list(first.touched_files),
                message=f"Failed during {primary} mode: {first.message}",
                modes_used=[primary],
                final_branch=None,
                pass_results=[first],
            )

        self._post_step_comment(commenter, primary, secondary)

        refinement = REFINEMENT_NOTE.format(primary=primary, secondary=secondary)
        second = self._run_pass(
            secondary,
            repo_url,
            issue_title,
            f"{issue_body}\n\n---\n\n{refinement}",
            f"{secondary}-on-{primary}-{hint}",
            credential,
            first.produced_branch,
            on_progress,
        )

        touched = list(dict.fromkeys([*first.touched_files, *second.touched_files]))

        if not second.success:
            error = SecondaryPassFailure(
                f"First pass ({primary}) successful, but second pass ({secondary}) "
                f"failed: {second.message}",
                inner_kind=second.failure,
            )
            self._log("secondary_pass_failed", {
                "primary_branch": first.produced_branch,
                "kind": second.failure.name if second.failure else None,
            }, level="warn")
            return SequenceResult(
                success=False,
                touched_files=touched,
                message=str(error),
                modes_used=[primary, secondary],
                final_branch=first.produced_branch,
                pass_results=[first, second],
            )

        return SequenceResult(
            success=True,
            touched_files=touched,
            message=f"Successfully applied changes with {primary} followed by {secondary} modes",
            modes_used=[primary, secondary],
            final_branch=second.produced_branch,
            pass_results=[first, second],
        )

    def _single_pass(
        self,
        mode: str,
        repo_url: str,
        issue_title: str,
        issue_body: str,
        hint: str,
        credential: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> SequenceResult:
        result = self._run_pass(
            mode, repo_url, issue_title, issue_body, f"{mode}-{hint}", credential, None, on_progress
        )
        return SequenceResult(
            success=result.success,
            touched_files=list(result.touched_files),
            message=result.message,
            modes_used=[mode],
            final_branch=result.produced_branch,
            pass_results=[result],
        )

    def _run_pass(
        self,
        mode: str,
        repo_url: str,
        issue_title: str,
        issue_body: str,
        target_branch: str,
        credential: Optional[str],
        base_branch: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> RunResult:
        """Run one mode, retrying timed-out or stuck attempts if configured."""
        attempts = 1 + max(self.config.sequencing.pass_retries, 0)
        options = self.options_for(mode)

        if self._logger:
            with self._logger.pass_context(mode):
                return self._attempt(
                    options, attempts, repo_url, issue_title, issue_body,
                    target_branch, credential, base_branch, on_progress,
                )
        return self._attempt(
            options, attempts, repo_url, issue_title, issue_body,
            target_branch, credential, base_branch, on_progress,
        )

    def _attempt(
        self,
        options: RunOptions,
        attempts: int,
        repo_url: str,
        issue_title: str,
        issue_body: str,
        target_branch: str,
        credential: Optional[str],
        base_branch: Optional[str],
        on_progress: Optional[ProgressCallback],
    ) -> RunResult:
        attempt = 1
        while True:
            supervisor = self._supervisor_factory(options)
            supervisor.init()
            result = supervisor.run(
                repo_url,
                issue_title,
                issue_body,
                target_branch,
                credential=credential,
                base_branch=base_branch,
                on_progress=on_progress,
            )
            if result.success or not result.retryable or attempt >= attempts:
                return result
            self._log("pass_retry", {
                "mode": options.mode,
                "attempt": attempt,
                "failure": result.failure.name if result.failure else None,
            }, level="warn")
            attempt += 1

    def _post_step_comment(
        self,
        commenter: Optional[IssueCommenter],
        primary: str,
        secondary: str,
    ) -> None:
        if commenter is None:
            return
        body = STEP_COMMENT.format(
            badge=self.selector.catalog.badge_for(primary),
            primary=primary,
            secondary=secondary,
        )
        try:
            posted = commenter.add_issue_comment(body)
        except Exception as e:
            self._log("progress_comment_failed", {"error": str(e)}, level="warn")
            return
        if posted is False:
            self._log("progress_comment_failed", {"error": "comment not posted"}, level="warn")
