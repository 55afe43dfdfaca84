"""
Mode selection for Patch Swarm.

Resolves which mode(s) should handle an issue:
- From labels, by walking the catalog in its fixed order
- From a `/mode <token>` command, including `a+b` sequences
- From title/body content, as a best-effort keyword classifier

All selection functions are pure: they depend only on their inputs, the
immutable catalog, and the tuning constants passed at construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from patch_swarm.modes import ModeCatalog
from patch_swarm.models import ModeSelection

if TYPE_CHECKING:
    from patch_swarm.config import PatchSwarmConfig


ARCHITECTURE_KEYWORDS: tuple[str, ...] = (
    "refactor", "redesign", "architecture", "restructure",
    "design pattern", "rewrite", "overhaul", "major update",
    "significant change", "fundamental", "framework", "infrastructure",
)

PATCH_KEYWORDS: tuple[str, ...] = (
    "fix bug", "bugfix", "patch", "issue", "error",
    "crash", "typo", "incorrect behavior", "minor issue",
    "quick fix", "small change", "small update",
)

MULTIPASS_TOKEN = "multipass"


@dataclass(frozen=True)
class HeuristicWeights:
    """
    Tuning constants for the content classifier.

    These values are unvalidated defaults and are expected to be
    recalibrated; treat them as configuration, not as contract.
    """
    architect_weight: int = 2
    sequencing_threshold: int = 3


@dataclass(frozen=True)
class HeuristicScore:
    """Scores produced by the content classifier, for display."""
    architect: int
    patcher: int
    code_blocks: int


@dataclass(frozen=True)
class SelectorSettings:
    """Sequencing defaults the selector needs from configuration."""
    marker_labels: tuple[str, ...] = ("multipass", "patch-swarm:multipass")
    default_sequence: tuple[str, str] = ("architect", "patcher")
    default_mode: str = "patcher"
    weights: HeuristicWeights = field(default_factory=HeuristicWeights)

    @classmethod
    def from_config(cls, config: PatchSwarmConfig) -> SelectorSettings:
        first, second = config.sequencing.default_sequence
        return cls(
            marker_labels=tuple(config.sequencing.marker_labels),
            default_sequence=(first, second),
            default_mode=config.sequencing.default_mode,
            weights=HeuristicWeights(
                architect_weight=config.heuristics.architect_weight,
                sequencing_threshold=config.heuristics.sequencing_threshold,
            ),
        )


class ModeSelector:
    """
    Chooses the mode(s) for an issue.

    The catalog and settings are supplied by the caller; nothing is read
    from process-wide state.
    """

    def __init__(
        self,
        catalog: ModeCatalog,
        settings: Optional[SelectorSettings] = None,
    ) -> None:
        self.catalog = catalog
        self.settings = settings or SelectorSettings()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _selection(
        self,
        primary: str,
        secondary: Optional[str] = None,
    ) -> ModeSelection:
        return ModeSelection(
            primary_mode=primary,
            secondary_mode=secondary,
            needs_sequencing=secondary is not None,
            directive=self.catalog.directive_for(primary),
        )

    def _default_sequence(self) -> ModeSelection:
        first, second = self.settings.default_sequence
        return self._selection(first, second)

    def has_sequencing_marker(self, labels: Iterable[str]) -> bool:
        markers = set(self.settings.marker_labels)
        return any(label in markers for label in labels)

    def valid_mode_tokens(self) -> list[str]:
        """Tokens accepted after `/mode`, for help text."""
        first, second = self.settings.default_sequence
        return self.catalog.names() + [MULTIPASS_TOKEN, f"{first}+{second}"]

    def directive_for_mode(self, mode: str) -> Optional[str]:
        return self.catalog.directive_for(mode)

    def model_for_mode(self, mode: str) -> Optional[str]:
        return self.catalog.model_for(mode)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_from_labels(self, labels: Iterable[str]) -> Optional[ModeSelection]:
        """
        Select a mode from issue labels.

        The first catalog mode whose labels intersect the issue's labels
        wins. A structural winner plus a sequencing marker becomes a
        two-pass selection with the catalog's default second stage. With no
        matching mode, a marker alone selects the default sequence.

        Args:
            labels: Issue label names.

        Returns:
            ModeSelection, or None when nothing applies.
        """
        label_set = {label for label in labels if label}
        if not label_set:
            return None

        has_marker = self.has_sequencing_marker(label_set)

        for mode in self.catalog:
            if not label_set.intersection(mode.labels):
                continue
            if mode.structural and not mode.is_hybrid and has_marker:
                return self._selection(mode.name, self.catalog.default_second_stage)
            return self._selection(mode.name)

        if has_marker:
            return self._default_sequence()

        return None

    def select_from_command(self, command: str) -> Optional[ModeSelection]:
        """
        Select a mode from a command such as `/mode architect+patcher`.

        Returns:
            ModeSelection, or None for a missing or unrecognized token.
        """
        parts = command.strip().split()
        if len(parts) < 2:
            return None

        token = parts[1].lower()

        if token == MULTIPASS_TOKEN:
            return self._default_sequence()

        if "+" in token:
            modes = [m for m in token.split("+") if m]
            if len(modes) != 2 or not all(m in self.catalog for m in modes):
                return None
            return self._selection(modes[0], modes[1])

        if token in self.catalog:
            return self._selection(token)

        return None

    def score_content(self, title: str, body: str) -> HeuristicScore:
        """Keyword and code-block scores for an issue's text."""
        title_lower = (title or "").lower()
        body_lower = (body or "").lower()

        architect = 0
        patcher = 0
        for text in (title_lower, body_lower):
            architect += sum(1 for keyword in ARCHITECTURE_KEYWORDS if keyword in text)
            patcher += sum(1 for keyword in PATCH_KEYWORDS if keyword in text)

        # A fenced block is a pair of ``` markers
        code_blocks = (body or "").count("```") // 2
        patcher += code_blocks
        architect *= self.settings.weights.architect_weight

        return HeuristicScore(architect=architect, patcher=patcher, code_blocks=code_blocks)

    def analyze_issue(
        self,
        title: str,
        body: str,
        labels: Iterable[str] = (),
    ) -> ModeSelection:
        """
        Recommend modes for an issue.

        Labels take precedence; otherwise the content classifier decides.
        Ties go to the default patch mode.
        """
        label_result = self.select_from_labels(labels)
        if label_result is not None:
            return label_result

        score = self.score_content(title, body)
        first, second = self.settings.default_sequence

        if score.architect > score.patcher:
            if score.architect > self.settings.weights.sequencing_threshold:
                return self._selection(first, second)
            return self._selection(first)

        return self._selection(self.settings.default_mode)
