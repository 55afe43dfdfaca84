"""
Mode catalog for Patch Swarm.

A mode is a named operating strategy for the agent: a label set that
selects it, a directive prepended to the agent's message, and default
command-line arguments. The catalog is built once at startup from the
built-in modes plus an optional override file, and is immutable afterwards.

Override file (YAML or JSON):

    directives:
      architect: "You are ..."
    models:
      architect: claude-3-7-sonnet-latest
    modes:
      hybrid:docs:
        labels: [docs]
        directive: "You are a technical writer ..."
        args: []
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

import yaml

from patch_swarm.errors import ConfigError


@dataclass(frozen=True)
class Mode:
    """A named operating strategy for the agent."""
    name: str
    labels: tuple[str, ...]
    directive: str
    default_args: tuple[str, ...] = ()
    structural: bool = False                   # Eligible as a first, structural pass
    badge_color: str = "lightgrey"

    @property
    def is_hybrid(self) -> bool:
        """category:subtype modes; these never start a sequence."""
        return ":" in self.name

    def badge_markdown(self) -> str:
        """Shields.io badge for PR bodies and issue comments."""
        text = self.name.replace(":", "%3A").replace("-", "--")
        return f"![{self.name}](https://img.shields.io/badge/mode-{text}-{self.badge_color})"


BUILTIN_MODES: tuple[Mode, ...] = (
    Mode(
        name="architect",
        labels=("architect", "mode:architect", "refactor"),
        directive=(
            "You are an expert software architect. Focus on making structural "
            "improvements, refactoring, and ensuring the codebase follows sound "
            "design. Consider the big picture and long-term maintainability."
        ),
        default_args=("--architect",),
        structural=True,
        badge_color="blue",
    ),
    Mode(
        name="patcher",
        labels=("patcher", "mode:patcher", "bug"),
        directive=(
            "You are an expert programmer focused on fixing bugs and implementing "
            "specific features. Make targeted changes that solve the immediate "
            "problem without unnecessary refactoring."
        ),
        default_args=("--edit-format", "diff"),
        badge_color="green",
    ),
    Mode(
        name="hybrid:security",
        labels=("security", "mode:security"),
        directive=(
            "You are a security expert. Identify and fix security vulnerabilities, "
            "ensure proper input validation and prevent injection attacks."
        ),
        badge_color="red",
    ),
    Mode(
        name="hybrid:performance",
        labels=("performance", "mode:performance"),
        directive=(
            "You are a performance optimization expert. Identify bottlenecks, "
            "improve algorithm efficiency and reduce unnecessary work."
        ),
        badge_color="orange",
    ),
    Mode(
        name="hybrid:typescript",
        labels=("typescript", "mode:typescript"),
        directive=(
            "You are a TypeScript expert. Add proper type annotations, convert "
            "JavaScript to TypeScript and improve type safety."
        ),
        badge_color="blueviolet",
    ),
)

DEFAULT_SECOND_STAGE = "patcher"


@dataclass(frozen=True)
class ModeOverrides:
    """Externally supplied directive and model overrides."""
    directives: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    models: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    extra_modes: tuple[Mode, ...] = ()


def _parse_extra_mode(name: str, data: Any) -> Mode:
    if not isinstance(data, dict):
        raise ConfigError(f"Mode '{name}' must be a mapping")
    labels = data.get("labels", [name])
    args = data.get("args", [])
    if not isinstance(labels, list) or not isinstance(args, list):
        raise ConfigError(f"Mode '{name}' labels and args must be lists")
    return Mode(
        name=name.lower(),
        labels=tuple(str(label) for label in labels),
        directive=str(data.get("directive", "")),
        default_args=tuple(str(arg) for arg in args),
        structural=bool(data.get("structural", False)),
        badge_color=str(data.get("badge_color", "lightgrey")),
    )


def load_mode_overrides(path: Optional[Path]) -> ModeOverrides:
    """
    Load the optional override file.

    A missing path yields empty overrides; an unreadable or malformed file
    raises ConfigError.
    """
    if path is None or not path.exists():
        return ModeOverrides()

    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read mode overrides from {path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"Mode overrides in {path} must be a mapping")

    directives = raw.get("directives") or raw.get("systemPrompts") or {}
    models = raw.get("models") or raw.get("modelMap") or {}
    if not isinstance(directives, dict) or not isinstance(models, dict):
        raise ConfigError("directives and models must be mappings")

    extra = raw.get("modes") or {}
    if not isinstance(extra, dict):
        raise ConfigError("modes must be a mapping of name to definition")

    return ModeOverrides(
        directives=MappingProxyType({str(k).lower(): str(v) for k, v in directives.items()}),
        models=MappingProxyType({str(k).lower(): str(v) for k, v in models.items()}),
        extra_modes=tuple(_parse_extra_mode(str(k), v) for k, v in extra.items()),
    )


class ModeCatalog:
    """
    Ordered, immutable registry of modes.

    Iteration order is the label-matching priority order: built-in modes
    first, then extra modes from the override file in file order. An extra
    mode with a built-in name replaces the built-in in place.
    """

    def __init__(
        self,
        modes: tuple[Mode, ...] = BUILTIN_MODES,
        overrides: Optional[ModeOverrides] = None,
        default_second_stage: str = DEFAULT_SECOND_STAGE,
    ) -> None:
        self._overrides = overrides or ModeOverrides()

        merged: dict[str, Mode] = {mode.name: mode for mode in modes}
        for mode in self._overrides.extra_modes:
            merged[mode.name] = mode
        self._modes: tuple[Mode, ...] = tuple(merged.values())
        self._by_name: Mapping[str, Mode] = MappingProxyType(dict(merged))

        if default_second_stage not in self._by_name:
            raise ConfigError(f"Unknown default second stage: {default_second_stage}")
        self.default_second_stage = default_second_stage

    @classmethod
    def load(cls, overrides_path: Optional[Path] = None) -> ModeCatalog:
        """Build the catalog from built-ins plus an optional override file."""
        return cls(overrides=load_mode_overrides(overrides_path))

    def __iter__(self) -> Iterator[Mode]:
        return iter(self._modes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._by_name

    def __len__(self) -> int:
        return len(self._modes)

    def get(self, name: str) -> Optional[Mode]:
        return self._by_name.get(name.lower())

    def names(self) -> list[str]:
        return [mode.name for mode in self._modes]

    def directive_for(self, name: str) -> Optional[str]:
        """Directive text, override first, then catalog default."""
        key = name.lower()
        if key in self._overrides.directives:
            return self._overrides.directives[key]
        mode = self._by_name.get(key)
        if mode is None or not mode.directive:
            return None
        return mode.directive

    def model_for(self, name: str) -> Optional[str]:
        """Model override for a mode, if any."""
        return self._overrides.models.get(name.lower())

    def default_args_for(self, name: str) -> tuple[str, ...]:
        mode = self._by_name.get(name.lower())
        return mode.default_args if mode else ()

    def badge_for(self, name: str) -> str:
        mode = self._by_name.get(name.lower())
        if mode is None:
            mode = Mode(name=name, labels=(), directive="")
        return mode.badge_markdown()
