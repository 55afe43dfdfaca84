"""
Interactive prompt automation for the agent subprocess.

The agent asks yes/no questions on its output stream and waits for a line
on stdin. Each output chunk is checked against an ordered table of rules;
the first rule that matches answers and the rest are skipped, so a chunk
gets at most one answer.

Policy: accept prompts that apply, save or create code changes; decline
everything else (opening URLs, upgrades, shell commands) unless the prompt
talks about edits or changes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Union

PROCEED = "y"
DECLINE = "n"

# A chunk is only treated as a prompt when it offers a yes/no choice
YES_NO_SHAPE = re.compile(
    r"\(y\)es\s*/\s*\(n\)o|\[y/n\]|\(y/n\)|\byes/no\b|\[yes\]:?\s*$|\[no\]:?\s*$",
    re.IGNORECASE | re.MULTILINE,
)

PROMPT_END = re.compile(r"[:?\])>]\s*$")

CHANGE_WORDS = re.compile(r"\b(edit|edits|editing|save|saving|apply|applying|change|changes)\b", re.IGNORECASE)

# Self-upgrade notices that mean the running process must be restarted
UPGRADE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"re-?run \S+ to use (?:the )?new version", re.IGNORECASE),
    re.compile(r"successfully (?:installed|upgraded) \S*aider", re.IGNORECASE),
    re.compile(r"\bupgraded (?:itself|aider) to\b", re.IGNORECASE),
    re.compile(r"restart(?:ing)? (?:to|for) (?:use )?(?:the )?(?:new|updated) version", re.IGNORECASE),
)

URL_PATTERN = re.compile(r"https?://[^\s)>\]\"']+")

Responder = Union[str, Callable[[str], str]]


@dataclass(frozen=True)
class PromptRule:
    """One row of the prompt table: a matcher and its canned response."""
    name: str
    pattern: re.Pattern[str]
    response: Responder

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))

    def respond(self, text: str) -> str:
        if callable(self.response):
            return self.response(text)
        return self.response


@dataclass(frozen=True)
class PromptMatch:
    """The rule that fired for a chunk and the answer to send."""
    rule: str
    response: str
    prompt: str


def _default_yes_no(text: str) -> str:
    return PROCEED if CHANGE_WORDS.search(text) else DECLINE


def _rule(name: str, pattern: str, response: Responder) -> PromptRule:
    return PromptRule(name=name, pattern=re.compile(pattern, re.IGNORECASE), response=response)


DEFAULT_PROMPT_RULES: tuple[PromptRule, ...] = (
    # Code-changing confirmations always proceed
    _rule("apply_edits", r"\b(?:apply|allow)\b[^?\n]*\b(?:edits?|changes?)\b", PROCEED),
    _rule("save_file", r"\bsave\b[^?\n]*\?", PROCEED),
    _rule("create_file", r"\bcreate\b[^?\n]*\bfiles?\b", PROCEED),
    # Adding a URL to the chat fetches it
    _rule("add_url_to_chat", r"\badd\s+<?https?://[^?\n]*\bto the chat\b", DECLINE),
    _rule("add_to_chat", r"\badd\s+(?!<?https?://)[^?\n]*\bto the chat\b", PROCEED),
    # Side effects outside the repository are declined
    _rule("open_url", r"\bopen\b[^?\n]*\b(?:url|urls|browser|link|docs|documentation)\b", DECLINE),
    _rule(
        "upgrade",
        r"\b(?:upgrade|update)\b[^?\n]*\b(?:versions?|aider|packages?|pip|dependenc(?:y|ies))\b"
        r"|\bnew(?:er)?\b[^?\n]*\bversion\b"
        r"|\binstall\b",
        DECLINE,
    ),
    _rule("shell_command", r"\brun\b[^?\n]*\b(?:shell|commands?)\b", DECLINE),
    # Anything else yes/no shaped
    _rule("yes_no_fallback", r".", _default_yes_no),
)


class PromptResponder:
    """
    Classifies output chunks against an ordered rule table.

    Stateless apart from the table; safe to share between threads.
    """

    def __init__(self, rules: Sequence[PromptRule] = DEFAULT_PROMPT_RULES) -> None:
        self.rules = tuple(rules)

    @staticmethod
    def looks_like_prompt(chunk: str) -> bool:
        """
        Whether the output ends at a yes/no question waiting for input.

        Only the last non-blank line counts, and it must end like a prompt,
        so a question split across two reads is answered once, after the
        second read completes it.
        """
        lines = [line for line in chunk.splitlines() if line.strip()]
        if not lines:
            return False
        last = lines[-1]
        return bool(YES_NO_SHAPE.search(last)) and bool(PROMPT_END.search(last))

    def match(self, chunk: str) -> Optional[PromptMatch]:
        """
        Find the answer for an output chunk.

        Returns:
            PromptMatch for the first matching rule, or None when the chunk
            is not a yes/no prompt.
        """
        if not self.looks_like_prompt(chunk):
            return None

        prompt = _prompt_line(chunk)
        for rule in self.rules:
            if rule.matches(prompt):
                return PromptMatch(rule=rule.name, response=rule.respond(prompt), prompt=prompt)
        return None


def _prompt_line(chunk: str) -> str:
    """The line(s) carrying the question, not the output before it."""
    lines = [line for line in chunk.splitlines() if line.strip()]
    if not lines:
        return ""
    # Questions sometimes wrap onto the line above the choice
    if "?" not in lines[-1] and len(lines) > 1:
        return "\n".join(lines[-2:]).strip()
    return lines[-1].strip()


def detects_self_upgrade(text: str) -> bool:
    """Whether output reports that the agent upgraded itself."""
    return any(pattern.search(text) for pattern in UPGRADE_PATTERNS)


def extract_urls(text: str) -> list[str]:
    return URL_PATTERN.findall(text)
