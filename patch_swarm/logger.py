"""
Per-run JSONL event log.

One file per run key and UTC day: <state_dir>/logs/<run_key>-YYYY-MM-DD.jsonl.
Supervisor components append through `log()`; `patch-swarm logs` reads the
file back through `read_logs()`.

Log data must never carry credentials; callers pass sanitized text only.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from patch_swarm.config import PatchSwarmConfig, get_config

LEVELS = ("debug", "info", "warn", "error")


def _utc_day() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class RunLogger:
    """
    Appends structured entries for one run key.

    Entry fields: timestamp (UTC, Z suffix), level, event_type, run_key,
    data, and pass (the mode) while inside `pass_context`.
    """

    def __init__(self, run_key: str, config: Optional[PatchSwarmConfig] = None) -> None:
        self.run_key = run_key
        self._config = config
        self._mode: Optional[str] = None
        # Reader and watchdog threads log concurrently
        self._lock = threading.Lock()

    @property
    def config(self) -> PatchSwarmConfig:
        if self._config is None:
            self._config = get_config()
        return self._config

    def path_for(self, day: Optional[str] = None) -> Path:
        return self.config.logs_path / f"{self.run_key}-{day or _utc_day()}.jsonl"

    def log(self, event_type: str, data: Optional[dict[str, Any]] = None, level: str = "info") -> None:
        """Append one entry to today's file."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "run_key": self.run_key,
            "data": data or {},
        }
        if self._mode:
            entry["pass"] = self._mode

        line = json.dumps(entry, default=str) + "\n"
        path = self.path_for()
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(line)

    @contextmanager
    def pass_context(self, mode: str) -> Iterator[RunLogger]:
        """Tag every entry written inside the block with the pass's mode."""
        outer = self._mode
        self._mode = mode
        self.log("pass_start", {"mode": mode})
        try:
            yield self
        finally:
            self.log("pass_end", {"mode": mode})
            self._mode = outer

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Entries for one day (today by default), oldest first.

        Args:
            date: YYYY-MM-DD.
            level: Keep only this level.
            event_type: Keep only this event type.
            limit: Keep at most this many entries.

        Unparseable lines are skipped.
        """
        path = self.path_for(date)
        if not path.exists():
            return []

        entries: list[dict[str, Any]] = []
        with open(path) as f:
            for raw in f:
                try:
                    entry = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                entries.append(entry)
                if limit and len(entries) >= limit:
                    break
        return entries
