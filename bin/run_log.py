#!/usr/bin/env python3
"""
Imgur Archive Run Log

Append-only log for one run. Every entry carries a monotonic id and a
severity colour; entries are echoed to the terminal with a [Tag] prefix
through tqdm.write so they do not tear an active progress bar.
"""

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Tuple

from tqdm import tqdm


class Severity(Enum):
    """Log colours understood by log views."""
    BLACK = "black"
    BLUE = "blue"
    GREEN = "green"
    ORANGE = "orange"
    RED = "red"
    PURPLE = "purple"


_TAGS = {
    Severity.BLACK: "",
    Severity.BLUE: "[Info] ",
    Severity.GREEN: "[OK] ",
    Severity.ORANGE: "[Warn] ",
    Severity.RED: "[Error] ",
    Severity.PURPLE: "[Mode] ",
}

LogFn = Callable[..., None]


@dataclass(frozen=True)
class LogEntry:
    id: int
    message: str
    severity: Severity


class RunLog:
    """
    Single-writer log sink.

    Args:
        echo: Print each entry as it is appended
    """

    def __init__(self, echo: bool = True):
        self._entries: List[LogEntry] = []
        self._counter = itertools.count()
        self._echo = echo

    def log(self, message: str, severity: Severity = Severity.BLACK) -> None:
        entry = LogEntry(id=next(self._counter), message=str(message), severity=severity)
        self._entries.append(entry)
        if self._echo:
            tqdm.write(f"{_TAGS[severity]}{entry.message}")

    @property
    def entries(self) -> Tuple[LogEntry, ...]:
        return tuple(self._entries)

    def messages(self, severity: Severity = None) -> List[str]:
        """Messages in emission order, optionally filtered by severity."""
        return [e.message for e in self._entries if severity is None or e.severity == severity]

    def __len__(self) -> int:
        return len(self._entries)
