from __future__ import annotations

import sys
import typing as t

Command = t.Union[str, t.Sequence[str]]


class Console:
    def __init__(self, *, quiet: bool = False) -> None:
        self.quiet = quiet

    def info(self, value: str) -> None:
        if not self.quiet:
            print(value)

    def always(self, value: str) -> None:
        print(value)

    def warn(self, value: str) -> None:
        print(f"Warning: {value}", file=sys.stderr)


class TimingsCollector:
    def __init__(self) -> None:
        self._entries: list[tuple[str, float]] = []

    def add(self, label: str, duration: float) -> None:
        self._entries.append((label, duration))

    @property
    def labels(self) -> list[str]:
        return [label for label, _ in self._entries]

    def summary(self) -> list[str]:
        if not self._entries:
            return []

        lines: list[str] = ["Stage timings:"]
        width = max(len(label) for label, _ in self._entries)
        for label, duration in self._entries:
            lines.append(f"  ├─ {label.ljust(width)}  {duration:.2f}s")
        total = sum(duration for _, duration in self._entries)
        lines.append(f"\nTotal wall time: {total:.2f}s")
        return lines
