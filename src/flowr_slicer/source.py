"""Document snapshots and source ranges."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SourceRange:
    """A 1-indexed, inclusive range within a document (flowR convention)."""

    start_line: int
    start_col: int
    end_line: int
    end_col: int

    @classmethod
    def from_list(cls, location: list[int] | tuple[int, ...]) -> SourceRange:
        sl, sc, el, ec = (int(v) for v in location)
        return cls(sl, sc, el, ec)

    def lines(self) -> range:
        """0-indexed line numbers covered by this range."""
        return range(self.start_line - 1, self.end_line)

    def __str__(self) -> str:
        return f"{self.start_line}:{self.start_col}-{self.end_line}:{self.end_col}"


def line_starts(text: str) -> list[int]:
    """Offsets at which each line of ``text`` begins."""
    starts = [0]
    for i, ch in enumerate(text):
        if ch == "\n":
            starts.append(i + 1)
    return starts


@dataclass(frozen=True)
class DocumentSnapshot:
    """Immutable view of a document's text at one point in time."""

    uri: str
    text: str
    version: int = 0
    _starts: list[int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_starts", line_starts(self.text))

    @property
    def line_count(self) -> int:
        return len(self._starts)

    def line_at(self, n: int) -> str:
        """Return the 0-indexed line without its line break, or '' if out of range."""
        if not 0 <= n < len(self._starts):
            return ""
        start = self._starts[n]
        end = self._starts[n + 1] - 1 if n + 1 < len(self._starts) else len(self.text)
        return self.text[start:end].rstrip("\r")

    def position_at(self, offset: int) -> tuple[int, int]:
        """Convert an offset to a 0-indexed ``(line, character)`` pair."""
        offset = max(0, min(offset, len(self.text)))
        line = bisect_right(self._starts, offset) - 1
        return line, offset - self._starts[line]

    def offset_at(self, line: int, character: int) -> int:
        """Convert a 0-indexed line/character pair to an offset, clamped to the line."""
        if line < 0:
            return 0
        if line >= len(self._starts):
            return len(self.text)
        start = self._starts[line]
        end = self._starts[line + 1] - 1 if line + 1 < len(self._starts) else len(self.text)
        return start + max(0, min(character, end - start))

    def criterion_at(self, offset: int) -> str:
        """Slicing criterion for the token at ``offset``, as flowR's ``line:col``."""
        line, character = self.position_at(offset)
        return f"{line + 1}:{character + 1}"

    def range_text(self, rng: SourceRange) -> str:
        """Extract the text covered by a range."""
        start = self.offset_at(rng.start_line - 1, rng.start_col - 1)
        end = self.offset_at(rng.end_line - 1, rng.end_col)
        return self.text[start:end]
