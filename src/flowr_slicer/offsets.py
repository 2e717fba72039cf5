"""Mapping of character offsets through text edits."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class Edit:
    """One contiguous replacement: ``replaced_length`` chars at ``start`` become ``new_text``."""

    start: int
    replaced_length: int
    new_text: str = ""

    @property
    def end(self) -> int:
        return self.start + self.replaced_length

    @property
    def text_length(self) -> int:
        return len(self.new_text)

    @property
    def delta(self) -> int:
        return self.text_length - self.replaced_length

    def apply(self, text: str) -> str:
        """Return ``text`` with this edit applied."""
        return text[:self.start] + self.new_text + text[self.end:]


def shift_offset(offset: int, edit: Edit) -> int | None:
    """Return where ``offset`` lands after ``edit``, or None if the edit destroys it."""
    if edit.start > offset:
        # edit lies after the position
        return offset
    if edit.end > offset:
        # position lies inside the replaced range
        return None
    return offset + edit.delta


def map_offset(offset: int, edits: Iterable[Edit]) -> int | None:
    """Apply ``edits`` to ``offset`` in order; None as soon as one invalidates it."""
    current: int | None = offset
    for edit in edits:
        current = shift_offset(current, edit)
        if current is None:
            return None
    return current
