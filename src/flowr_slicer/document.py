"""Live documents kept in sync with the editor."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from lsprotocol import types as lsp
from pygls.workspace import PositionCodec

from flowr_slicer.offsets import Edit
from flowr_slicer.source import DocumentSnapshot
from flowr_slicer.tokens import TokenIndex

logger = logging.getLogger(__name__)


class TextDocument:
    """The current text of one open document.

    Offsets and ``offset_at``/``position_at`` count code points. Positions
    exchanged with the editor count units of the negotiated position
    encoding (UTF-16 unless the client offers another) and go through
    ``codec``.
    """

    def __init__(
        self,
        uri: str,
        text: str = "",
        version: int = 0,
        language_id: str = "r",
        codec: PositionCodec | None = None,
    ) -> None:
        self.uri = uri
        self.version = version
        self.language_id = language_id
        self.codec = codec or PositionCodec()
        self._text = text
        self._snapshot: DocumentSnapshot | None = None
        self._tokens: TokenIndex | None = None

    @property
    def text(self) -> str:
        return self._text

    def snapshot(self) -> DocumentSnapshot:
        if self._snapshot is None:
            self._snapshot = DocumentSnapshot(self.uri, self._text, self.version)
        return self._snapshot

    def token_index(self) -> TokenIndex:
        if self._tokens is None:
            self._tokens = TokenIndex(self._text)
        return self._tokens

    def normalize(self, offset: int) -> int | None:
        return self.token_index().normalize(offset)

    def offset_at(self, line: int, character: int) -> int:
        return self.snapshot().offset_at(line, character)

    def position_at(self, offset: int) -> tuple[int, int]:
        return self.snapshot().position_at(offset)

    # ── Editor positions ─────────────────────────────────────────

    def offset_from_client(self, line: int, character: int) -> int:
        """Offset of an editor position, clamped like ``offset_at``."""
        snapshot = self.snapshot()
        if line < 0:
            return 0
        if line >= snapshot.line_count:
            return len(self._text)
        text = snapshot.line_at(line)
        character = max(0, min(character, self.codec.client_num_units(text)))
        pos = self.codec.position_from_client_units([text], lsp.Position(line=0, character=character))
        return snapshot.offset_at(line, pos.character)

    def client_character(self, line: int, character: int) -> int:
        """Editor column of the code point column ``character`` on ``line``."""
        return self.codec.client_num_units(self.snapshot().line_at(line)[:character])

    def client_position(self, offset: int) -> lsp.Position:
        line, character = self.position_at(offset)
        return lsp.Position(line=line, character=self.client_character(line, character))

    def _set_text(self, text: str) -> None:
        self._text = text
        self._snapshot = None
        self._tokens = None

    def replace(self, text: str, version: int | None = None) -> Edit:
        """Replace the whole text; returns the equivalent edit."""
        edit = Edit(0, len(self._text), text)
        self._set_text(text)
        if version is not None:
            self.version = version
        return edit

    def apply_edits(self, edits: Iterable[Edit], version: int | None = None) -> None:
        """Apply edits in order, each against the result of the previous one."""
        text = self._text
        for edit in edits:
            text = edit.apply(text)
        self._set_text(text)
        if version is not None:
            self.version = version

    def apply_changes(self, changes: Sequence[object], version: int | None = None) -> list[Edit]:
        """Apply LSP content changes in order and return them as offset edits.

        Each change's range refers to the text as left by the previous
        change. A change without a range replaces the whole document.
        """
        edits: list[Edit] = []
        for change in changes:
            new_text = getattr(change, "text", "")
            rng = getattr(change, "range", None)
            if rng is None:
                edits.append(self.replace(new_text))
                continue
            start = self.offset_from_client(rng.start.line, rng.start.character)
            end = self.offset_from_client(rng.end.line, rng.end.character)
            edit = Edit(start, max(0, end - start), new_text)
            self._set_text(edit.apply(self._text))
            edits.append(edit)
        if version is not None:
            self.version = version
        logger.debug("%s: applied %d change(s), version %s", self.uri, len(edits), self.version)
        return edits


class DocumentStore:
    """Open documents by URI."""

    def __init__(self, codec: PositionCodec | None = None) -> None:
        self.documents: dict[str, TextDocument] = {}
        self.codec = codec or PositionCodec()

    def open(self, uri: str, text: str, version: int = 0, language_id: str = "r") -> TextDocument:
        doc = TextDocument(uri, text, version, language_id, self.codec)
        self.documents[uri] = doc
        return doc

    def get(self, uri: str) -> TextDocument | None:
        return self.documents.get(uri)

    def close(self, uri: str) -> TextDocument | None:
        return self.documents.pop(uri, None)

    def __contains__(self, uri: object) -> bool:
        return uri in self.documents

    def __len__(self) -> int:
        return len(self.documents)
