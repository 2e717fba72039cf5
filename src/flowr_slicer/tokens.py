"""R token boundaries used to normalize tracked positions.

Tokenization is done with the Pygments R lexer. Only tokens that name or
denote a value can be sliced for; whitespace, comments, punctuation and
operators cannot.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass

from pygments.lexers.r import SLexer
from pygments.token import Keyword, Literal, Name, _TokenType

# Token types a tracked position may point at.
TRACKABLE = (Name, Keyword, Literal)


@dataclass(frozen=True)
class Token:
    """A lexed token: ``text`` starts at ``start`` in the source."""

    kind: _TokenType
    text: str
    start: int

    @property
    def end(self) -> int:
        return self.start + len(self.text)

    @property
    def trackable(self) -> bool:
        return any(self.kind in t for t in TRACKABLE)

    def __repr__(self) -> str:
        return f"Token({self.kind}, {self.text!r}, {self.start})"


def _lexer() -> SLexer:
    # stripnl would drop leading newlines and shift every offset
    return SLexer(stripnl=False, ensurenl=False)


def tokenize(source: str) -> list[Token]:
    """Tokenize R source; string pieces are merged into one token."""
    tokens: list[Token] = []
    for start, kind, text in _lexer().get_tokens_unprocessed(source):
        if not text:
            continue
        stripped = text.rstrip()
        if kind in Name.Function and stripped != text:
            # call names swallow the blanks before "("
            text = stripped
        prev = tokens[-1] if tokens else None
        if (
            prev is not None
            and kind in Literal.String
            and prev.kind in Literal.String
            and prev.end == start
        ):
            tokens[-1] = Token(prev.kind, prev.text + text, prev.start)
            continue
        tokens.append(Token(kind, text, start))
    return tokens


class TokenIndex:
    """Offset lookup over the tokens of one version of a document."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self._starts = [t.start for t in self.tokens]

    def token_at(self, offset: int) -> Token | None:
        """Return the trackable token containing ``offset``.

        An offset right after a token (cursor at the end of a word) maps to
        that token.
        """
        if offset < 0 or offset > len(self.source):
            return None
        idx = bisect_right(self._starts, offset) - 1
        if idx >= 0:
            tok = self.tokens[idx]
            if tok.start <= offset < tok.end and tok.trackable:
                return tok
            # Try the token ending at offset
            if tok.start == offset and idx > 0:
                idx -= 1
            prev = self.tokens[idx]
            if prev.end == offset and prev.trackable:
                return prev
        return None

    def normalize(self, offset: int) -> int | None:
        """Move ``offset`` to the start of its token; None if it has none."""
        tok = self.token_at(offset)
        return tok.start if tok is not None else None

    def token_range(self, offset: int) -> tuple[int, int] | None:
        tok = self.token_at(offset)
        if tok is None:
            return None
        return tok.start, tok.end


def normalize_offset(source: str, offset: int) -> int | None:
    """Normalize a single offset against ``source``."""
    return TokenIndex(source).normalize(offset)
