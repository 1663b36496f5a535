"""Boolean text queries over posting titles and descriptions.

Grammar (keywords are case-insensitive)::

    query    := sequence?
    sequence := item ( [OR] item )*
    item     := term | "(" sequence ")"
    term     := ["-"] ( word | '"' phrase '"' )

Every item of a sequence is an alternative: ``OR`` is optional between two
items and adjacency continues the same OR group. Negated terms are collected
wherever they appear and applied as a final exclusion filter, so a posting
matching any of them is rejected regardless of the rest of the query.

Matching is case-insensitive substring matching on whitespace-collapsed text,
not tokenized or stemmed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from common.utils import normalize_whitespace

from tracker.errors import ParseError
from tracker.models import JobPosting, NormalizedPosting

TokenKind = Literal["lparen", "rparen", "or", "term"]
WORD_BREAKS = '()"'


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: str
    position: int
    phrase: bool = False
    negated: bool = False


@dataclass(frozen=True)
class Term:
    text: str
    phrase: bool = False

    @property
    def needle(self) -> str:
        return normalize_whitespace(self.text).casefold()

    def matches(self, haystack: str) -> bool:
        return self.needle in haystack


@dataclass(frozen=True)
class AnyOf:
    children: tuple[Term | AnyOf, ...]

    def matches(self, haystack: str) -> bool:
        return any(child.matches(haystack) for child in self.children)


@dataclass(frozen=True)
class Query:
    include: AnyOf | None = None
    exclude: tuple[Term, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.include is None and not self.exclude

    def matches(self, haystack: str) -> bool:
        if any(term.matches(haystack) for term in self.exclude):
            return False
        return self.include is None or self.include.matches(haystack)


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        if char == "(":
            tokens.append(Token("lparen", char, index))
            index += 1
            continue
        if char == ")":
            tokens.append(Token("rparen", char, index))
            index += 1
            continue

        start = index
        negated = False
        if char == "-":
            negated = True
            index += 1
            if index >= length or text[index].isspace() or text[index] in "()":
                raise ParseError("negation must be immediately followed by a term", start)
            char = text[index]

        if char == '"':
            end = text.find('"', index + 1)
            if end == -1:
                raise ParseError("unterminated quote", index)
            phrase = normalize_whitespace(text[index + 1 : end])
            if not phrase:
                raise ParseError("empty phrase", index)
            tokens.append(Token("term", phrase, start, phrase=True, negated=negated))
            index = end + 1
            continue

        end = index
        while end < length and not text[end].isspace() and text[end] not in WORD_BREAKS:
            end += 1
        word = text[index:end]
        if not negated and word.casefold() == "or":
            tokens.append(Token("or", word, start))
        else:
            tokens.append(Token("term", word, start, negated=negated))
        index = end
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0
        self.exclude: list[Term] = []

    def peek(self) -> Token | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def parse(self) -> Query:
        include = self.sequence(opening=None)
        trailing = self.peek()
        if trailing is not None:
            # sequence() only stops early on a closing paren.
            raise ParseError("unmatched closing parenthesis", trailing.position)
        return Query(include=include, exclude=tuple(self.exclude))

    def sequence(self, opening: Token | None) -> AnyOf | None:
        children: list[Term | AnyOf] = []
        item_count = 0
        pending_or: Token | None = None
        while True:
            token = self.peek()
            if token is None or token.kind == "rparen":
                break
            if token.kind == "or":
                if item_count == 0 or pending_or is not None:
                    raise ParseError("OR must appear between two terms", token.position)
                pending_or = self.advance()
                continue
            child = self.item()
            item_count += 1
            pending_or = None
            if child is not None:
                children.append(child)

        if pending_or is not None:
            raise ParseError("OR must appear between two terms", pending_or.position)
        if opening is not None and item_count == 0:
            raise ParseError("empty group", opening.position)
        if not children:
            return None
        return AnyOf(tuple(children))

    def item(self) -> Term | AnyOf | None:
        token = self.advance()
        if token.kind == "term":
            term = Term(token.value, phrase=token.phrase)
            if token.negated:
                self.exclude.append(term)
                return None
            return term

        # token.kind == "lparen"; "or" and "rparen" are handled by sequence().
        group = self.sequence(opening=token)
        closing = self.peek()
        if closing is None:
            raise ParseError("unclosed parenthesis", token.position)
        self.advance()
        return group


def parse(query: str | None) -> Query:
    """Parse a query string, raising ParseError with the offending position."""
    if query is None or not query.strip():
        return Query()
    return _Parser(query).parse()


def searchable_text(posting: JobPosting | NormalizedPosting) -> str:
    return normalize_whitespace(f"{posting.title} {posting.description_plain}").casefold()


def evaluate(expr: Query, posting: JobPosting | NormalizedPosting) -> bool:
    if expr.is_empty:
        return True
    return expr.matches(searchable_text(posting))
