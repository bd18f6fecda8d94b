"""
Fuzzy query construction.

Turns a raw user query into the two forms the engine needs: a recall-oriented
lexical query and a cleaned string for query-time embedding.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field
from taskmail.common.exceptions import EmptyQueryError

MIN_TOKEN_LENGTH = 2

_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


class LexicalQuery(BaseModel):
    """
    Lexical query expression.

    `tsquery` is a `to_tsquery` expression OR-ing an exact and a prefix
    variant of every token. `fuzzy_terms` are the same tokens, matched by
    trigram similarity in the fallback layer.
    """

    model_config = ConfigDict(frozen=True)

    tsquery: str
    terms: tuple[str, ...] = Field(min_length=1)

    @property
    def fuzzy_terms(self) -> tuple[str, ...]:
        return self.terms

    @property
    def text(self) -> str:
        """Space-joined terms, used for plainto_tsquery and trigram matching."""
        return " ".join(self.terms)

    def has_short_term(self, max_length: int) -> bool:
        return any(len(term) <= max_length for term in self.terms)


class BuiltQuery(BaseModel):
    """Both query forms derived from one raw query."""

    model_config = ConfigDict(frozen=True)

    lexical: LexicalQuery
    embedding_input: str


def tokenize(raw_query: str | None) -> list[str]:
    """Lowercase, split on non-word characters, drop 1-char tokens, dedupe."""
    if not raw_query:
        return []
    seen: dict[str, None] = {}
    for token in _NON_WORD.split(raw_query.lower()):
        if len(token) >= MIN_TOKEN_LENGTH:
            seen.setdefault(token, None)
    return list(seen)


def _token_expression(token: str) -> str:
    return f"({token} | {token}:*)"


class FuzzyQueryBuilder:
    """Build lexical and embedding query forms from raw user input."""

    def build(self, raw_query: str | None) -> BuiltQuery:
        """
        Raises:
            EmptyQueryError: no usable tokens remain after cleaning
        """
        terms = tokenize(raw_query)
        if not terms:
            raise EmptyQueryError()

        lexical = LexicalQuery(
            tsquery=" | ".join(_token_expression(t) for t in terms),
            terms=tuple(terms),
        )
        return BuiltQuery(
            lexical=lexical,
            embedding_input=" ".join((raw_query or "").split()),
        )
