"""
Shared fixtures: isolated configuration and in-memory stand-ins for the
Postgres stores and the embedding provider.
"""

from __future__ import annotations

import asyncio
import difflib
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from taskmail.common.exceptions import (
    DimensionMismatchError,
    ProviderUnavailableError,
    RetrievalError,
)
from taskmail.config.loader import TaskmailConfig, reset_config, set_config
from taskmail.db.models import EntityType
from taskmail.db.repository import RawText
from taskmail.retrieval.lexical_index import LexicalHit, LexicalIndexStore
from taskmail.retrieval.vector_index import CoverageStats, VectorHit, VectorIndexStore

TEST_DIM = 4


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Every test starts from defaults, unaffected by the developer's env."""
    for key in (
        "TASKMAIL_EMBEDDING_PROVIDER",
        "EMBEDDING_PROVIDER",
        "TASKMAIL_CANONICAL_DIM",
        "CANONICAL_DIM",
        "OPENAI_API_KEY",
        "TASKMAIL_OPENAI_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> TaskmailConfig:
    cfg = TaskmailConfig()
    set_config(cfg)
    return cfg


# -----------------------------------------------------------------------------
# Fake embedding provider
# -----------------------------------------------------------------------------


class FakeEmbedder:
    """Deterministic embedder: a text maps to a registered vector or a default."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: list[float] | None = None,
        fail: bool = False,
        delay: float = 0.0,
        fail_on: str | None = None,
    ):
        self.canonical_dim = TEST_DIM
        self.vectors = dict(vectors or {})
        self.default = default or [0.5, 0.5, 0.5, 0.5]
        self.fail = fail
        self.delay = delay
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail or (self.fail_on is not None and self.fail_on in text):
            raise ProviderUnavailableError(
                "All embedding backends failed", attempted=["fake"]
            )
        return list(self.vectors.get(text, self.default))

    async def aclose(self) -> None:
        return None


# -----------------------------------------------------------------------------
# Fake stores
# -----------------------------------------------------------------------------


class Corpus:
    """Entity rows shared by the fake stores and repository."""

    def __init__(self):
        self.rows: dict[tuple[EntityType, int], dict] = {}
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def add(
        self,
        entity_type: EntityType,
        entity_id: int,
        owner_id: str,
        primary: str,
        secondary: str = "",
        embedding: list[float] | None = None,
    ) -> None:
        self._clock += timedelta(minutes=1)
        self.rows[(entity_type, entity_id)] = {
            "owner_id": owner_id,
            "primary": primary,
            "secondary": secondary,
            "embedding": embedding,
            "skipped": False,
            "created_at": self._clock,
        }

    def of_type(self, entity_type: EntityType):
        for (et, entity_id), row in sorted(self.rows.items(), key=lambda kv: kv[0][1]):
            if et == entity_type:
                yield entity_id, row


def _words(text: str) -> list[str]:
    return [w for w in "".join(c.lower() if c.isalnum() else " " for c in text).split()]


class FakeLexicalStore(LexicalIndexStore):
    """
    In-memory lexical matching: a term is a full-text hit when it equals or
    prefixes a word; otherwise a word with difflib ratio >= 0.6 is a trigram hit.
    """

    def __init__(self, corpus: Corpus, fail: bool = False):
        self.corpus = corpus
        self.fail = fail
        self.calls: list[tuple[EntityType, str]] = []

    def index(self, entity_type: EntityType, entity_id: int) -> None:
        self.calls.append((entity_type, "index"))

    def search(self, entity_type, owner_id, query, limit):
        self.calls.append((entity_type, owner_id))
        if self.fail:
            raise RetrievalError("Postgres lexical search failed")
        fulltext: list[LexicalHit] = []
        fuzzy: list[LexicalHit] = []
        for entity_id, row in self.corpus.of_type(entity_type):
            if row["owner_id"] != owner_id:
                continue
            words = _words(row["primary"]) + _words(row["secondary"])
            exact = sum(1 for t in query.terms if any(w.startswith(t) for w in words))
            if exact:
                rank = exact / (exact + 1)
                fulltext.append(LexicalHit(entity_id=entity_id, rank=rank, kind="fulltext"))
                continue
            sims = [
                max(
                    (difflib.SequenceMatcher(None, t, w).ratio() for w in words),
                    default=0.0,
                )
                for t in query.terms
            ]
            matched = [s for s in sims if s >= 0.6]
            if matched:
                rank = sum(matched) / len(query.terms)
                fuzzy.append(LexicalHit(entity_id=entity_id, rank=rank, kind="trigram"))
        fulltext.sort(key=lambda h: (-h.rank, h.entity_id))
        fuzzy.sort(key=lambda h: (-h.rank, h.entity_id))
        return (fulltext + fuzzy)[:limit]


class FakeVectorStore(VectorIndexStore):
    """In-memory cosine store with the same contract as PgvectorIndexStore."""

    def __init__(self, corpus: Corpus, fail: bool = False):
        self.corpus = corpus
        self.fail = fail
        self.canonical_dim = TEST_DIM
        self.metric = "cosine"
        self.calls: list[tuple[EntityType, str]] = []
        self.writes: list[tuple[EntityType, int]] = []

    def upsert_embedding(self, entity_type, entity_id, vector):
        if len(vector) != self.canonical_dim:
            raise DimensionMismatchError(
                "Embedding dimension mismatch",
                expected=self.canonical_dim,
                actual=len(vector),
            )
        row = self.corpus.rows[(entity_type, entity_id)]
        row["embedding"] = list(vector)
        row["skipped"] = False
        self.writes.append((entity_type, entity_id))

    def query(self, entity_type, vector, k, owner_id, exclude_id=None):
        self.calls.append((entity_type, owner_id))
        if self.fail:
            raise RetrievalError("Postgres vector search failed")
        q = np.asarray(vector, dtype=float)
        hits = []
        for entity_id, row in self.corpus.of_type(entity_type):
            if row["owner_id"] != owner_id or row["embedding"] is None:
                continue
            if exclude_id is not None and entity_id == exclude_id:
                continue
            v = np.asarray(row["embedding"], dtype=float)
            cos = float(q @ v / (np.linalg.norm(q) * np.linalg.norm(v)))
            hits.append(VectorHit(entity_id=entity_id, distance=1.0 - cos))
        hits.sort(key=lambda h: (h.distance, h.entity_id))
        return hits[:k]

    def get_embedding(self, entity_type, entity_id, owner_id):
        row = self.corpus.rows.get((entity_type, entity_id))
        if row is None or row["owner_id"] != owner_id:
            return None
        return row["embedding"]

    def clear_embedding(self, entity_type, entity_id):
        row = self.corpus.rows[(entity_type, entity_id)]
        row["embedding"] = None
        row["skipped"] = False

    def coverage(self, entity_type, owner_id=None):
        rows = [
            row
            for _, row in self.corpus.of_type(entity_type)
            if owner_id is None or row["owner_id"] == owner_id
        ]
        return CoverageStats(
            entity_type=entity_type,
            total=len(rows),
            embedded=sum(1 for r in rows if r["embedding"] is not None),
            skipped=sum(1 for r in rows if r["embedding"] is None and r["skipped"]),
        )


class FakeRepository:
    """EntityTextRepository over a Corpus."""

    def __init__(self, corpus: Corpus):
        self.corpus = corpus
        self.fetches = 0

    def _raw(self, entity_type, entity_id, row) -> RawText:
        return RawText(
            entity_id=entity_id,
            entity_type=entity_type,
            owner_id=row["owner_id"],
            primary_text=row["primary"],
            secondary_text=row["secondary"],
            created_at=row["created_at"],
        )

    def get_raw_text(self, entity_type, entity_id):
        row = self.corpus.rows.get((EntityType(entity_type), entity_id))
        return None if row is None else self._raw(entity_type, entity_id, row)

    def fetch_unembedded(self, entity_type, limit, owner_id=None):
        self.fetches += 1
        pending = [
            (row["created_at"], entity_id, row)
            for entity_id, row in self.corpus.of_type(entity_type)
            if row["embedding"] is None
            and not row["skipped"]
            and (owner_id is None or row["owner_id"] == owner_id)
        ]
        pending.sort(key=lambda p: (p[0], p[1]))
        return [self._raw(entity_type, eid, row) for _, eid, row in pending[:limit]]

    def mark_skipped(self, entity_type, entity_id):
        self.corpus.rows[(EntityType(entity_type), entity_id)]["skipped"] = True


@pytest.fixture
def corpus() -> Corpus:
    return Corpus()


@pytest.fixture
def lexical_store(corpus) -> FakeLexicalStore:
    return FakeLexicalStore(corpus)


@pytest.fixture
def vector_store(corpus) -> FakeVectorStore:
    return FakeVectorStore(corpus)


@pytest.fixture
def repository(corpus) -> FakeRepository:
    return FakeRepository(corpus)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
