"""
Taskmail search CLI.

Operator commands for the search subsystem: ad-hoc searches, embedding
backfill, lexical/vector reindexing and coverage status.
"""

import asyncio

import structlog
import typer
from taskmail.config.loader import get_config
from taskmail.db.models import EntityType
from taskmail.db.session import dispose_engine
from taskmail.embeddings.client import EmbeddingProvider
from taskmail.ingestion.backfill import BatchEmbeddingBackfiller
from taskmail.retrieval.hybrid_search import HybridSearchEngine
from taskmail.retrieval.lexical_index import PostgresLexicalIndexStore
from taskmail.retrieval.results import ALL_ENTITY_TYPES, SearchOptions
from taskmail.retrieval.vector_index import PgvectorIndexStore

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(help="Taskmail hybrid search CLI")
logger = structlog.get_logger()


def _entity_types(entity_type: str | None) -> tuple[EntityType, ...]:
    if entity_type is None:
        return ALL_ENTITY_TYPES
    try:
        return (EntityType(entity_type.lower()),)
    except ValueError:
        raise typer.BadParameter(
            f"Unknown entity type '{entity_type}'. Use 'email' or 'task'."
        ) from None


def _vector_store() -> PgvectorIndexStore:
    config = get_config()
    return PgvectorIndexStore(
        canonical_dim=config.embedding.canonical_dim, config=config.vector_index
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    owner: str = typer.Option(..., "--owner", "-u", help="Owner (user) ID"),
    limit: int = typer.Option(10, "--limit", "-k", help="Number of results"),
    entity_type: str = typer.Option(
        None, "--type", "-t", help="Restrict to 'email' or 'task'"
    ),
    lexical: bool = typer.Option(True, "--lexical/--no-lexical"),
    semantic: bool = typer.Option(True, "--semantic/--no-semantic"),
    debug: bool = typer.Option(False, "--debug", help="Show component scores"),
):
    """
    Run a hybrid search for one owner.
    """
    options = SearchOptions(
        limit=limit,
        use_lexical=lexical,
        use_semantic=semantic,
        entity_types=_entity_types(entity_type),
    )

    async def _run():
        embedder = EmbeddingProvider.from_config()
        try:
            engine = HybridSearchEngine.from_config(embedder=embedder)
            return await engine.search(owner, query, options)
        finally:
            await embedder.aclose()

    logger.info("search_command_start", owner=owner, limit=limit)
    try:
        outcome = asyncio.run(_run())
    finally:
        dispose_engine()

    if outcome.is_err():
        error = outcome.unwrap_err()
        logger.error("search_failed", error_code=error.error_code)
        typer.echo(f"Search failed: {error.message}", err=True)
        raise typer.Exit(code=1)

    results = outcome.unwrap()
    suffix = " (semantic unavailable, lexical only)" if results.degraded else ""
    typer.echo(f"\n{len(results)} hits{suffix}\n")
    for i, item in enumerate(results.results, 1):
        line = (
            f"{i}. [{item.score:.4f}] {item.entity_type.value}:{item.entity_id}"
            f" ({item.match_kind})"
        )
        if debug:
            line += (
                f"  lex={item.lexical_score or 0:.4f}"
                f" sem={item.semantic_score or 0:.4f}"
            )
        typer.echo(line)


@app.command()
def backfill(
    entity_type: str = typer.Option(
        None, "--type", "-t", help="Restrict to 'email' or 'task'"
    ),
    owner: str = typer.Option(None, "--owner", "-u", help="Only this owner's rows"),
    batch_size: int = typer.Option(None, "--batch-size", help="Override batch size"),
    all_batches: bool = typer.Option(
        False, "--all", help="Keep running batches until nothing is pending"
    ),
    max_batches: int = typer.Option(None, "--max-batches"),
):
    """
    Embed entities that have no embedding yet.
    """

    async def _run():
        embedder = EmbeddingProvider.from_config()
        backfiller = BatchEmbeddingBackfiller.from_config(embedder=embedder)
        collected = []
        try:
            for et in _entity_types(entity_type):
                if all_batches:
                    stats = await backfiller.run_all(et, owner, max_batches=max_batches)
                else:
                    stats = await backfiller.run_batch(et, owner, batch_size)
                collected.append((et, stats))
        finally:
            await embedder.aclose()
        return collected

    try:
        collected = asyncio.run(_run())
    finally:
        dispose_engine()

    failed = 0
    for et, stats in collected:
        logger.info("backfill_finished", entity_type=et.value, **stats.model_dump())
        typer.echo(
            f"{et.value}: processed={stats.processed} ok={stats.successful} "
            f"failed={stats.failed} skipped={stats.skipped}"
        )
        failed += stats.failed
    if failed:
        raise typer.Exit(code=2)


@app.command()
def reindex(
    entity_type: str = typer.Option(
        None, "--type", "-t", help="Restrict to 'email' or 'task'"
    ),
    lexical: bool = typer.Option(True, "--lexical/--no-lexical"),
    vector: bool = typer.Option(True, "--vector/--no-vector"),
):
    """
    Rebuild lexical documents and/or the ANN index.
    """
    config = get_config()
    lexical_store = PostgresLexicalIndexStore(config=config.lexical)
    vector_store = _vector_store()
    try:
        for et in _entity_types(entity_type):
            if lexical:
                count = lexical_store.reindex_all(et)
                typer.echo(f"{et.value}: {count} lexical documents rebuilt")
            if vector:
                kind = vector_store.rebuild_ann_index(et)
                typer.echo(f"{et.value}: ANN index rebuilt ({kind})")
    finally:
        dispose_engine()


@app.command()
def status(
    owner: str = typer.Option(None, "--owner", "-u", help="Only this owner's rows"),
):
    """
    Show embedding coverage per entity type.
    """
    vector_store = _vector_store()
    try:
        for et in ALL_ENTITY_TYPES:
            stats = vector_store.coverage(et, owner)
            typer.echo(
                f"{et.value}: {stats.embedded}/{stats.total} embedded "
                f"({stats.percent_embedded}%), {stats.skipped} skipped, "
                f"{stats.pending} pending"
            )
    finally:
        dispose_engine()


if __name__ == "__main__":
    app()
