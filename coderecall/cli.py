"""CLI interface for coderecall.

Provides commands for inspecting, searching and maintaining a repository's
embedding index. Results are printed to stdout as JSON; progress and errors
go to stderr.
"""

import asyncio
import json
import sys
from typing import Any, NoReturn

import click
from dotenv import load_dotenv

# Load .env before importing other coderecall modules
# This ensures env vars are set before module-level code reads them
load_dotenv()

from coderecall import __version__  # noqa: E402

_base_path_option = click.option(
    "--base-path",
    type=click.Path(file_okay=False, resolve_path=True),
    default=None,
    help="Storage root (default: $CODERECALL_HOME/cache/<repo hash>)",
)

# Vectors are large and unreadable; omit them from CLI output
_NO_VECTOR = {"embedding": {"embedding"}}


def _open_store(repo_id: str, base_path: str | None) -> Any:
    from coderecall.retrieval.store import EmbeddingRecordStore

    return EmbeddingRecordStore(repo_id, base_path=base_path)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _fail(message: str) -> NoReturn:
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="coderecall")
def cli() -> None:
    """coderecall - code embedding index and similarity search."""
    pass


@cli.command()
@click.argument("repo_id")
@_base_path_option
def stats(repo_id: str, base_path: str | None) -> None:
    """Show index statistics.

    REPO_ID: Repository identifier the index was built for.
    """
    from coderecall.retrieval.vectors import format_bytes

    try:
        store_stats = _open_store(repo_id, base_path).get_stats()
    except Exception as e:
        _fail(f"Failed to read index: {e}")

    if store_stats is None:
        _echo_json({"repo_id": repo_id, "exists": False})
        return

    data = store_stats.model_dump(mode="json", by_alias=True)
    data["totalSize"] = format_bytes(store_stats.total_size_bytes)
    _echo_json(data)


@cli.command()
@click.argument("repo_id")
@_base_path_option
def coverage(repo_id: str, base_path: str | None) -> None:
    """Show what the index covers by type and language.

    REPO_ID: Repository identifier the index was built for.
    """
    from coderecall.retrieval.search import SimilaritySearchEngine

    try:
        # Coverage only reads the store, so no provider is configured
        engine = SimilaritySearchEngine(None, _open_store(repo_id, base_path))
        result = engine.get_coverage_stats()
    except Exception as e:
        _fail(f"Failed to compute coverage: {e}")

    _echo_json(result.model_dump(mode="json", by_alias=True))


@cli.command()
@click.argument("repo_id")
@click.argument("query")
@_base_path_option
@click.option("--k", "k", type=int, default=10, help="Maximum number of results (default: 10)")
@click.option("--min-similarity", type=float, default=None, help="Drop results scoring below this")
@click.option("--language", default=None, help="Only records in this language")
@click.option(
    "--type",
    "embedding_type",
    type=click.Choice(["function", "class", "file", "documentation"]),
    default=None,
    help="Only records of this type",
)
@click.option("--file-pattern", default=None, help="Regex matched against source paths")
@click.option("--tag", "tags", multiple=True, help="Required tag (repeatable)")
@click.option("--rank", is_flag=True, help="Re-rank by similarity, recency and importance")
@click.option("--diverse", is_flag=True, help="Limit results taken from any one file")
@click.option("--max-per-file", type=int, default=2, help="Per-file cap with --diverse (default: 2)")
def search(
    repo_id: str,
    query: str,
    base_path: str | None,
    k: int,
    min_similarity: float | None,
    language: str | None,
    embedding_type: str | None,
    file_pattern: str | None,
    tags: tuple[str, ...],
    rank: bool,
    diverse: bool,
    max_per_file: int,
) -> None:
    """Search the index with a natural language query.

    REPO_ID: Repository identifier the index was built for.
    QUERY: Text to search for.
    """
    from coderecall.retrieval.providers import get_embedding_provider
    from coderecall.retrieval.search import SimilaritySearchEngine

    filters = {
        "language": language,
        "type": embedding_type,
        "file_pattern": file_pattern,
        "tags": list(tags) or None,
    }
    filters = {key: value for key, value in filters.items() if value is not None}
    options: dict[str, Any] = {
        "filters": filters or None,
        "min_similarity": min_similarity,
        "enable_ranking": rank,
    }

    try:
        engine = SimilaritySearchEngine(get_embedding_provider(), _open_store(repo_id, base_path))
        if diverse:
            results = asyncio.run(
                engine.search_diverse(query, k=k, max_per_file=max_per_file, **options)
            )
            _echo_json(
                {
                    "results": [
                        r.model_dump(mode="json", by_alias=True, exclude=_NO_VECTOR)
                        for r in results
                    ]
                }
            )
            return
        response = asyncio.run(engine.search(query, {**options, "k": k}))
    except Exception as e:
        _fail(f"Search failed: {e}")

    _echo_json(
        response.model_dump(
            mode="json",
            by_alias=True,
            exclude={"results": {"__all__": _NO_VECTOR}},
        )
    )


@cli.command()
@click.argument("repo_id")
@_base_path_option
def check(repo_id: str, base_path: str | None) -> None:
    """Check the configured provider against the existing index.

    REPO_ID: Repository identifier the index was built for.
    """
    from coderecall.retrieval.providers import get_embedding_provider

    try:
        result = _open_store(repo_id, base_path).check_compatibility(get_embedding_provider())
    except Exception as e:
        _fail(f"Compatibility check failed: {e}")

    if result.requires_rebuild:
        click.echo("Index must be rebuilt for the configured provider", err=True)
    _echo_json(result.model_dump(mode="json", by_alias=True))


@cli.command()
@click.argument("repo_id")
@click.argument("paths", nargs=-1, required=True)
@_base_path_option
def invalidate(repo_id: str, paths: tuple[str, ...], base_path: str | None) -> None:
    """Drop embeddings for changed source files.

    REPO_ID: Repository identifier the index was built for.
    PATHS: Source paths exactly as stored in the index.
    """
    try:
        removed = _open_store(repo_id, base_path).invalidate_changed_files(paths)
    except Exception as e:
        _fail(f"Invalidation failed: {e}")

    _echo_json({"removed": removed, "files": len(set(paths))})


@cli.command()
@click.argument("repo_id")
@_base_path_option
def optimize(repo_id: str, base_path: str | None) -> None:
    """Remove duplicate records and rewrite the index.

    REPO_ID: Repository identifier the index was built for.
    """
    try:
        store = _open_store(repo_id, base_path)
        duplicates = store.optimize()
        count = store.count()
    except Exception as e:
        _fail(f"Optimize failed: {e}")

    _echo_json({"duplicatesRemoved": duplicates, "embeddingCount": count})


@cli.command()
@click.argument("repo_id")
@_base_path_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def clear(repo_id: str, base_path: str | None, yes: bool) -> None:
    """Delete the index.

    REPO_ID: Repository identifier the index was built for.
    """
    store = _open_store(repo_id, base_path)
    if not yes:
        click.confirm(f"Delete embedding index at {store.index_path}?", abort=True, err=True)

    try:
        store.clear()
    except Exception as e:
        _fail(f"Failed to clear index: {e}")

    _echo_json({"cleared": True, "path": str(store.index_path)})


@cli.command("export")
@click.argument("repo_id")
@click.argument("output", type=click.Path(dir_okay=False, resolve_path=True))
@_base_path_option
def export_index(repo_id: str, output: str, base_path: str | None) -> None:
    """Write the index to a file.

    REPO_ID: Repository identifier the index was built for.
    OUTPUT: Destination file.
    """
    try:
        count = _open_store(repo_id, base_path).export_to_file(output)
    except Exception as e:
        _fail(f"Export failed: {e}")

    _echo_json({"exported": count, "path": output})


@cli.command("import")
@click.argument("repo_id")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, resolve_path=True))
@_base_path_option
def import_index(repo_id: str, source: str, base_path: str | None) -> None:
    """Replace the index with an exported file.

    REPO_ID: Repository identifier to import into.
    SOURCE: File previously written by export.
    """
    try:
        count = _open_store(repo_id, base_path).import_from_file(source)
    except Exception as e:
        _fail(f"Import failed: {e}")

    _echo_json({"imported": count, "path": source})


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
