"""Persistent per-repository store of code embeddings.

One JSON index file per repository holds the index metadata and every
record. Records are kept in memory as an insertion-ordered arena keyed by
id, so saving merges by id and deleting is a dict pop. The arena is cached
across reads and dropped on every mutation.

Writes go to a temporary file in the same directory and are moved into
place with os.replace, so a failed write leaves the previous index intact.
"""

import json
import os
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from coderecall.errors import DimensionMismatchError, IndexFormatError, StorageError
from coderecall.logging import logger
from coderecall.models.embedding import (
    CodeEmbedding,
    CompatibilityResult,
    IndexMetadata,
    PersistedIndex,
    ProviderDescriptor,
    SearchFilters,
    StoreStats,
    utc_now,
)
from coderecall.retrieval.filters import apply_filters
from coderecall.retrieval.providers import EmbeddingProvider
from coderecall.retrieval.vectors import estimate_storage_size, format_bytes
from coderecall.utils.cache import INDEX_FILENAME, get_store_dir

# Model names assumed for indexes created without a provider
_KNOWN_DIMENSIONS = {
    1536: "text-embedding-3-small (OpenAI)",
    768: "nomic-embed-text (Ollama)",
}


def infer_model_name(dimensions: int) -> str:
    """Guess the embedding model from its vector length."""
    return _KNOWN_DIMENSIONS.get(dimensions, f"unknown-{dimensions}d")


def _as_descriptor(
    provider: ProviderDescriptor | EmbeddingProvider | None,
) -> ProviderDescriptor | None:
    if provider is None or isinstance(provider, ProviderDescriptor):
        return provider
    return provider.descriptor()


def _atomic_write(path: Path, payload: str) -> None:
    """Write payload to path via a temp file in the same directory."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".index_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise StorageError(f"Failed to write index {path}: {e}") from e


class EmbeddingRecordStore:
    """Embedding index for one repository.

    Args:
        repo_id: Repository identifier; selects the storage location.
        base_path: Explicit storage root. Defaults to the hashed
            per-repository directory under CODERECALL_HOME.
        provider: Descriptor (or provider) stamped onto newly created
            indexes. Without one the model is inferred from dimensions.

    Example:
        store = EmbeddingRecordStore("my-repo", base_path="/tmp/idx")
        store.save_embeddings(records)
        store.load_embeddings_with_filters({"language": "python"})
    """

    def __init__(
        self,
        repo_id: str,
        base_path: Path | str | None = None,
        provider: ProviderDescriptor | EmbeddingProvider | None = None,
    ) -> None:
        self.repo_id = repo_id
        self._storage_dir = get_store_dir(repo_id, base_path)
        self._index_path = self._storage_dir / INDEX_FILENAME
        self._provider = provider
        self._arena: dict[str, CodeEmbedding] | None = None
        self._metadata: IndexMetadata | None = None

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    @property
    def index_path(self) -> Path:
        return self._index_path

    # -------------------------------------------------------------------------
    # Persistence internals
    # -------------------------------------------------------------------------

    def _invalidate_cache(self) -> None:
        self._arena = None
        self._metadata = None

    def _read_raw(self) -> tuple[IndexMetadata | None, list[CodeEmbedding]]:
        """Read the index file as stored, duplicates included.

        A missing file reads as empty. A file that is not valid JSON or
        lacks the expected structure is logged and read as empty; records
        that fail validation are skipped individually.

        Raises:
            StorageError: If the file exists but cannot be read.
        """
        if not self._index_path.exists():
            return None, []

        try:
            text = self._index_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read index {self._index_path}: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("  Corrupt embedding index at %s, treating as empty: %s", self._index_path, e)
            return None, []

        if not isinstance(data, dict) or not isinstance(data.get("embeddings"), list):
            logger.warning("  Malformed embedding index at %s, treating as empty", self._index_path)
            return None, []

        try:
            metadata = IndexMetadata.model_validate(data.get("metadata"))
        except ValidationError as e:
            logger.warning(
                "  Invalid index metadata at %s, treating as empty: %d errors",
                self._index_path,
                e.error_count(),
            )
            return None, []

        records: list[CodeEmbedding] = []
        skipped = 0
        for item in data["embeddings"]:
            try:
                record = CodeEmbedding.model_validate(item)
            except ValidationError:
                skipped += 1
                continue
            if record.dimensions != metadata.dimensions:
                skipped += 1
                continue
            records.append(record)

        if skipped:
            logger.warning("  Skipped %d invalid records in %s", skipped, self._index_path)

        return metadata, records

    def _load_arena(self) -> dict[str, CodeEmbedding]:
        if self._arena is None:
            metadata, records = self._read_raw()
            arena: dict[str, CodeEmbedding] = {}
            for record in records:
                # Later duplicates win; position stays that of the first
                arena[record.id] = record
            self._arena = arena
            self._metadata = metadata
        return self._arena

    def _serialize(
        self,
        arena: Mapping[str, CodeEmbedding],
        metadata: IndexMetadata,
        touch: bool = True,
    ) -> str:
        update: dict[str, Any] = {
            "embedding_count": len(arena),
            "total_size_bytes": estimate_storage_size(len(arena), metadata.dimensions),
        }
        if touch:
            update["last_updated_at"] = utc_now()
        metadata = metadata.model_copy(update=update)
        index = PersistedIndex(repo_id=self.repo_id, metadata=metadata, embeddings=list(arena.values()))
        return index.model_dump_json(by_alias=True)

    def _write(self, arena: Mapping[str, CodeEmbedding], metadata: IndexMetadata) -> None:
        try:
            _atomic_write(self._index_path, self._serialize(arena, metadata))
        finally:
            self._invalidate_cache()

    def _file_size(self) -> int:
        try:
            return self._index_path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise StorageError(f"Failed to stat index {self._index_path}: {e}") from e

    def _new_metadata(self, dimensions: int) -> IndexMetadata:
        descriptor = _as_descriptor(self._provider)
        if descriptor is not None:
            return IndexMetadata(
                provider_name=descriptor.name,
                model=descriptor.model,
                dimensions=dimensions,
            )
        return IndexMetadata(
            provider_name="unknown",
            model=infer_model_name(dimensions),
            dimensions=dimensions,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Ensure the storage directory exists."""
        try:
            self._storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create {self._storage_dir}: {e}") from e

    def save_embeddings(self, records: Iterable[CodeEmbedding]) -> None:
        """Merge records into the index by id.

        New ids are inserted; existing ids are replaced in full. An empty
        batch writes nothing.

        Raises:
            DimensionMismatchError: If the batch mixes vector lengths or does
                not match the existing index (or bound provider). Nothing is
                written in that case.
            StorageError: If the index cannot be written.
        """
        records = list(records)
        if not records:
            return

        dimensions = {record.dimensions for record in records}
        if len(dimensions) > 1:
            raise DimensionMismatchError(
                f"Records have mixed dimensions: {sorted(dimensions)}"
            )
        batch_dims = dimensions.pop()

        arena = dict(self._load_arena())
        metadata = self._metadata if arena else None

        if metadata is not None:
            expected = metadata.dimensions
        else:
            descriptor = _as_descriptor(self._provider)
            expected = descriptor.dimensions if descriptor is not None else batch_dims

        if batch_dims != expected:
            raise DimensionMismatchError(
                f"Embedding dimension mismatch: index expects {expected}, got {batch_dims}",
                expected=expected,
                actual=batch_dims,
            )

        if metadata is None:
            metadata = self._new_metadata(batch_dims)

        for record in records:
            arena[record.id] = record

        self.initialize()
        self._write(arena, metadata)
        logger.info("  Saved %d embeddings (%d total)", len(records), len(arena))

    def update_embedding(self, record: CodeEmbedding) -> None:
        """Insert or replace a single record."""
        self.save_embeddings([record])

    def load_embeddings(self) -> list[CodeEmbedding]:
        """Return every stored record, in index order."""
        return list(self._load_arena().values())

    def load_embeddings_with_filters(
        self, filters: SearchFilters | Mapping[str, Any] | None
    ) -> list[CodeEmbedding]:
        """Return stored records satisfying all provided filters.

        Raises:
            InvalidFilterError: If file_pattern is rejected.
        """
        return apply_filters(self.load_embeddings(), filters)

    def delete_embeddings(self, ids: Iterable[str]) -> int:
        """Remove records by id; unknown ids are ignored.

        Returns:
            Number of records removed.
        """
        arena = dict(self._load_arena())
        metadata = self._metadata
        removed = sum(1 for record_id in set(ids) if arena.pop(record_id, None) is not None)

        if removed and metadata is not None:
            self._write(arena, metadata)
            logger.info("  Deleted %d embeddings", removed)
        return removed

    def clear(self) -> None:
        """Remove the persisted index."""
        try:
            self._index_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove index {self._index_path}: {e}") from e
        finally:
            self._invalidate_cache()
        logger.info("  Cleared embedding index for %s", self.repo_id)

    def exists(self) -> bool:
        """Whether the persisted index holds at least one record."""
        return self.count() > 0

    def count(self) -> int:
        return len(self._load_arena())

    def load_index(self) -> IndexMetadata | None:
        """Current index metadata, or None when there are no records."""
        arena = self._load_arena()
        if not arena or self._metadata is None:
            return None
        return self._metadata.model_copy(
            update={"embedding_count": len(arena), "total_size_bytes": self._file_size()}
        )

    def get_stats(self) -> StoreStats | None:
        metadata = self.load_index()
        if metadata is None:
            return None
        return StoreStats(
            embedding_count=metadata.embedding_count,
            total_size_bytes=metadata.total_size_bytes,
            dimensions=metadata.dimensions,
            model=metadata.model,
            provider_name=metadata.provider_name,
            indexed_at=metadata.last_updated_at,
        )

    def invalidate_changed_files(self, source_paths: Iterable[str]) -> int:
        """Drop every record whose source is one of the given paths.

        Records are not re-embedded; the caller re-indexes the files.

        Returns:
            Number of records removed.
        """
        paths = set(source_paths)
        if not paths:
            return 0

        arena = self._load_arena()
        stale = [record_id for record_id, record in arena.items() if record.source in paths]
        removed = self.delete_embeddings(stale) if stale else 0
        logger.info("  Invalidated %d embeddings from %d changed files", removed, len(paths))
        return removed

    def optimize(self) -> int:
        """Rewrite the index without duplicate ids.

        The most recently written occurrence of each id is kept.

        Returns:
            Number of duplicate records removed.
        """
        metadata, records = self._read_raw()
        if metadata is None:
            self._invalidate_cache()
            return 0

        arena: dict[str, CodeEmbedding] = {}
        for record in records:
            arena[record.id] = record
        duplicates = len(records) - len(arena)

        self._write(arena, metadata)
        logger.info(
            "  Optimized index: removed %d duplicates, %d records, %s",
            duplicates,
            len(arena),
            format_bytes(self._file_size()),
        )
        return duplicates

    def check_compatibility(
        self,
        provider: ProviderDescriptor | EmbeddingProvider,
        existing_index: IndexMetadata | None = None,
    ) -> CompatibilityResult:
        """Compare a provider with the index it would query.

        A dimension change requires a rebuild; a provider change with equal
        dimensions is reported as incompatible but usable.
        """
        descriptor = _as_descriptor(provider)
        existing = existing_index if existing_index is not None else self.load_index()

        if existing is None:
            return CompatibilityResult(
                compatible=True,
                requires_rebuild=False,
                reason="no existing index",
            )

        if existing.dimensions != descriptor.dimensions:
            return CompatibilityResult(
                compatible=False,
                requires_rebuild=True,
                reason=(
                    f"Dimension mismatch: index has {existing.dimensions} dimensions, "
                    f"{descriptor.name} produces {descriptor.dimensions}"
                ),
                existing_provider=existing.provider_name,
                existing_dimensions=existing.dimensions,
            )

        if existing.provider_name != descriptor.name:
            return CompatibilityResult(
                compatible=False,
                requires_rebuild=False,
                reason=(
                    f"Provider changed from {existing.provider_name} to {descriptor.name} "
                    "(same dimensions)"
                ),
                existing_provider=existing.provider_name,
                existing_dimensions=existing.dimensions,
            )

        return CompatibilityResult(
            compatible=True,
            requires_rebuild=False,
            reason="compatible",
            existing_provider=existing.provider_name,
            existing_dimensions=existing.dimensions,
        )

    def export_to_file(self, path: Path | str) -> int:
        """Write the index to another file.

        Returns:
            Number of records exported.

        Raises:
            StorageError: If the index is empty or the file cannot be written.
        """
        arena = self._load_arena()
        if not arena or self._metadata is None:
            raise StorageError(f"No embeddings to export for {self.repo_id}")

        _atomic_write(Path(path), self._serialize(arena, self._metadata, touch=False))
        logger.info("  Exported %d embeddings to %s", len(arena), path)
        return len(arena)

    def import_from_file(self, path: Path | str) -> int:
        """Replace the index with the contents of an exported file.

        Returns:
            Number of records imported.

        Raises:
            IndexFormatError: If the file is not a valid index.
            StorageError: If the file cannot be read or the index written.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

        try:
            index = PersistedIndex.model_validate_json(text)
        except ValidationError as e:
            raise IndexFormatError(f"{path} is not a valid embedding index: {e}") from e

        mismatched = [r.id for r in index.embeddings if r.dimensions != index.metadata.dimensions]
        if mismatched:
            raise IndexFormatError(
                f"{path} has {len(mismatched)} records not matching "
                f"{index.metadata.dimensions} dimensions"
            )

        arena: dict[str, CodeEmbedding] = {}
        for record in index.embeddings:
            arena[record.id] = record

        self.initialize()
        self._write(arena, index.metadata)
        logger.info("  Imported %d embeddings from %s", len(arena), path)
        return len(arena)
