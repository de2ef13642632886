"""Exception types raised by the embedding store and search engine."""


class CodeRecallError(Exception):
    """Base class for coderecall errors."""

    pass


class StorageError(CodeRecallError):
    """Reading, writing or removing the persisted index failed."""

    pass


class IndexFormatError(StorageError):
    """A file handed to the store is not a valid embedding index."""

    pass


class DimensionMismatchError(CodeRecallError, ValueError):
    """Embedding vectors of different dimensionality were mixed."""

    def __init__(self, message: str, expected: int | None = None, actual: int | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidFilterError(CodeRecallError, ValueError):
    """A search filter value cannot be used (e.g. unsafe regex)."""

    pass


class ProviderError(CodeRecallError):
    """An embedding provider could not produce vectors."""

    pass
