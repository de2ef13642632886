"""Vector math and record helpers shared by the store and search engine."""

import hashlib
import math
from collections.abc import Sequence

import numpy as np

from coderecall.errors import DimensionMismatchError

# Per-record overhead assumed by estimate_storage_size (JSON keys, content, metadata)
_RECORD_OVERHEAD_BYTES = 500


def hash_content(content: str) -> str:
    """Compute a hash of content for change detection.

    Args:
        content: Text to fingerprint.

    Returns:
        SHA-256 hash (first 16 chars) of the content.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def generate_embedding_id(embedding_type: str, source: str, name: str | None = None) -> str:
    """Build a stable record id from type, source path and symbol name.

    Examples:
        >>> generate_embedding_id("function", "src/a.py", "main")[:9]
        'function-'
    """
    components = [embedding_type, source]
    if name:
        components.append(name)
    return f"{embedding_type}-{hash_content(':'.join(components))}"


def validate_embedding(embedding: Sequence[float], expected_dimensions: int) -> bool:
    """Check that a vector has the expected length and only finite values."""
    if len(embedding) != expected_dimensions:
        return False
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in embedding)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4)


def _check_same_length(a: Sequence[float], b: Sequence[float]) -> None:
    if len(a) != len(b):
        raise DimensionMismatchError(
            f"Embedding dimension mismatch: {len(a)} vs {len(b)}",
            expected=len(a),
            actual=len(b),
        )


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    _check_same_length(a, b)
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0))


def cosine_similarities(query: Sequence[float] | np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between a query and every row of a matrix.

    Rows (or a query) with zero magnitude score 0.0 instead of dividing by zero.

    Args:
        query: Query vector of length d.
        matrix: Array of shape (n, d).

    Returns:
        Array of n similarities clamped to [-1, 1] (floating point error can
        push the dot product of unit vectors slightly past the bounds).
    """
    q = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(len(matrix), dtype=np.float64)

    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)

    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ q
    denom = row_norms * q_norm
    similarities = np.zeros(matrix.shape[0], dtype=np.float64)
    nonzero = denom > 0
    similarities[nonzero] = dots[nonzero] / denom[nonzero]
    return np.clip(similarities, -1.0, 1.0)


def normalize_embedding(embedding: Sequence[float]) -> list[float]:
    """Scale a vector to unit length; zero vectors are returned unchanged."""
    v = np.asarray(embedding, dtype=np.float64)
    magnitude = np.linalg.norm(v)
    if magnitude == 0:
        return list(embedding)
    return (v / magnitude).tolist()


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance between two vectors of equal length."""
    _check_same_length(a, b)
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


def format_bytes(num_bytes: int) -> str:
    """Format a byte count for display (e.g. '1.50 KB')."""
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    exponent = min(int(math.log(num_bytes, 1024)), len(units) - 1)
    return f"{num_bytes / 1024**exponent:.2f} {units[exponent]}"


def estimate_storage_size(count: int, dimensions: int) -> int:
    """Estimate index size in bytes: float64 per component plus record overhead."""
    return count * (dimensions * 8 + _RECORD_OVERHEAD_BYTES)
