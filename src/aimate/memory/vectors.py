"""Vector math helpers and float32 (de)serialization."""

import math
import struct
from collections.abc import Sequence


def l2_norm(vector: Sequence[float]) -> float:
    """Euclidean length of a vector."""
    return math.sqrt(sum(x * x for x in vector))


def normalize(vector: Sequence[float]) -> list[float]:
    """Scale a vector to unit length. A zero vector is returned unchanged."""
    norm = l2_norm(vector)
    if norm == 0:
        return list(vector)
    return [x / norm for x in vector]


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def cosine_similarity(
    a: Sequence[float],
    b: Sequence[float],
    norm_a: float | None = None,
    norm_b: float | None = None,
) -> float:
    """Cosine similarity of two vectors.

    Precomputed norms may be passed to skip recomputing them.

    Returns:
        Similarity in [-1, 1], or 0.0 when lengths differ or either vector
        has zero length.
    """
    if len(a) != len(b) or not a:
        return 0.0
    if norm_a is None:
        norm_a = l2_norm(a)
    if norm_b is None:
        norm_b = l2_norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot(a, b) / (norm_a * norm_b)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance, or infinity when lengths differ."""
    if len(a) != len(b):
        return math.inf
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def serialize_vector(vector: Sequence[float]) -> bytes:
    """Pack a vector as little-endian float32 bytes."""
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_vector(data: bytes) -> list[float]:
    """Unpack little-endian float32 bytes into a vector.

    Raises:
        ValueError: If the byte length is not a multiple of four.
    """
    if len(data) % 4:
        raise ValueError(f"vector blob length {len(data)} is not a multiple of 4")
    return list(struct.unpack(f"<{len(data) // 4}f", data))
