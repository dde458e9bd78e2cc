"""
Embedding Utilities for Mnemos Storage
Binary serialization and similarity calculations for vector embeddings.
"""

import struct
import numpy as np
from typing import List, Optional, Sequence


def embed_to_blob(embedding: Sequence[float]) -> bytes:
    """
    Convert embedding list to binary blob (float32).

    Args:
        embedding: Sequence of floats representing the embedding vector

    Returns:
        Binary blob representation (packed float32 values)
    """
    return struct.pack(f'{len(embedding)}f', *embedding)


def blob_to_embed(blob: Optional[bytes]) -> List[float]:
    """
    Convert binary blob to embedding list (float32).

    Args:
        blob: Binary blob containing packed float32 values

    Returns:
        List of floats representing the embedding vector
    """
    if not blob:
        return []
    num_floats = len(blob) // 4
    return list(struct.unpack(f'{num_floats}f', blob))


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Vectors of different length (or empty ones) score 0.0.
    """
    if v1 is None or v2 is None or len(v1) == 0 or len(v2) == 0 or len(v1) != len(v2):
        return 0.0
    arr1 = np.asarray(v1, dtype=np.float64)
    arr2 = np.asarray(v2, dtype=np.float64)
    dot = np.dot(arr1, arr2)
    norm = np.linalg.norm(arr1) * np.linalg.norm(arr2)
    return float(dot / norm) if norm > 0 else 0.0
