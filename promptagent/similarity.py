# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Hash-based text similarity — offline pseudo-embeddings + cosine.

Each token is hashed with 32-bit FNV-1a into one of ``dim`` buckets; the
lowest hash bit picks the sign (signed hashing trick). Cosine similarity of
two such vectors approximates bag-of-words overlap, which is enough to
spot near-duplicate generator outputs.
"""
import math
import re
from typing import List, Sequence

from promptagent.errors import DimensionMismatch

DEFAULT_DIM = 512

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_NON_WORD_RE = re.compile(r"[^a-z0-9а-яё\s-]")


def tokenize(text: str) -> List[str]:
    """Lowercase, strip punctuation, drop tokens shorter than 3 chars."""
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) >= 3]


def fnv1a32(token: str) -> int:
    """32-bit FNV-1a over UTF-16 code units."""
    h = _FNV_OFFSET
    encoded = token.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        h ^= encoded[i] | (encoded[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def hash_vector(text: str, dim: int = DEFAULT_DIM) -> List[float]:
    """Deterministic bag-of-tokens vector of length ``dim``.

    Empty input (or input with only sub-3-character tokens) gives the zero
    vector.
    """
    if dim < 1:
        raise ValueError("dim must be >= 1, got {}".format(dim))
    vec = [0.0] * dim
    for token in tokenize(text or ""):
        h = fnv1a32(token)
        vec[h % dim] += 1.0 if (h & 1) == 0 else -1.0
    return vec


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 when either vector is all zeros."""
    if len(a) != len(b):
        raise DimensionMismatch(
            "Vector dimension mismatch: {} vs {}".format(len(a), len(b)),
        )
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # float rounding can push |cos| a hair past 1
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def text_similarity(text_a: str, text_b: str, dim: int = DEFAULT_DIM) -> float:
    """Cosine similarity of the hash vectors of two texts."""
    return cosine(hash_vector(text_a, dim), hash_vector(text_b, dim))
