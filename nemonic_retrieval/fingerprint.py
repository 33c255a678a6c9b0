"""Local text fingerprints and cosine similarity.

The fingerprint is a cheap stand-in for a learned embedding: a fixed-width
bag-of-words vector where earlier tokens weigh more. Ranking only relies on
three properties, which any replacement model must keep: the output is a
deterministic function of the text, it always has ``DIMENSIONS`` elements and
it is L2 normalised (or all zeros for empty text).
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

DIMENSIONS = 128

VectorLike = Union[np.ndarray, Sequence[float]]


def string_hash(token: str) -> int:
    """32-bit rolling hash over UTF-16 code units (``h * 31 + unit``)."""
    raw = token.encode("utf-16-le")
    value = 0
    for offset in range(0, len(raw), 2):
        unit = raw[offset] | (raw[offset + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


def embed(text: str, dimensions: int = DIMENSIONS) -> np.ndarray:
    """Return the normalised fingerprint of ``text``."""
    vector = np.zeros(dimensions, dtype=np.float64)
    for idx, token in enumerate(text.lower().split()):
        vector[string_hash(token) % dimensions] += 1.0 / (idx + 1)

    magnitude = float(np.linalg.norm(vector))
    if magnitude > 0:
        vector /= magnitude
    return vector


def similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine similarity in ``[-1, 1]``; 0.0 when the vectors are incomparable."""
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.shape != vec_b.shape:
        return 0.0

    denominator = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if denominator == 0.0:
        return 0.0
    return float(np.clip(np.dot(vec_a, vec_b) / denominator, -1.0, 1.0))
