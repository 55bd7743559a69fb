"""
Vector codec: embeddings <-> little-endian float32 blobs.

Embeddings arrive as double precision and are narrowed to single precision
for storage (4 bytes per element). Decoding upcasts back to double; the
round trip is exact only to float32 precision. Changing the width changes the
on-disk format.
"""

from typing import List, Sequence

import numpy as np

from ..core.errors import CodecError, FormatError

STORAGE_DTYPE = np.dtype("<f4")
BYTES_PER_ELEMENT = STORAGE_DTYPE.itemsize


def encode(vector: Sequence[float]) -> bytes:
    """Encode a vector as concatenated little-endian float32 values."""
    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise CodecError(f"Cannot encode vector: {e}") from e

    if array.ndim != 1:
        raise CodecError(f"Expected a 1-D vector, got shape {array.shape}")

    with np.errstate(over="ignore"):
        return array.astype(STORAGE_DTYPE).tobytes()


def decode(blob: bytes) -> List[float]:
    """Decode a blob produced by encode() back to double precision floats."""
    return decode_array(blob).astype(np.float64).tolist()


def decode_array(blob: bytes, dimension: int = None) -> np.ndarray:
    """Decode to a float32 numpy array, optionally checking the dimension."""
    if len(blob) % BYTES_PER_ELEMENT:
        raise FormatError(f"Vector blob length {len(blob)} is not a multiple of {BYTES_PER_ELEMENT}")

    array = np.frombuffer(blob, dtype=STORAGE_DTYPE)
    if dimension is not None and array.shape[0] != dimension:
        raise FormatError(f"Vector blob has {array.shape[0]} elements, expected {dimension}")
    return array
