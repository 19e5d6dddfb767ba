"""Peak array compression for BLIB libraries.

Peak m/z values are stored as little-endian float64 and intensities as
little-endian float32, each array zlib-compressed into its own blob.
When compression does not shrink an array the raw bytes are stored
instead. There is no flag recording which was done: a blob whose length
equals ``numPeaks * itemsize`` is raw, anything else is compressed.
"""

from __future__ import annotations

import logging
import zlib

import numpy as np

logger = logging.getLogger(__name__)

MZ_DTYPE = np.dtype("<f8")
INTENSITY_DTYPE = np.dtype("<f4")

# zlib's own default level
DEFAULT_COMPRESSION_LEVEL = -1


def compress_peaks(
    values,
    dtype: np.dtype | str,
    level: int = DEFAULT_COMPRESSION_LEVEL,
) -> bytes:
    """Encode a peak array as a BLIB blob.

    Args:
        values: Sequence or array of peak values
        dtype: Element type of the stored array (float64 for m/z, float32
            for intensity)
        level: zlib compression level; 0 stores the array uncompressed

    Returns:
        Compressed bytes, or the raw bytes if compression did not help

    """
    dtype = np.dtype(dtype).newbyteorder("<")
    raw = np.ascontiguousarray(values, dtype=dtype).tobytes()

    if level == 0:
        return raw

    try:
        compressed = zlib.compress(raw, level)
    except zlib.error as e:
        logger.debug(f"Peak compression failed, storing raw bytes: {e}")
        return raw

    if len(compressed) >= len(raw):
        return raw
    return compressed


def decompress_peaks(blob: bytes, num_peaks: int, dtype: np.dtype | str) -> np.ndarray:
    """Decode a BLIB peak blob.

    Decompression is always attempted first. If it fails, or produces a
    buffer of the wrong size, the blob is read as raw values.

    Args:
        blob: Stored peak blob
        num_peaks: Declared peak count from the owning RefSpectra row
        dtype: Element type of the stored array

    Returns:
        Array of ``num_peaks`` values

    Raises:
        ValueError: If neither interpretation matches ``num_peaks``

    """
    dtype = np.dtype(dtype).newbyteorder("<")
    expected = int(num_peaks) * dtype.itemsize
    data = bytes(blob) if blob is not None else b""

    try:
        decompressed = zlib.decompress(data)
    except zlib.error:
        decompressed = None

    if decompressed is not None and len(decompressed) == expected:
        data = decompressed
    elif len(data) != expected:
        raise ValueError(
            f"Peak blob of {len(data)} bytes does not hold {num_peaks} "
            f"values of {dtype.itemsize} bytes"
        )

    return np.frombuffer(data, dtype=dtype).astype(dtype.newbyteorder("="))


def compress_mz(values, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    return compress_peaks(values, MZ_DTYPE, level)


def compress_intensity(values, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    return compress_peaks(values, INTENSITY_DTYPE, level)


def decompress_mz(blob: bytes, num_peaks: int) -> np.ndarray:
    return decompress_peaks(blob, num_peaks, MZ_DTYPE)


def decompress_intensity(blob: bytes, num_peaks: int) -> np.ndarray:
    return decompress_peaks(blob, num_peaks, INTENSITY_DTYPE)
