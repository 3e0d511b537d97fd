"""
Tile payload decoding

=============================================================================
DATA ENCODINGS
=============================================================================

Tiled stores the tile grid of a layer (or of a chunk) in one of two ways:

1. CSV:
   TMX:  <data encoding="csv">1,2,3,4,
                              5,6,7,8</data>
   TMJ:  "data": [1, 2, 3, 4, 5, 6, 7, 8]
   Human-readable, good for debugging.

2. Base64:
   "data": "AQAAAAIAAAADAAAABAAAAA=="
   Compact binary, 4 bytes per tile, little-endian, optionally compressed:

   - zlib: standard deflate with zlib header
   - gzip: deflate with gzip header/trailer
   - zstd: modern compression (zstandard library)

=============================================================================
TILE ID LAYOUT
=============================================================================

Every cell is an unsigned 32-bit integer:

    bit 31  30  29  28 ........................... 0
        H   V   D   |<------- global tile ID ----->|

    H = flipped horizontally
    V = flipped vertically
    D = flipped diagonally (anti-diagonal, used for 90° rotations)

GID 0 = empty cell. The flag bits must be stripped before looking up the
tileset that owns the tile.

=============================================================================
INTERNAL STORAGE
=============================================================================

Decoded tiles are numpy arrays of dtype uint32 (4 bytes per tile, C-level
access, vectorized flag stripping). Index calculation: tiles[y * width + x]

=============================================================================
"""

import base64
import binascii
import gzip
import logging
import zlib
from typing import NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import zstandard

from .errors import (
    Base64DecodeError,
    CompressionError,
    CompressionFailure,
    InvalidTokenError,
    MalformedDataError,
    UnsupportedEncodingError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# FLIP FLAGS
# =============================================================================

FLIPPED_HORIZONTALLY_FLAG = 0x80000000
FLIPPED_VERTICALLY_FLAG = 0x40000000
FLIPPED_DIAGONALLY_FLAG = 0x20000000
FLIP_FLAGS_MASK = 0xE0000000
GID_MASK = 0x1FFFFFFF
UINT32_MAX = 0xFFFFFFFF

ENCODINGS = ("csv", "base64")
COMPRESSIONS = ("gzip", "zlib", "zstd")

Payload = Union[str, Sequence[int]]


class TileFlags(NamedTuple):
    """Flip state of one cell."""
    horizontal: bool = False
    vertical: bool = False
    diagonal: bool = False

    @property
    def any(self) -> bool:
        return self.horizontal or self.vertical or self.diagonal


NO_FLAGS = TileFlags()


def split_flags(tile_id: int) -> Tuple[int, TileFlags]:
    """
    Separate a raw 32-bit tile ID into (gid, flags).

    The gid is the low 29 bits; it is what the tileset lookup uses.
    """
    tile_id = int(tile_id)
    return tile_id & GID_MASK, TileFlags(
        bool(tile_id & FLIPPED_HORIZONTALLY_FLAG),
        bool(tile_id & FLIPPED_VERTICALLY_FLAG),
        bool(tile_id & FLIPPED_DIAGONALLY_FLAG),
    )


def apply_flags(gid: int, flags: TileFlags) -> int:
    """Inverse of split_flags(): rebuild the raw 32-bit tile ID."""
    tile_id = int(gid) & GID_MASK
    if flags.horizontal:
        tile_id |= FLIPPED_HORIZONTALLY_FLAG
    if flags.vertical:
        tile_id |= FLIPPED_VERTICALLY_FLAG
    if flags.diagonal:
        tile_id |= FLIPPED_DIAGONALLY_FLAG
    return tile_id


def strip_flags(tile_ids):
    """Drop the flag bits from an int or a whole uint32 array."""
    if isinstance(tile_ids, np.ndarray):
        return tile_ids & np.uint32(GID_MASK)
    return int(tile_ids) & GID_MASK


# =============================================================================
# CSV
# =============================================================================

def _parse_token(token, position: int) -> int:
    """Parse one CSV cell as an unsigned 32-bit integer."""
    if isinstance(token, bool):
        raise InvalidTokenError(str(token).lower(), position)
    if isinstance(token, int):
        value = token
    else:
        text = str(token).strip()
        if not (text.isascii() and text.isdigit()):
            raise InvalidTokenError(text, position)
        value = int(text)

    if not 0 <= value <= UINT32_MAX:
        raise InvalidTokenError(str(token).strip(), position,
                                "exceeds uint32 range")
    return value


def parse_csv(payload: Payload) -> np.ndarray:
    """
    Parse CSV tile data.

    Accepts the TMX text form ("1,2,3,\\n4,5,6") or the TMJ list form
    ([1, 2, 3, 4, 5, 6]). A single trailing comma is tolerated; any other
    empty or non-numeric token is an error. `position` in the error is the
    0-based token index.
    """
    if isinstance(payload, str):
        tokens = payload.split(',')
        # "1,2,3," and "" both end with one empty token
        if tokens and not tokens[-1].strip():
            tokens.pop()
    elif isinstance(payload, (list, tuple, np.ndarray)):
        tokens = list(payload)
    else:
        raise InvalidTokenError(repr(payload), 0, "payload is not text or a list")

    values = [_parse_token(token, position) for position, token in enumerate(tokens)]
    return np.array(values, dtype=np.uint32)


# =============================================================================
# BASE64 + COMPRESSION
# =============================================================================

def decode_base64(text: str) -> bytes:
    """Strict base64 decode; whitespace (line breaks in TMX) is ignored."""
    if not isinstance(text, str):
        raise Base64DecodeError(f"payload is a {type(text).__name__}, not a string", 0)

    cleaned = ''.join(text.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise Base64DecodeError(str(e), len(text)) from e


def _classify_zlib_error(error: zlib.error) -> CompressionFailure:
    message = str(error).lower()
    # Wrong wrapper (e.g. gzip bytes declared as zlib) fails the header check
    if "header check" in message or "unknown compression method" in message:
        return CompressionFailure.UNSUPPORTED_FORMAT
    return CompressionFailure.CORRUPT_STREAM


def _inflate(data: bytes, wbits: int, name: str) -> bytes:
    """
    Deflate-family decompression with truncation detection.

    zlib.decompress() reports a truncated stream and a corrupt one with
    the same generic error. A decompressobj lets us tell them apart: if
    the input runs out before the end-of-stream marker (and, for gzip,
    the CRC/size trailer), `eof` stays False.
    """
    if not data:
        raise CompressionError(CompressionFailure.TRUNCATED_STREAM, 0, name,
                               "empty input")

    inflater = zlib.decompressobj(wbits)
    try:
        raw = inflater.decompress(data) + inflater.flush()
    except zlib.error as e:
        raise CompressionError(_classify_zlib_error(e), len(data), name, str(e)) from e

    if not inflater.eof:
        raise CompressionError(CompressionFailure.TRUNCATED_STREAM, len(data), name,
                               "stream ended before end marker")
    if inflater.unused_data:
        logger.debug("%s stream followed by %d unused bytes",
                     name, len(inflater.unused_data))
    return raw


def _unzstd(data: bytes) -> bytes:
    if not data:
        raise CompressionError(CompressionFailure.TRUNCATED_STREAM, 0, "zstd",
                               "empty input")

    decompressor = zstandard.ZstdDecompressor().decompressobj()
    try:
        raw = decompressor.decompress(data)
    except zstandard.ZstdError as e:
        cause = CompressionFailure.CORRUPT_STREAM
        if "unknown frame descriptor" in str(e).lower():
            cause = CompressionFailure.UNSUPPORTED_FORMAT
        raise CompressionError(cause, len(data), "zstd", str(e)) from e

    if not decompressor.eof:
        raise CompressionError(CompressionFailure.TRUNCATED_STREAM, len(data), "zstd",
                               "frame ended early")
    return raw


def decompress(data: bytes, compression: Optional[str]) -> bytes:
    """Inflate base64-decoded bytes according to the layer's compression."""
    if not compression:
        return data
    if compression == 'zlib':
        return _inflate(data, zlib.MAX_WBITS, 'zlib')
    if compression == 'gzip':
        return _inflate(data, 16 + zlib.MAX_WBITS, 'gzip')
    if compression == 'zstd':
        return _unzstd(data)
    raise CompressionError(CompressionFailure.UNSUPPORTED_FORMAT, len(data), compression,
                           "unknown compression")


def bytes_to_tile_ids(raw: bytes) -> np.ndarray:
    """
    Convert a byte buffer to uint32 tile IDs (little-endian, 4 bytes each).

    A length that is not a multiple of 4 means corrupted or truncated
    data; it is reported, never padded or cut.
    """
    if len(raw) % 4:
        raise MalformedDataError(len(raw))
    return np.frombuffer(raw, dtype='<u4').astype(np.uint32)


# =============================================================================
# ENTRY POINTS
# =============================================================================

def decode_tile_data(payload: Payload, encoding: Optional[str] = 'csv',
                     compression: Optional[str] = None) -> np.ndarray:
    """
    Decode a layer/chunk payload into an ordered uint32 array.

    Parameters:
    -----------
    payload : str or list of int
        The "data" value of the layer or chunk
    encoding : str
        'csv' (default when absent) or 'base64'
    compression : str, optional
        None/'' , 'zlib', 'gzip' or 'zstd' (base64 only)

    Raises:
    -------
    InvalidTokenError, Base64DecodeError, CompressionError,
    MalformedDataError, UnsupportedEncodingError
    """
    encoding = encoding or 'csv'

    if encoding == 'csv':
        if compression:
            size = len(payload) if hasattr(payload, '__len__') else 0
            raise CompressionError(CompressionFailure.UNSUPPORTED_FORMAT, size, compression,
                                   "compression requires base64 encoding")
        return parse_csv(payload)

    if encoding == 'base64':
        raw = decode_base64(payload)
        logger.debug("Base64 decoded %d bytes", len(raw))
        if compression:
            compressed_size = len(raw)
            raw = decompress(raw, compression)
            logger.debug("%s decompressed from %d to %d bytes",
                         compression, compressed_size, len(raw))
        return bytes_to_tile_ids(raw)

    raise UnsupportedEncodingError(encoding)


def encode_tile_data(tile_ids, encoding: str = 'csv',
                     compression: Optional[str] = None,
                     width: Optional[int] = None) -> str:
    """
    Encode tile IDs back into a Tiled payload string.

    Parameters:
    -----------
    tile_ids : sequence of int or numpy array
        Raw tile IDs (flags included)
    encoding : str
        'csv' or 'base64'
    compression : str, optional
        For base64: 'zlib', 'gzip', 'zstd' or None
    width : int, optional
        For CSV: number of values per line (rows are easier to read)
    """
    ids = np.asarray(tile_ids, dtype=np.uint32)

    if encoding == 'csv':
        values = [str(int(v)) for v in ids]
        if not width:
            return ','.join(values)
        # Format as rows for readability
        rows = [','.join(values[start:start + width])
                for start in range(0, len(values), width)]
        return ',\n'.join(rows)

    if encoding == 'base64':
        raw = ids.astype('<u4').tobytes()
        if compression == 'zlib':
            raw = zlib.compress(raw)
        elif compression == 'gzip':
            raw = gzip.compress(raw)
        elif compression == 'zstd':
            raw = zstandard.ZstdCompressor().compress(raw)
        elif compression:
            raise CompressionError(CompressionFailure.UNSUPPORTED_FORMAT, len(raw),
                                   compression, "unknown compression")
        return base64.b64encode(raw).decode('ascii')

    raise UnsupportedEncodingError(encoding)
