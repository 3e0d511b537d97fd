"""
Error taxonomy for map loading and conversion

=============================================================================
FATAL VS NON-FATAL
=============================================================================

Everything raised from this module is FATAL for the load that raised it:
the caller never receives a partially built TiledMap or LevelDefinition.

    TiledError
    ├── MapIOError              missing / unreadable map or tileset file
    ├── MapParseError           malformed document, bad structural field
    │   └── MapSchemaError      well-formed but semantically invalid
    ├── DataSizeError           decoded tile count != declared size
    └── DecodeError             payload could not be turned into tile IDs
        ├── InvalidTokenError
        ├── Base64DecodeError
        ├── CompressionError
        ├── MalformedDataError
        └── UnsupportedEncodingError

Unresolved tile references are NOT errors. They are collected as
UnresolvedGid records (see tmj_loader.level) and the level still loads.

=============================================================================
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union


class TiledError(Exception):
    """Base class for every fatal loader/converter error."""


class MapIOError(TiledError):
    """A map or tileset file could not be read."""

    def __init__(self, path: Union[str, Path], reason: str = ""):
        self.path = str(path)
        self.reason = reason
        message = f"Cannot read '{self.path}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MapParseError(TiledError):
    """
    The document is malformed or a structural field is missing/invalid.

    `field` names the offending field (e.g. "tilewidth",
    "layers[2].chunks[0].x") so the message points at the problem.
    """

    def __init__(self, message: str, field: Optional[str] = None,
                 source: Optional[str] = None):
        self.field = field
        self.source = source
        prefix = f"{source}: " if source else ""
        if field:
            prefix += f"[{field}] "
        super().__init__(prefix + message)

    def with_source(self, source: str) -> 'MapParseError':
        """Attach the file the error came from, unless one is already set."""
        if self.source is None:
            self.source = source
            self.args = (f"{source}: {self.args[0]}",) + self.args[1:]
        return self


class MapSchemaError(MapParseError):
    """Well-formed document with invalid values (dimensions, orientation...)."""


class DataSizeError(TiledError):
    """Decoded tile count does not match the declared layer/chunk size."""

    def __init__(self, name: str, expected: int, actual: int):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Tile data size mismatch in {name}: "
            f"expected {expected} tiles, got {actual}"
        )


class DecodeError(TiledError):
    """Base class for payload decoding failures."""

    def __init__(self, message: str):
        self.context: Optional[str] = None
        super().__init__(message)

    def with_context(self, context: str) -> 'DecodeError':
        """Attach the layer/chunk name the payload belongs to."""
        self.context = context
        self.args = (f"{context}: {self.args[0]}",) + self.args[1:]
        return self


class InvalidTokenError(DecodeError):
    """A CSV token is not an unsigned 32-bit integer."""

    def __init__(self, token: str, position: int, reason: str = "not a valid number"):
        self.token = token
        self.position = position
        super().__init__(
            f"Invalid CSV token at position {position}: '{token}' ({reason})"
        )


class Base64DecodeError(DecodeError):
    """The payload is not valid base64 (alphabet or padding)."""

    def __init__(self, reason: str, input_length: int):
        self.reason = reason
        self.input_length = input_length
        super().__init__(
            f"Base64 decode failed ({reason}), input length {input_length} characters"
        )


class CompressionFailure(str, Enum):
    """Machine-readable cause of a decompression failure."""
    CORRUPT_STREAM = "corrupt-stream"
    TRUNCATED_STREAM = "truncated-stream"
    UNSUPPORTED_FORMAT = "unsupported-format"


class CompressionError(DecodeError):
    """Inflating a base64 payload failed."""

    def __init__(self, cause: CompressionFailure, input_size: int,
                 compression: str, detail: str = ""):
        self.cause = cause
        self.input_size = input_size
        self.compression = compression
        self.detail = detail
        message = (f"{compression or 'none'} decompression failed: {cause.value}, "
                   f"input size {input_size} bytes")
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class MalformedDataError(DecodeError):
    """Decoded byte length is not a multiple of 4."""

    def __init__(self, length: int):
        self.length = length
        self.extra_bytes = length % 4
        self.missing_bytes = (4 - self.extra_bytes) % 4
        super().__init__(
            f"Tile data is {length} bytes, not a multiple of 4 "
            f"({self.extra_bytes} extra / {self.missing_bytes} missing bytes)"
        )


class UnsupportedEncodingError(DecodeError):
    """Layer declares an encoding other than csv/base64."""

    def __init__(self, encoding: str):
        self.encoding = encoding
        super().__init__(
            f"Unsupported encoding '{encoding}' (supported: 'csv', 'base64')"
        )
