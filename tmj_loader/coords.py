"""
Coordinate value types

=============================================================================
TWO SPACES, TWO TYPES
=============================================================================

TILE SPACE:  integer tile indices (column, row). Chunk origins, layer cells
             and map bounds live here. May be negative on infinite maps.

PIXEL SPACE: float world/screen pixels. Object positions, layer offsets and
             tileset offsets live here. For isometric maps the pixel values
             written by Tiled are final - they are never derived from tile
             space.

The types do not mix:

    TileCoord(1, 2) + TileCoord(3, 4)   → TileCoord(4, 6)
    PixelPos(1, 2) + PixelPos(0.5, 0)   → PixelPos(1.5, 2.0)
    TileCoord(1, 2) + PixelPos(1, 2)    → TypeError

The only functions that cross between them are in tmj_loader.isometric,
and those are for tile rendering only.

=============================================================================
"""

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class TileCoord:
    """Integer position in tile space."""
    x: int
    y: int

    def __add__(self, other: 'TileCoord') -> 'TileCoord':
        if not isinstance(other, TileCoord):
            return NotImplemented
        return TileCoord(self.x + other.x, self.y + other.y)

    def __sub__(self, other: 'TileCoord') -> 'TileCoord':
        if not isinstance(other, TileCoord):
            return NotImplemented
        return TileCoord(self.x - other.x, self.y - other.y)

    def __iter__(self) -> Iterator[int]:
        yield self.x
        yield self.y


@dataclass(frozen=True)
class PixelPos:
    """Float position (or offset) in pixel space."""
    x: float
    y: float

    def __add__(self, other: 'PixelPos') -> 'PixelPos':
        if not isinstance(other, PixelPos):
            return NotImplemented
        return PixelPos(self.x + other.x, self.y + other.y)

    def __sub__(self, other: 'PixelPos') -> 'PixelPos':
        if not isinstance(other, PixelPos):
            return NotImplemented
        return PixelPos(self.x - other.x, self.y - other.y)

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y

    def mirrored_y(self, axis: float) -> 'PixelPos':
        """Reflect across a horizontal line: y' = axis - y."""
        return PixelPos(self.x, axis - self.y)


PIXEL_ORIGIN = PixelPos(0.0, 0.0)


@dataclass(frozen=True)
class TileBounds:
    """
    Inclusive tile-space rectangle.

    For infinite maps this is the union of every chunk:
        min_x = min(chunk.x)
        max_x = max(chunk.x + chunk.width - 1)
    """
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def origin(self) -> TileCoord:
        return TileCoord(self.min_x, self.min_y)

    def contains(self, tile: TileCoord) -> bool:
        return (self.min_x <= tile.x <= self.max_x and
                self.min_y <= tile.y <= self.max_y)

    def union(self, other: 'TileBounds') -> 'TileBounds':
        return TileBounds(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y),
        )
