r"""
Isometric tile projection

=============================================================================
DIAMOND PROJECTION
=============================================================================

Isometric tiles are diamonds. Tile (x, y) is drawn with its top vertex at:

    screenX = (x - y) * tileWidth  / 2
    screenY = (x + y) * tileHeight / 2

          (0,0)
          /  \
     (0,1)    (1,0)
       /  \  /  \
          (1,1)

Moving +1 in x goes down-right, +1 in y goes down-left.

These functions serve tile rendering and culling only. Object positions
on isometric maps are already final pixel values and never go through
this module.

=============================================================================
"""

import math
from typing import Tuple

from .coords import PixelPos, TileBounds, TileCoord


def _check_tile_size(tile_width: float, tile_height: float):
    if tile_width <= 0 or tile_height <= 0:
        raise ValueError(f"tile size must be positive, got {tile_width}x{tile_height}")


def tile_to_screen(tile: TileCoord, tile_width: float, tile_height: float) -> PixelPos:
    """Screen position of a tile's top vertex."""
    if not isinstance(tile, TileCoord):
        raise TypeError(f"expected TileCoord, got {type(tile).__name__}")
    _check_tile_size(tile_width, tile_height)
    return PixelPos((tile.x - tile.y) * tile_width / 2.0,
                    (tile.x + tile.y) * tile_height / 2.0)


def screen_to_tile_fractional(screen: PixelPos, tile_width: float,
                              tile_height: float) -> Tuple[float, float]:
    """
    Exact inverse of tile_to_screen(), without rounding.

        x = (sx / (tw/2) + sy / (th/2)) / 2
        y = (sy / (th/2) - sx / (tw/2)) / 2
    """
    if not isinstance(screen, PixelPos):
        raise TypeError(f"expected PixelPos, got {type(screen).__name__}")
    _check_tile_size(tile_width, tile_height)
    u = screen.x / (tile_width / 2.0)
    v = screen.y / (tile_height / 2.0)
    return (u + v) / 2.0, (v - u) / 2.0


def screen_to_tile(screen: PixelPos, tile_width: float, tile_height: float) -> TileCoord:
    """Tile whose diamond contains the screen point (floored)."""
    fx, fy = screen_to_tile_fractional(screen, tile_width, tile_height)
    return TileCoord(math.floor(fx), math.floor(fy))


def visible_tile_bounds(left: float, top: float, right: float, bottom: float,
                        tile_width: float, tile_height: float,
                        padding: int = 0) -> TileBounds:
    """
    Tile rectangle covering a screen-space view rectangle.

    The view rectangle is a parallelogram in tile space, so the tiles
    under its four corners bound every visible tile.
    """
    corners = [
        screen_to_tile(PixelPos(x, y), tile_width, tile_height)
        for x, y in ((left, top), (right, top), (left, bottom), (right, bottom))
    ]
    return TileBounds(
        min(c.x for c in corners) - padding,
        min(c.y for c in corners) - padding,
        max(c.x for c in corners) + padding,
        max(c.y for c in corners) + padding,
    )


def draw_order_key(tile: TileCoord) -> Tuple[int, int]:
    """
    Sort key for back-to-front drawing.

    Tiles on the same diagonal (x + y) share a screen row; lower
    diagonals are further back.
    """
    return tile.x + tile.y, tile.x
