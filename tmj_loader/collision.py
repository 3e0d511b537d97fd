"""
Collision grid parallel to the tile map

=============================================================================
OVERVIEW
=============================================================================

One uint8 per tile cell:

    0 = walkable
    1 = solid

Two sources mark cells solid:

1. Every non-empty cell of a tile layer classified as COLLISION (its name
   matches one of the collision patterns: "collision", "walls", ...).
2. Every cell holding a tile whose tileset metadata has solid=true.

Lookup is O(1): grid.is_solid(TileCoord(x, y)).

=============================================================================
STORAGE
=============================================================================

The grid covers the map extent (tile_bounds for infinite maps, so chunks
at negative tile coordinates are addressable), but cells are stored in
16x16 numpy blocks keyed by block coordinate:

    block (bx, by) holds tiles bx*16 .. bx*16+15, by*16 .. by*16+15

A block exists only once a cell in it is marked. Two chunks a million
tiles apart cost two blocks, not the bounding box between them.

Out-of-bounds queries report solid: nothing can leave the map.

=============================================================================
"""

import logging
from typing import Dict, Iterable, Iterator, Optional, Tuple

import numpy as np

from .coords import TileBounds, TileCoord

logger = logging.getLogger(__name__)

SOLID = 1
BLOCK_SIZE = 16

BlockKey = Tuple[int, int]


class CollisionGrid:
    """Solid/walkable flags for every tile of the map extent."""

    def __init__(self, bounds: TileBounds):
        self.bounds = bounds
        self.origin = bounds.origin
        self.width = bounds.width
        self.height = bounds.height
        self._blocks: Dict[BlockKey, np.ndarray] = {}
        self._frozen = False

    def _in_bounds(self, tile: TileCoord) -> bool:
        return self.bounds.contains(tile)

    def _writable_block(self, key: BlockKey) -> np.ndarray:
        if self._frozen:
            raise ValueError("collision grid is read-only")
        block = self._blocks.get(key)
        if block is None:
            # Zeros = all tiles walkable by default
            block = np.zeros((BLOCK_SIZE, BLOCK_SIZE), dtype=np.uint8)
            self._blocks[key] = block
        return block

    def _windows(self, first: TileCoord,
                 last: TileCoord) -> Iterator[Tuple[BlockKey, TileCoord, TileCoord]]:
        """
        Split an inclusive tile rectangle, clipped to the grid, by block.

        Yields (block key, first tile, last tile) per touched block.
        """
        x0, y0 = max(first.x, self.bounds.min_x), max(first.y, self.bounds.min_y)
        x1, y1 = min(last.x, self.bounds.max_x), min(last.y, self.bounds.max_y)
        if x0 > x1 or y0 > y1:
            return
        for by in range(y0 // BLOCK_SIZE, y1 // BLOCK_SIZE + 1):
            top = max(y0, by * BLOCK_SIZE)
            bottom = min(y1, by * BLOCK_SIZE + BLOCK_SIZE - 1)
            for bx in range(x0 // BLOCK_SIZE, x1 // BLOCK_SIZE + 1):
                left = max(x0, bx * BLOCK_SIZE)
                right = min(x1, bx * BLOCK_SIZE + BLOCK_SIZE - 1)
                yield (bx, by), TileCoord(left, top), TileCoord(right, bottom)

    @staticmethod
    def _block_slices(key: BlockKey, first: TileCoord, last: TileCoord):
        bx, by = key
        return (slice(first.y - by * BLOCK_SIZE, last.y - by * BLOCK_SIZE + 1),
                slice(first.x - bx * BLOCK_SIZE, last.x - bx * BLOCK_SIZE + 1))

    def set_flags(self, tile: TileCoord, flags: int):
        """Set flags at a tile; coordinates outside the grid are ignored."""
        if not self._in_bounds(tile):
            return
        bx, col = divmod(tile.x, BLOCK_SIZE)
        by, row = divmod(tile.y, BLOCK_SIZE)
        if not flags and (bx, by) not in self._blocks and not self._frozen:
            return
        self._writable_block((bx, by))[row, col] = flags

    def mark_solid(self, tiles: Iterable[TileCoord]):
        for tile in tiles:
            self.set_flags(tile, SOLID)

    def mark_rect(self, first: TileCoord, last: TileCoord):
        """Mark the inclusive rectangle first..last solid, clipped to the grid."""
        for key, top_left, bottom_right in self._windows(first, last):
            self._writable_block(key)[self._block_slices(key, top_left, bottom_right)] = SOLID

    def mark_mask(self, origin: TileCoord, mask: np.ndarray):
        """
        OR a boolean (rows, cols) mask whose [0, 0] is tile `origin`.

        Parts of the mask outside the grid are clipped.
        """
        rows, cols = mask.shape
        last = TileCoord(origin.x + cols - 1, origin.y + rows - 1)
        for key, top_left, bottom_right in self._windows(origin, last):
            window = mask[top_left.y - origin.y:bottom_right.y - origin.y + 1,
                          top_left.x - origin.x:bottom_right.x - origin.x + 1]
            if window.any():
                block = self._writable_block(key)
                block[self._block_slices(key, top_left, bottom_right)][window] = SOLID

    def get_flags(self, tile: TileCoord) -> int:
        if not self._in_bounds(tile):
            return SOLID  # Out of bounds = solid (can't walk off map)
        bx, col = divmod(tile.x, BLOCK_SIZE)
        by, row = divmod(tile.y, BLOCK_SIZE)
        block = self._blocks.get((bx, by))
        return 0 if block is None else int(block[row, col])

    def is_solid(self, tile: TileCoord) -> bool:
        return self.get_flags(tile) != 0

    def is_walkable(self, tile: TileCoord) -> bool:
        return self.get_flags(tile) == 0

    def freeze(self) -> 'CollisionGrid':
        """Make the grid read-only; set_flags() raises afterwards."""
        self._frozen = True
        for block in self._blocks.values():
            block.setflags(write=False)
        return self

    def solid_tiles(self) -> Iterator[TileCoord]:
        """Solid cells, block by block in row-major block order."""
        for bx, by in sorted(self._blocks, key=lambda key: (key[1], key[0])):
            rows, cols = np.nonzero(self._blocks[(bx, by)])
            for row, col in zip(rows.tolist(), cols.tolist()):
                yield TileCoord(bx * BLOCK_SIZE + col, by * BLOCK_SIZE + row)

    def to_array(self, bounds: Optional[TileBounds] = None) -> np.ndarray:
        """
        Dense copy of a window of the grid (the whole extent by default).

        Indexed [y - bounds.min_y, x - bounds.min_x]. Only ask for the whole
        extent when it is known to be small.
        """
        bounds = bounds or self.bounds
        out = np.zeros((bounds.height, bounds.width), dtype=np.uint8)
        for key, top_left, bottom_right in self._windows(bounds.origin,
                                                          TileCoord(bounds.max_x, bounds.max_y)):
            block = self._blocks.get(key)
            if block is None:
                continue
            cells = block[self._block_slices(key, top_left, bottom_right)]
            out[top_left.y - bounds.min_y:bottom_right.y - bounds.min_y + 1,
                top_left.x - bounds.min_x:bottom_right.x - bounds.min_x + 1] = cells
        return out

    @property
    def block_count(self) -> int:
        return len(self._blocks)

    @property
    def solid_count(self) -> int:
        return sum(int(np.count_nonzero(block)) for block in self._blocks.values())

    def get_stats(self) -> dict:
        total = self.width * self.height
        solid = self.solid_count
        return {
            'total_tiles': total,
            'solid_tiles': solid,
            'empty_tiles': total - solid,
            'solid_percent': (100.0 * solid / total) if total else 0.0,
        }

    def _occupied(self) -> Dict[BlockKey, np.ndarray]:
        return {key: block for key, block in self._blocks.items() if block.any()}

    def __eq__(self, other) -> bool:
        if not isinstance(other, CollisionGrid):
            return NotImplemented
        if self.bounds != other.bounds:
            return False
        mine, theirs = self._occupied(), other._occupied()
        return (mine.keys() == theirs.keys() and
                all(np.array_equal(block, theirs[key]) for key, block in mine.items()))

    __hash__ = None

    def __repr__(self) -> str:
        return (f"CollisionGrid({self.width}x{self.height} at {tuple(self.origin)}, "
                f"{self.solid_count} solid)")
