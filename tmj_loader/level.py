"""
Conversion output

=============================================================================
LEVEL DEFINITION
=============================================================================

LevelDefinition is what the converter hands to the engine side:

    LevelDefinition
    ├── metadata           MapMetadata (size, orientation, bounds...)
    ├── tile_layers        TileLayerPlacement per tile layer, in zOrder
    │   └── tiles          TilePlacement per non-empty cell, render order
    ├── entities           EntityPlacement per object
    ├── parallax_layers    ParallaxLayer per image layer
    ├── collision          CollisionGrid
    └── diagnostics        unresolved gids, unmapped types, warnings

Every record is frozen; two conversions of the same map with the same
config compare equal.

=============================================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from .collision import CollisionGrid
from .coords import PixelPos, TileBounds, TileCoord
from .decoder import TileFlags
from .structures import ObjectShape


class LayerCategory(str, Enum):
    """What a layer (and the objects in it) is used for."""
    ENTITY = "entity"
    COLLISION = "collision"
    SECTOR = "sector"


def frozen_mapping(values: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


# =============================================================================
# TILES
# =============================================================================

@dataclass(frozen=True)
class TilePlacement:
    tile: TileCoord                      # World tile coordinate
    gid: int                             # Global ID, flags stripped
    local_id: int                        # ID within the tileset
    firstgid: int                        # Owning tileset
    tileset: str                         # Owning tileset name
    atlas: Tuple[int, int]               # (column, row) in the spritesheet
    offset: PixelPos                     # Tileset drawing offset
    flags: TileFlags = TileFlags()


@dataclass(frozen=True)
class TileLayerPlacement:
    """
    One tile layer ready for rendering.

    `offset`, `opacity` and `parallax` are accumulated through parent
    groups. `tiles` follows the map's render order.
    """
    name: str
    layer_id: int
    z_order: int
    level: int                           # From the Z/z/level property
    category: LayerCategory
    offset: PixelPos
    opacity: float
    parallax: Tuple[float, float]
    visible: bool
    tiles: Tuple[TilePlacement, ...] = ()


# =============================================================================
# OBJECTS
# =============================================================================

@dataclass(frozen=True)
class EntityPlacement:
    """
    Instantiation descriptor for one map object.

    `position` is final (layer offsets, tileset offset and, for
    orthogonal maps with flip_y, the vertical mirror applied). `points`
    stay relative to `position`.
    """
    id: str                              # entity_<n>, sector_<n>, patrol_<n>
    object_id: int
    name: str
    type: str
    placeholder: str                     # Blueprint path
    placeholder_mapped: bool             # False when derived from the type
    position: PixelPos
    width: float
    height: float
    rotation: float
    shape: ObjectShape
    category: LayerCategory
    layer: str
    gid: int = 0                         # Tile objects, flags stripped
    visible: bool = True
    properties: Mapping[str, Any] = field(default_factory=frozen_mapping)
    points: Optional[Tuple[PixelPos, ...]] = None
    text: Optional[str] = None


@dataclass(frozen=True)
class ParallaxLayer:
    name: str
    image_path: str
    scroll_factor_x: float
    scroll_factor_y: float
    offset: PixelPos
    opacity: float
    repeat_x: bool
    repeat_y: bool
    visible: bool
    z_order: int
    tint: Optional[int] = None           # 0xAARRGGBB


# =============================================================================
# DIAGNOSTICS
# =============================================================================

@dataclass(frozen=True)
class UnresolvedGid:
    """A gid no tileset claims. Non-fatal: the tile is treated as empty."""
    layer: str
    gid: int
    location: str                        # "tile (x, y)" or "object <id>"


@dataclass(frozen=True)
class ConversionDiagnostics:
    unresolved_gids: Tuple[UnresolvedGid, ...] = ()
    unmapped_types: Tuple[str, ...] = ()  # Sorted, unique
    warnings: Tuple[str, ...] = ()

    @property
    def is_clean(self) -> bool:
        return not (self.unresolved_gids or self.unmapped_types or self.warnings)


# =============================================================================
# LEVEL
# =============================================================================

@dataclass(frozen=True)
class MapMetadata:
    orientation: str
    render_order: str
    width: int
    height: int
    tile_width: int
    tile_height: int
    infinite: bool
    tile_bounds: Optional[TileBounds]
    pixel_bottom: float                  # Mirror axis used by flip_y
    background_color: Optional[str] = None
    properties: Mapping[str, Any] = field(default_factory=frozen_mapping)


@dataclass(frozen=True)
class LevelDefinition:
    metadata: MapMetadata
    tile_layers: Tuple[TileLayerPlacement, ...]
    entities: Tuple[EntityPlacement, ...]
    parallax_layers: Tuple[ParallaxLayer, ...]
    collision: CollisionGrid
    diagnostics: ConversionDiagnostics

    @property
    def unresolved_gid_count(self) -> int:
        return len(self.diagnostics.unresolved_gids)

    @property
    def tile_count(self) -> int:
        return sum(len(layer.tiles) for layer in self.tile_layers)

    def entities_in(self, category: LayerCategory) -> Tuple[EntityPlacement, ...]:
        return tuple(e for e in self.entities if e.category == category)

    def get_tile_layer(self, name: str) -> Optional[TileLayerPlacement]:
        for layer in self.tile_layers:
            if layer.name == name:
                return layer
        return None
