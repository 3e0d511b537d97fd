"""
Map conversion: TiledMap → LevelDefinition

=============================================================================
PIPELINE
=============================================================================

    convert(tiled_map, config)
        │
        ├── ConversionContext (immutable, one per call)
        │     config, map, GidResolver, mirror axis, diagnostics
        │
        ├── layers, depth-first in document order
        │     tile layer   → TileLayerPlacement (next zOrder)
        │     image layer  → ParallaxLayer      (next zOrder)
        │     object group → EntityPlacement per object
        │     group        → recurse, offsets/opacity/parallax accumulate
        │
        └── CollisionGrid + diagnostics → LevelDefinition

The converter object itself keeps no per-call state: the same instance
can be reused, from any thread.

=============================================================================
OBJECT POSITIONS
=============================================================================

    final = raw + layerOffset (groups included) + tilesetOffset (tile objects)

    orthogonal / staggered / hexagonal, flip_y:
        y' = pixelBottom - y
        pixelBottom = height * tileHeight                  finite maps
                    = (tile_bounds.max_y + 1) * tileHeight infinite maps

    isometric:
        nothing else. Tiled writes isometric object positions in final
        pixel space: no tile conversion, no projection, no chunk origin,
        no render-order or Y flip.

=============================================================================
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from .collision import CollisionGrid
from .config import PATROL_PLACEHOLDER, SECTOR_PLACEHOLDER, ConversionConfig
from .coords import PIXEL_ORIGIN, PixelPos, TileBounds, TileCoord
from .decoder import GID_MASK, TileFlags, split_flags, strip_flags
from .level import (
    ConversionDiagnostics,
    EntityPlacement,
    LayerCategory,
    LevelDefinition,
    MapMetadata,
    ParallaxLayer,
    TileLayerPlacement,
    TilePlacement,
    UnresolvedGid,
    frozen_mapping,
)
from .structures import (
    ImageLayer,
    Layer,
    LayerGroup,
    ObjectGroup,
    ObjectShape,
    TiledMap,
    TiledObject,
    TileLayer,
    Tileset,
    property_values,
)

logger = logging.getLogger(__name__)


# =============================================================================
# GID RESOLUTION
# =============================================================================

@dataclass(frozen=True)
class ResolvedGid:
    """A gid matched to its tileset."""
    gid: int                             # Flags stripped
    tileset: Tileset
    local_id: int
    atlas_x: int                         # Column in the spritesheet
    atlas_y: int                         # Row in the spritesheet
    flags: TileFlags = TileFlags()

    @property
    def firstgid(self) -> int:
        return self.tileset.firstgid

    @property
    def offset(self) -> PixelPos:
        return self.tileset.tile_offset


class GidResolver:
    """
    Maps gids to tilesets by binary search over ascending firstgids.

    A tileset claims firstgid..lastgid. When its tile count is unknown
    the range runs up to the next tileset's firstgid (open-ended for the
    last one).
    """

    def __init__(self, tilesets: List[Tileset]):
        self.tilesets = tuple(tilesets)
        self._firstgids = [tileset.firstgid for tileset in self.tilesets]
        self._lastgids = []
        for index, tileset in enumerate(self.tilesets):
            if tileset.lastgid is not None:
                limit = tileset.lastgid
            elif index + 1 < len(self.tilesets):
                limit = self.tilesets[index + 1].firstgid - 1
            else:
                limit = GID_MASK
            self._lastgids.append(limit)

        self._firstgid_array = np.array(self._firstgids, dtype=np.int64)
        self._lastgid_array = np.array(self._lastgids, dtype=np.int64)

    def find_index(self, gid: int) -> Optional[int]:
        """Index of the owning tileset for an unflagged gid, or None."""
        if gid <= 0:
            return None
        index = bisect.bisect_right(self._firstgids, gid) - 1
        if index < 0 or gid > self._lastgids[index]:
            return None
        return index

    def resolve(self, tile_id: int) -> Optional[ResolvedGid]:
        """Resolve a raw tile ID (flags allowed); None if empty or unclaimed."""
        gid, flags = split_flags(tile_id)
        index = self.find_index(gid)
        if index is None:
            return None
        tileset = self.tilesets[index]
        local_id = gid - tileset.firstgid
        atlas_x, atlas_y = tileset.atlas_position(local_id)
        return ResolvedGid(gid, tileset, local_id, atlas_x, atlas_y, flags)

    def lookup_array(self, tile_ids: np.ndarray) -> np.ndarray:
        """Tileset index per cell of a whole layer/chunk; -1 for empty or unclaimed."""
        gids = strip_flags(tile_ids).astype(np.int64)
        if not self.tilesets:
            return np.full(gids.shape, -1, dtype=np.int64)

        indices = np.searchsorted(self._firstgid_array, gids, side='right') - 1
        safe = np.clip(indices, 0, None)
        valid = (gids > 0) & (indices >= 0) & (gids <= self._lastgid_array[safe])
        return np.where(valid, indices, -1)


# =============================================================================
# CONTEXT
# =============================================================================

class DiagnosticsCollector:
    """Per-call accumulator for non-fatal findings."""

    def __init__(self):
        self.unresolved: List[UnresolvedGid] = []
        self.unmapped_types = set()
        self.warnings: List[str] = []

    def unresolved_gid(self, layer: str, gid: int, location: str):
        self.unresolved.append(UnresolvedGid(layer, gid, location))

    def warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    def freeze(self) -> ConversionDiagnostics:
        return ConversionDiagnostics(
            unresolved_gids=tuple(self.unresolved),
            unmapped_types=tuple(sorted(self.unmapped_types)),
            warnings=tuple(self.warnings),
        )


@dataclass(frozen=True)
class ConversionContext:
    """Everything one conversion call needs, threaded through every helper."""
    config: ConversionConfig
    tiled_map: TiledMap
    resolver: GidResolver
    pixel_bottom: float                  # Mirror axis for flip_y
    extent: TileBounds                   # Tile area covered by the collision grid
    diagnostics: DiagnosticsCollector = field(default_factory=DiagnosticsCollector,
                                              compare=False)

    @property
    def is_isometric(self) -> bool:
        return self.config.is_isometric


@dataclass(frozen=True)
class _LayerState:
    """Values a layer inherits from its parent groups."""
    offset: PixelPos = PIXEL_ORIGIN
    opacity: float = 1.0
    parallax: Tuple[float, float] = (1.0, 1.0)
    visible: bool = True

    def enter(self, layer: Layer) -> '_LayerState':
        return _LayerState(
            offset=self.offset + layer.offset,
            opacity=self.opacity * layer.opacity,
            parallax=(self.parallax[0] * layer.parallaxx, self.parallax[1] * layer.parallaxy),
            visible=self.visible and layer.visible,
        )


def map_extent(tiled_map: TiledMap) -> TileBounds:
    """Tile area of the map: bounds of all chunks, or 0..width-1 x 0..height-1."""
    if tiled_map.infinite and tiled_map.tile_bounds is not None:
        return tiled_map.tile_bounds
    return TileBounds(0, 0, max(tiled_map.width, 1) - 1, max(tiled_map.height, 1) - 1)


def map_pixel_bottom(tiled_map: TiledMap, tile_height: int) -> float:
    if tiled_map.infinite and tiled_map.tile_bounds is not None:
        return float((tiled_map.tile_bounds.max_y + 1) * tile_height)
    return float(tiled_map.height * tile_height)


def build_context(tiled_map: TiledMap, config: ConversionConfig) -> ConversionContext:
    return ConversionContext(
        config=config,
        tiled_map=tiled_map,
        resolver=GidResolver(tiled_map.tilesets),
        pixel_bottom=map_pixel_bottom(tiled_map, config.tile_height),
        extent=map_extent(tiled_map),
    )


# =============================================================================
# HELPERS
# =============================================================================

def classify_layer(name: str, config: ConversionConfig) -> LayerCategory:
    """
    Category of a layer by case-insensitive substring match on its name.

    Collision patterns are checked first, then sector patterns.
    """
    lowered = name.lower()
    if any(pattern and pattern.lower() in lowered
           for pattern in config.collision_layer_patterns):
        return LayerCategory.COLLISION
    if any(pattern and pattern.lower() in lowered
           for pattern in config.sector_layer_patterns):
        return LayerCategory.SECTOR
    return LayerCategory.ENTITY


def render_order_indices(width: int, height: int, render_order: str) -> np.ndarray:
    """
    Flat cell indices in render-order iteration.

    right-down: rows top to bottom, each row left to right
    right-up:   rows bottom to top, left to right
    left-down:  rows top to bottom, right to left
    left-up:    rows bottom to top, right to left
    """
    grid = np.arange(width * height, dtype=np.int64).reshape(height, width)
    if render_order.startswith('left'):
        grid = grid[:, ::-1]
    if render_order.endswith('up'):
        grid = grid[::-1, :]
    return grid.ravel()


def parse_color(color: Optional[str]) -> Optional[int]:
    """
    "#AARRGGBB" or "#RRGGBB" (hash optional) → 0xAARRGGBB.

    Missing alpha means opaque. Returns None for an empty value and
    raises ValueError for anything else that is not a color.
    """
    if not color:
        return None
    digits = color.lstrip('#')
    if len(digits) == 6:
        digits = 'ff' + digits
    if len(digits) != 8:
        raise ValueError(f"invalid color '{color}'")
    return int(digits, 16)


def transform_object_position(obj: TiledObject, layer_offset: PixelPos,
                              context: ConversionContext, layer_name: str = "") -> PixelPos:
    """Final pixel position of an object."""
    position = obj.position + layer_offset

    if strip_flags(obj.gid):
        resolved = context.resolver.resolve(obj.gid)
        if resolved is None:
            gid = strip_flags(obj.gid)
            context.diagnostics.unresolved_gid(layer_name, gid, f"object {obj.id}")
            logger.warning("Object %d in layer '%s': gid %d has no tileset, "
                           "tileset offset defaults to (0, 0)", obj.id, layer_name, gid)
        else:
            position = position + resolved.offset

    if context.is_isometric:
        return position
    if context.config.flip_y:
        position = position.mirrored_y(context.pixel_bottom)
    return position


def transform_points(obj: TiledObject,
                     context: ConversionContext) -> Optional[Tuple[PixelPos, ...]]:
    """Relative points; orthogonal flip_y negates y like the anchor mirror."""
    if obj.points is None:
        return None
    if context.is_isometric or not context.config.flip_y:
        return tuple(obj.points)
    return tuple(PixelPos(point.x, -point.y) for point in obj.points)


# =============================================================================
# CONVERTER
# =============================================================================

class LevelConverter:
    """
    Converts loaded maps into LevelDefinition values.

    Usage:
        converter = LevelConverter()
        level = converter.convert(tiled_map)
        level = converter.convert(tiled_map, ConversionConfig(flip_y=False))
    """

    def convert(self, tiled_map: TiledMap,
                config: Optional[ConversionConfig] = None) -> LevelDefinition:
        if config is None:
            config = ConversionConfig.from_map(tiled_map)
        context = build_context(tiled_map, config)

        logger.info("Converting map %s (%s, %dx%d)", tiled_map.source or "<memory>",
                    config.map_orientation, tiled_map.width, tiled_map.height)

        tile_layers: List[TileLayerPlacement] = []
        entities: List[EntityPlacement] = []
        parallax_layers: List[ParallaxLayer] = []
        collision = CollisionGrid(context.extent)

        z_order = 0
        for layer, state in self._walk(tiled_map.layers, _LayerState(), context):
            if isinstance(layer, TileLayer):
                placement = self._convert_tile_layer(layer, state, z_order, context)
                tile_layers.append(placement)
                self._mark_collision(layer, placement, collision, context)
                z_order += 1
            elif isinstance(layer, ImageLayer):
                parallax_layers.append(self._convert_image_layer(layer, state, z_order, context))
                z_order += 1
            elif isinstance(layer, ObjectGroup):
                converted = self._convert_object_group(layer, state, context)
                entities.extend(converted)
                self._mark_collision_objects(layer, state, collision, context)

        unresolved_tiles = sum(1 for u in context.diagnostics.unresolved
                               if u.location.startswith('tile'))
        if unresolved_tiles:
            logger.warning("%d tiles reference gids no tileset claims; treated as empty",
                           unresolved_tiles)

        level = LevelDefinition(
            metadata=MapMetadata(
                orientation=config.map_orientation,
                render_order=config.render_order,
                width=tiled_map.width,
                height=tiled_map.height,
                tile_width=config.tile_width,
                tile_height=config.tile_height,
                infinite=tiled_map.infinite,
                tile_bounds=tiled_map.tile_bounds,
                pixel_bottom=context.pixel_bottom,
                background_color=tiled_map.backgroundcolor,
                properties=frozen_mapping(property_values(tiled_map.properties)),
            ),
            tile_layers=tuple(tile_layers),
            entities=tuple(entities),
            parallax_layers=tuple(parallax_layers),
            collision=collision.freeze(),
            diagnostics=context.diagnostics.freeze(),
        )
        logger.info("Conversion complete: %d tile layers (%d tiles), %d entities, "
                    "%d parallax layers, %d solid cells, %d unresolved gids",
                    len(level.tile_layers), level.tile_count, len(level.entities),
                    len(level.parallax_layers), collision.solid_count,
                    level.unresolved_gid_count)
        return level

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    def _walk(self, layers: List[Layer], parent: _LayerState,
              context: ConversionContext) -> Iterator[Tuple[Layer, _LayerState]]:
        """Depth-first over non-group layers with their inherited state."""
        for layer in layers:
            state = parent.enter(layer)
            if not state.visible and not context.config.include_hidden_layers:
                logger.debug("Skipping hidden layer '%s'", layer.name)
                continue
            if isinstance(layer, LayerGroup):
                yield from self._walk(layer.layers, state, context)
            else:
                yield layer, state

    # =========================================================================
    # TILE LAYERS
    # =========================================================================

    def _place_tiles(self, tile_ids: np.ndarray, width: int, height: int,
                     origin: TileCoord, layer_name: str,
                     context: ConversionContext) -> List[TilePlacement]:
        """Placements of one flat grid (finite layer or chunk), in render order."""
        order = render_order_indices(width, height, context.config.render_order)
        order = order[strip_flags(tile_ids[order]) != 0]
        owners = context.resolver.lookup_array(tile_ids)
        tilesets = context.resolver.tilesets

        placements = []
        for index in order:
            col, row = int(index) % width, int(index) // width
            world = origin + TileCoord(col, row)
            gid, flags = split_flags(tile_ids[index])
            owner = int(owners[index])
            if owner < 0:
                context.diagnostics.unresolved_gid(layer_name, gid,
                                                   f"tile ({world.x}, {world.y})")
                continue

            tileset = tilesets[owner]
            local_id = gid - tileset.firstgid
            placements.append(TilePlacement(
                tile=world,
                gid=gid,
                local_id=local_id,
                firstgid=tileset.firstgid,
                tileset=tileset.name,
                atlas=tileset.atlas_position(local_id),
                offset=tileset.tile_offset,
                flags=flags,
            ))
        return placements

    def _convert_tile_layer(self, layer: TileLayer, state: _LayerState, z_order: int,
                            context: ConversionContext) -> TileLayerPlacement:
        tiles: List[TilePlacement] = []
        if layer.is_chunked:
            # Chunk origins are already global tile space
            for chunk in layer.chunks:
                tiles.extend(self._place_tiles(chunk.data, chunk.width, chunk.height,
                                               chunk.origin, layer.name, context))
        else:
            tiles = self._place_tiles(layer.data, layer.width, layer.height,
                                      TileCoord(0, 0), layer.name, context)

        category = classify_layer(layer.name, context.config)
        logger.debug("Tile layer '%s' (%s): %d tiles, zOrder %d",
                     layer.name, category.value, len(tiles), z_order)
        return TileLayerPlacement(
            name=layer.name,
            layer_id=layer.id,
            z_order=z_order,
            level=layer.get_level(),
            category=category,
            offset=state.offset,
            opacity=state.opacity,
            parallax=state.parallax,
            visible=state.visible,
            tiles=tuple(tiles),
        )

    @staticmethod
    def _mark_collision(layer: TileLayer, placement: TileLayerPlacement,
                        grid: CollisionGrid, context: ConversionContext):
        """Collision layers block on every tile; other layers on solid tiles."""
        if placement.category == LayerCategory.COLLISION:
            grid.mark_solid(tile.tile for tile in placement.tiles)
            return

        tilesets = {tileset.firstgid: tileset for tileset in context.resolver.tilesets}
        for tile in placement.tiles:
            meta = tilesets[tile.firstgid].get_tile(tile.local_id)
            if meta is None:
                continue
            solid = meta.get_property('solid', False)
            # Untyped properties arrive as the strings "true"/"false"
            if solid is True or str(solid).lower() == 'true':
                grid.set_flags(tile.tile, 1)

    # =========================================================================
    # IMAGE LAYERS
    # =========================================================================

    def _convert_image_layer(self, layer: ImageLayer, state: _LayerState, z_order: int,
                             context: ConversionContext) -> ParallaxLayer:
        image_path = layer.image
        base = context.config.resource_base_path
        if image_path and base:
            image_path = base.rstrip('/') + '/' + image_path

        try:
            tint = parse_color(layer.tintcolor)
        except ValueError:
            context.diagnostics.warn(
                f"Image layer '{layer.name}': ignoring invalid tint '{layer.tintcolor}'")
            tint = None

        logger.debug("Image layer '%s' → parallax (%.2f, %.2f), zOrder %d",
                     layer.name, state.parallax[0], state.parallax[1], z_order)
        return ParallaxLayer(
            name=layer.name,
            image_path=image_path,
            scroll_factor_x=state.parallax[0],
            scroll_factor_y=state.parallax[1],
            offset=state.offset,
            opacity=state.opacity,
            repeat_x=layer.repeatx,
            repeat_y=layer.repeaty,
            visible=state.visible,
            z_order=z_order,
            tint=tint,
        )

    # =========================================================================
    # OBJECTS
    # =========================================================================

    def _convert_object_group(self, layer: ObjectGroup, state: _LayerState,
                              context: ConversionContext) -> List[EntityPlacement]:
        category = classify_layer(layer.name, context.config)
        logger.debug("Object layer '%s' (%s): %d objects",
                     layer.name, category.value, len(layer.objects))
        return [self._convert_object(obj, layer.name, state.offset, category, context)
                for obj in layer.objects]

    def _convert_object(self, obj: TiledObject, layer_name: str, layer_offset: PixelPos,
                        category: LayerCategory,
                        context: ConversionContext) -> EntityPlacement:
        config = context.config

        if obj.shape == ObjectShape.POLYLINE:
            entity_id, default_name = f"patrol_{obj.id}", f"Patrol {obj.id}"
            fallback = PATROL_PLACEHOLDER
        elif obj.shape == ObjectShape.POLYGON or category == LayerCategory.SECTOR:
            entity_id, default_name = f"sector_{obj.id}", f"Sector {obj.id}"
            fallback = SECTOR_PLACEHOLDER
        else:
            entity_id, default_name = f"entity_{obj.id}", f"Object {obj.id}"
            fallback = None

        if fallback is not None and obj.type not in config.type_to_placeholder:
            placeholder, mapped = fallback, True
        else:
            placeholder, mapped = config.placeholder_for(obj.type)
            if not mapped:
                context.diagnostics.unmapped_types.add(obj.type)

        return EntityPlacement(
            id=entity_id,
            object_id=obj.id,
            name=obj.name or default_name,
            type=obj.type,
            placeholder=placeholder,
            placeholder_mapped=mapped,
            position=transform_object_position(obj, layer_offset, context, layer_name),
            width=obj.width,
            height=obj.height,
            rotation=obj.rotation,
            shape=obj.shape,
            category=category,
            layer=layer_name,
            gid=strip_flags(obj.gid),
            visible=obj.visible,
            properties=frozen_mapping(property_values(obj.properties)),
            points=transform_points(obj, context),
            text=obj.text,
        )

    @staticmethod
    def _mark_collision_objects(layer: ObjectGroup, state: _LayerState,
                                grid: CollisionGrid, context: ConversionContext):
        """
        Rectangles in collision layers block the tiles they cover.

        Uses unmirrored top-down pixels (raw + layer offset), which map
        directly onto tile rows. Isometric maps are skipped: their object
        pixels are not a tile grid.
        """
        if context.is_isometric:
            return
        if classify_layer(layer.name, context.config) != LayerCategory.COLLISION:
            return

        tile_w, tile_h = context.config.tile_width, context.config.tile_height
        for obj in layer.objects:
            if obj.shape != ObjectShape.RECTANGLE or obj.width <= 0 or obj.height <= 0:
                continue
            left = obj.x + state.offset.x
            top = obj.y + state.offset.y
            first = TileCoord(int(np.floor(left / tile_w)), int(np.floor(top / tile_h)))
            last = TileCoord(int(np.ceil((left + obj.width) / tile_w)) - 1,
                             int(np.ceil((top + obj.height) / tile_h)) - 1)
            grid.mark_rect(first, last)


_default_converter = LevelConverter()


def convert(tiled_map: TiledMap, config: Optional[ConversionConfig] = None) -> LevelDefinition:
    """Convert a loaded map with a shared LevelConverter."""
    return _default_converter.convert(tiled_map, config)
