"""
Level analysis: what a map needs before anything is instantiated

=============================================================================
OVERVIEW
=============================================================================

analyze() walks a loaded TiledMap once and reports three things an engine
wants to know up front, for preloading and prefab discovery:

    LevelManifest
    ├── visual        VisualManifest
    │     tileset images, collection tile images, image layer images,
    │     and the deduplicated set of all of them
    ├── census        ObjectCensus
    │     objects per type, unique types, template references
    └── references    ObjectReference per object-to-object link
          "object" typed properties, and the link properties
          targetObject / patrolPath / linkedObject (id or name)

Nothing here converts coordinates or touches tile data.

=============================================================================
IMAGE PATHS
=============================================================================

Every image path is made relative to the map's directory. Images of an
external tileset are written relative to the tileset file, so they are
joined with the tileset's own directory first:

    map:     levels/forest.tmj
    tileset: ../tilesets/terrain.tsx       image: terrain.png
    result:  ../tilesets/terrain.png

=============================================================================
"""

import logging
import posixpath
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .level import frozen_mapping
from .loader import load_from_file
from .structures import ImageLayer, ObjectGroup, TiledMap, TiledObject, Tileset, iter_layers
from .tilesets import TilesetCache

logger = logging.getLogger(__name__)

UNTYPED = "undefined"

# Properties treated as links even when typed as plain int/string
LINK_PROPERTIES = ('targetObject', 'patrolPath', 'linkedObject')


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class TilesetResources:
    """Images one tileset needs."""
    firstgid: int
    name: str
    source: Optional[str]                # External file, None when embedded
    image: Optional[str]                 # Spritesheet, map-relative
    tile_images: Tuple[str, ...] = ()    # Collection tilesets: one image per tile

    @property
    def is_collection(self) -> bool:
        return self.image is None and bool(self.tile_images)


@dataclass(frozen=True)
class VisualManifest:
    tilesets: Tuple[TilesetResources, ...] = ()
    parallax_images: Tuple[str, ...] = ()      # Image layers, document order
    image_paths: Tuple[str, ...] = ()          # Every image once, sorted

    @property
    def image_count(self) -> int:
        return len(self.image_paths)


@dataclass(frozen=True)
class ObjectCensus:
    type_counts: Mapping[str, int] = field(default_factory=frozen_mapping)
    templates: Mapping[int, str] = field(default_factory=frozen_mapping)  # object id → template

    @property
    def total(self) -> int:
        return sum(self.type_counts.values())

    @property
    def unique_types(self) -> Tuple[str, ...]:
        return tuple(sorted(self.type_counts))

    def has_type(self, type_name: str) -> bool:
        return type_name in self.type_counts

    @property
    def template_paths(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self.templates.values())))


@dataclass(frozen=True)
class ObjectReference:
    """
    One object pointing at another through a property.

    The target is given by id ("object" properties, int link values) or
    by name (string link values). `target_id` is filled in either way when
    the target exists; `resolved` is False for a dangling link.
    """
    source_id: int
    source_name: str
    property_name: str
    target_id: Optional[int]
    target_name: str = ""
    resolved: bool = False


@dataclass(frozen=True)
class LevelManifest:
    source: Optional[str]
    orientation: str
    width: int
    height: int
    tile_width: int
    tile_height: int
    infinite: bool
    visual: VisualManifest
    census: ObjectCensus
    references: Tuple[ObjectReference, ...]
    warnings: Tuple[str, ...] = ()

    @property
    def pixel_size(self) -> Tuple[int, int]:
        return self.width * self.tile_width, self.height * self.tile_height

    @property
    def dangling_references(self) -> Tuple[ObjectReference, ...]:
        return tuple(ref for ref in self.references if not ref.resolved)


# =============================================================================
# VISUAL RESOURCES
# =============================================================================

def _map_relative(path: str, tileset: Tileset) -> str:
    if tileset.source:
        path = posixpath.join(posixpath.dirname(tileset.source), path)
    return posixpath.normpath(path)


def tileset_resources(tileset: Tileset) -> TilesetResources:
    image = _map_relative(tileset.image.source, tileset) if tileset.image else None
    tile_images = tuple(
        _map_relative(tile.image.source, tileset)
        for _, tile in sorted(tileset.tiles.items())
        if tile.image is not None and tile.image.source
    )
    return TilesetResources(tileset.firstgid, tileset.name, tileset.source, image, tile_images)


def extract_visual_resources(tiled_map: TiledMap) -> VisualManifest:
    tilesets = tuple(tileset_resources(tileset) for tileset in tiled_map.tilesets)
    parallax = tuple(layer.image for layer in iter_layers(tiled_map.layers)
                     if isinstance(layer, ImageLayer) and layer.image)

    paths = set(parallax)
    for resources in tilesets:
        if resources.image:
            paths.add(resources.image)
        paths.update(resources.tile_images)

    return VisualManifest(tilesets, parallax, tuple(sorted(paths)))


# =============================================================================
# OBJECTS
# =============================================================================

def _iter_objects(tiled_map: TiledMap):
    for layer in iter_layers(tiled_map.layers):
        if isinstance(layer, ObjectGroup):
            yield from layer.objects


def _template_of(obj: TiledObject) -> Optional[str]:
    """Tiled's own template attribute, else a string "template" property."""
    if obj.template:
        return obj.template
    prop = obj.properties.get('template')
    if prop is not None and prop.type == 'string' and prop.value:
        return prop.value
    return None


def build_object_census(tiled_map: TiledMap) -> ObjectCensus:
    counts = Counter()
    templates = {}
    for obj in _iter_objects(tiled_map):
        counts[obj.type or UNTYPED] += 1
        template = _template_of(obj)
        if template:
            templates[obj.id] = template
    return ObjectCensus(frozen_mapping(dict(sorted(counts.items()))), frozen_mapping(templates))


def extract_object_references(tiled_map: TiledMap) -> List[ObjectReference]:
    objects = list(_iter_objects(tiled_map))
    by_id = {obj.id: obj for obj in objects}
    by_name: Dict[str, TiledObject] = {}
    for obj in objects:
        if obj.name:
            by_name.setdefault(obj.name, obj)

    references = []
    for obj in objects:
        for name, prop in obj.properties.items():
            if prop.type == 'object' or (name in LINK_PROPERTIES and prop.type == 'int'):
                if not prop.value:
                    continue  # 0 = unset object property
                target = by_id.get(prop.value)
                references.append(ObjectReference(
                    obj.id, obj.name, name, prop.value,
                    target.name if target else "", target is not None))
            elif name in LINK_PROPERTIES and prop.type == 'string' and prop.value:
                target = by_name.get(prop.value)
                references.append(ObjectReference(
                    obj.id, obj.name, name, target.id if target else None,
                    prop.value, target is not None))
    return references


# =============================================================================
# ENTRY POINTS
# =============================================================================

def analyze(tiled_map: TiledMap) -> LevelManifest:
    """Build the LevelManifest of a loaded map."""
    visual = extract_visual_resources(tiled_map)
    census = build_object_census(tiled_map)
    references = tuple(extract_object_references(tiled_map))

    warnings = []
    for ref in references:
        if not ref.resolved:
            target = ref.target_name or ref.target_id
            warnings.append(f"Object {ref.source_id} property '{ref.property_name}' "
                            f"points at missing object {target!r}")
    for message in warnings:
        logger.warning(message)

    logger.info("Analyzed %s: %d tilesets, %d images, %d objects of %d types, "
                "%d references", tiled_map.source or "<memory>", len(visual.tilesets),
                visual.image_count, census.total, len(census.type_counts), len(references))

    return LevelManifest(
        source=tiled_map.source,
        orientation=tiled_map.orientation,
        width=tiled_map.width,
        height=tiled_map.height,
        tile_width=tiled_map.tilewidth,
        tile_height=tiled_map.tileheight,
        infinite=tiled_map.infinite,
        visual=visual,
        census=census,
        references=references,
        warnings=tuple(warnings),
    )


def analyze_file(path: Union[str, Path], cache: Optional[TilesetCache] = None) -> LevelManifest:
    """Load a map file and analyze it; load errors propagate as TiledError."""
    return analyze(load_from_file(path, cache=cache))
