"""
Map loading: file → validated TiledMap

=============================================================================
FORMATS
=============================================================================

The format is chosen by extension:

    .tmx          → XML map
    anything else → JSON map (.tmj, .json)

External tilesets are resolved relative to the map file and go through a
TilesetCache (the module default unless one is injected).

=============================================================================
VALIDATION
=============================================================================

Required JSON fields: width, height, tilewidth, tileheight, orientation,
renderorder, infinite, layers, tilesets.

    MapIOError      map or tileset file missing/unreadable
    MapParseError   malformed document, missing/mistyped field
    MapSchemaError  tile size <= 0, finite map size <= 0, unknown
                    orientation/render order/layer type, tilesets out of
                    order or overlapping
    DataSizeError   decoded tile count != declared layer/chunk size
    DecodeError     payload could not be decoded (annotated with the
                    layer or chunk it belongs to)

Nothing is returned unless the whole map loaded.

=============================================================================
"""

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional, Union

import orjson

from .coords import TileBounds
from .errors import MapIOError, MapParseError, MapSchemaError
from .structures import (
    ORIENTATIONS,
    RENDER_ORDERS,
    ObjectGroup,
    TiledMap,
    Tileset,
    get_field,
    iter_layers,
    parse_layers_json,
    parse_layers_xml,
    parse_properties_json,
    parse_properties_xml,
    require_list,
    require_object,
)
from .tilesets import TilesetCache, parse_embedded, resolve_reference

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('width', 'height', 'tilewidth', 'tileheight', 'orientation',
                   'renderorder', 'infinite', 'layers', 'tilesets')

UNSUPPORTED_ORIENTATIONS = ('staggered', 'hexagonal')


def compute_tile_bounds(tiled_map: TiledMap) -> Optional[TileBounds]:
    """Union of every chunk of every tile layer, groups included."""
    bounds = None
    for layer in tiled_map.iter_tile_layers():
        layer_bounds = layer.chunk_bounds()
        if layer_bounds is not None:
            bounds = layer_bounds if bounds is None else bounds.union(layer_bounds)
    return bounds


class MapLoader:
    """
    Loads map files into TiledMap objects.

    Holds nothing but the tileset cache, so one loader can serve any
    number of loads.
    """

    def __init__(self, cache: Optional[TilesetCache] = None):
        self.cache = cache if cache is not None else TilesetCache()

    def load(self, path: Union[str, Path]) -> TiledMap:
        path = Path(path)
        logger.info("Loading map %s", path)

        try:
            raw = path.read_bytes()
        except OSError as e:
            raise MapIOError(path, e.strerror or str(e)) from e

        try:
            if path.suffix.lower() == '.tmx':
                tiled_map = self._parse_xml(raw, path)
            else:
                tiled_map = self._parse_json(raw, path)
            self._validate_tilesets(tiled_map.tilesets)
        except MapParseError as e:
            raise e.with_source(str(path))

        tiled_map.source = str(path)
        if tiled_map.infinite:
            tiled_map.tile_bounds = compute_tile_bounds(tiled_map)
            logger.debug("Infinite map bounds: %s", tiled_map.tile_bounds)

        self._warn_unsupported(tiled_map)

        logger.info("Loaded map %s: %dx%d %s%s, %d layers, %d tilesets",
                    path.name, tiled_map.width, tiled_map.height, tiled_map.orientation,
                    " (infinite)" if tiled_map.infinite else "",
                    len(tiled_map.get_all_layers_flat()), len(tiled_map.tilesets))
        return tiled_map

    # =========================================================================
    # JSON
    # =========================================================================

    def _parse_json(self, raw: bytes, path: Path) -> TiledMap:
        try:
            root = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise MapParseError(f"malformed JSON: {e}") from e
        if not isinstance(root, dict):
            raise MapParseError("root is not an object", field="map")

        for key in REQUIRED_FIELDS:
            if key not in root:
                raise MapParseError(f"missing required field '{key}'", field=key)

        tiled_map = TiledMap(
            version=str(root.get('version', '')),
            tiledversion=str(root.get('tiledversion', '')),
            orientation=get_field(root, 'orientation', str),
            renderorder=get_field(root, 'renderorder', str),
            width=get_field(root, 'width', int),
            height=get_field(root, 'height', int),
            tilewidth=get_field(root, 'tilewidth', int),
            tileheight=get_field(root, 'tileheight', int),
            infinite=get_field(root, 'infinite', bool),
            backgroundcolor=root.get('backgroundcolor'),
            nextlayerid=get_field(root, 'nextlayerid', int, 0),
            nextobjectid=get_field(root, 'nextobjectid', int, 0),
            properties=parse_properties_json(root),
        )
        self._validate_header(tiled_map)

        for index, node in enumerate(require_list(root, 'tilesets')):
            where = f"tilesets[{index}]"
            node = require_object(node, where)
            firstgid = get_field(node, 'firstgid', int, where=where)
            if 'source' in node:
                source = get_field(node, 'source', str, where=where)
                tiled_map.tilesets.append(
                    resolve_reference(firstgid, source, path.parent, self.cache))
            else:
                tiled_map.tilesets.append(parse_embedded(node, firstgid, path.parent, where))

        tiled_map.layers = parse_layers_json(require_list(root, 'layers'), 'layers',
                                             tiled_map.infinite)
        return tiled_map

    # =========================================================================
    # XML
    # =========================================================================

    def _parse_xml(self, raw: bytes, path: Path) -> TiledMap:
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as e:
            raise MapParseError(f"malformed XML: {e}") from e
        if root.tag != 'map':
            raise MapParseError(f"root element is <{root.tag}>, expected <map>", field="map")

        tiled_map = TiledMap(
            version=root.get('version', ''),
            tiledversion=root.get('tiledversion', ''),
            orientation=get_field(root, 'orientation', str),
            renderorder=root.get('renderorder', 'right-down'),
            width=get_field(root, 'width', int),
            height=get_field(root, 'height', int),
            tilewidth=get_field(root, 'tilewidth', int),
            tileheight=get_field(root, 'tileheight', int),
            infinite=get_field(root, 'infinite', bool, False),
            backgroundcolor=root.get('backgroundcolor'),
            nextlayerid=get_field(root, 'nextlayerid', int, 0),
            nextobjectid=get_field(root, 'nextobjectid', int, 0),
            properties=parse_properties_xml(root),
        )
        self._validate_header(tiled_map)

        for index, tileset_elem in enumerate(root.findall('tileset')):
            where = f"tilesets[{index}]"
            firstgid = get_field(tileset_elem, 'firstgid', int, where=where)
            source = tileset_elem.get('source')
            if source:
                # The map only contains a reference; data is in the TSX
                tiled_map.tilesets.append(
                    resolve_reference(firstgid, source, path.parent, self.cache))
            else:
                tiled_map.tilesets.append(
                    parse_embedded(tileset_elem, firstgid, path.parent, where))

        tiled_map.layers = parse_layers_xml(root, 'layers', tiled_map.infinite)
        return tiled_map

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def _validate_header(tiled_map: TiledMap):
        for key in ('tilewidth', 'tileheight'):
            value = getattr(tiled_map, key)
            if value <= 0:
                raise MapSchemaError(f"must be positive, got {value}", field=key)

        if not tiled_map.infinite:
            for key in ('width', 'height'):
                value = getattr(tiled_map, key)
                if value <= 0:
                    raise MapSchemaError(f"must be positive for a finite map, got {value}",
                                         field=key)

        if tiled_map.orientation not in ORIENTATIONS:
            raise MapSchemaError(f"unknown orientation '{tiled_map.orientation}'",
                                 field='orientation')
        if tiled_map.renderorder not in RENDER_ORDERS:
            raise MapSchemaError(f"unknown render order '{tiled_map.renderorder}'",
                                 field='renderorder')

    @staticmethod
    def _validate_tilesets(tilesets: List[Tileset]):
        """firstgid >= 1, strictly increasing, known ranges must not overlap."""
        previous = None
        for index, tileset in enumerate(tilesets):
            where = f"tilesets[{index}].firstgid"
            if tileset.firstgid < 1:
                raise MapSchemaError(f"must be >= 1, got {tileset.firstgid}", field=where)
            if previous is not None:
                if tileset.firstgid <= previous.firstgid:
                    raise MapSchemaError(
                        f"{tileset.firstgid} does not follow {previous.firstgid}", field=where)
                if previous.lastgid is not None and previous.lastgid >= tileset.firstgid:
                    raise MapSchemaError(
                        f"tileset '{tileset.name}' starts at {tileset.firstgid} inside "
                        f"'{previous.name}' ({previous.firstgid}-{previous.lastgid})",
                        field=where)
            previous = tileset

    @staticmethod
    def _warn_unsupported(tiled_map: TiledMap):
        if tiled_map.orientation in UNSUPPORTED_ORIENTATIONS:
            logger.warning("%s orientation is not supported; tiles and objects are "
                           "placed with orthogonal rules", tiled_map.orientation)

        for layer in iter_layers(tiled_map.layers):
            if not isinstance(layer, ObjectGroup):
                continue
            for obj in layer.objects:
                if obj.template:
                    logger.warning("Object %d in layer '%s' references template %s; "
                                   "using its inline fields only",
                                   obj.id, layer.name, obj.template)


def load_from_file(path: Union[str, Path], cache: Optional[TilesetCache] = None) -> TiledMap:
    """
    Load a map file.

    Parameters:
    -----------
    path : str or Path
        .tmx for XML maps, anything else is read as JSON
    cache : TilesetCache, optional
        Cache for external tilesets. Without one the load gets a private
        cache; pass the same cache to several loads to share tilesets.

    Returns:
    --------
    TiledMap : Fully loaded and validated map
    """
    return MapLoader(cache).load(path)
