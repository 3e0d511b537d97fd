"""
In-memory model of a Tiled map

=============================================================================
WHAT IS IN A MAP?
=============================================================================

A Tiled map (JSON .tmj or XML .tmx) describes:

- Map dimensions and tile sizes
- Tilesets (collections of tile graphics, see tmj_loader.tilesets)
- Layers (tile layers, object layers, image layers, groups)
- Custom properties (metadata on any element)

The same dataclasses are filled from either format; every class that has
a document representation provides from_json() and from_xml().

    {                                       <map width="100" height="100"
      "width": 100, "height": 100,               tilewidth="32" ...>
      "tilewidth": 32, ...                    <layer name="Ground" ...>
      "layers": [                               <data encoding="csv">
        {"type": "tilelayer",                     1,2,3,...
         "name": "Ground",                      </data>
         "data": [1, 2, 3, ...]}              </layer>
      ]                                     </map>
    }

=============================================================================
GLOBAL TILE IDs (GIDs)
=============================================================================

Tiles are referenced by Global IDs (GIDs) across all tilesets:

    Tileset A (firstgid=1):   tiles 1-100
    Tileset B (firstgid=101): tiles 101-200

    GID 0 = empty tile (no graphic)
    GID 150 = tile 49 of tileset B

Local tile ID within tileset = GID - tileset.firstgid

=============================================================================
FIELD ERRORS
=============================================================================

Readers take a `where` argument ("layers[2]", "layers[2].objects[0]")
that is prefixed to field names in MapParseError, so a bad value points
at its location in the document.

=============================================================================
"""

import bisect
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from .coords import PixelPos, TileBounds, TileCoord
from .decoder import decode_tile_data, strip_flags
from .errors import DataSizeError, DecodeError, MapParseError, MapSchemaError

logger = logging.getLogger(__name__)

Node = Union[Dict[str, Any], ET.Element]

_MISSING = object()


# =============================================================================
# FIELD HELPERS
# =============================================================================
# dict.get() and Element.get() share a signature, so one helper reads both
# JSON members and XML attributes.

def field_path(where: str, key: str) -> str:
    return f"{where}.{key}" if where else key


def convert_value(value: Any, kind: type, field_name: str) -> Any:
    """Convert a raw document value, raising MapParseError on mismatch."""
    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        if isinstance(value, str) and value.strip().lower() in ('1', 'true', '0', 'false'):
            return value.strip().lower() in ('1', 'true')
        raise MapParseError(f"expected a boolean, got {value!r}", field=field_name)

    if kind is str:
        if isinstance(value, (dict, list)):
            raise MapParseError(f"expected a string, got {value!r}", field=field_name)
        return str(value)

    # Numbers: refuse booleans and containers that int()/float() would accept
    if isinstance(value, (bool, dict, list)):
        raise MapParseError(f"expected {kind.__name__}, got {value!r}", field=field_name)
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise MapParseError(f"expected {kind.__name__}, got {value!r}",
                            field=field_name) from e


def get_field(node: Node, key: str, kind: type, default: Any = _MISSING,
              where: str = "") -> Any:
    """
    Typed field lookup on a JSON object or XML element.

    Without a default the field is required and its absence raises
    MapParseError naming the field.
    """
    value = node.get(key)
    if value is None:
        if default is _MISSING:
            raise MapParseError(f"missing required field '{key}'",
                                field=field_path(where, key))
        return default
    return convert_value(value, kind, field_path(where, key))


def require_list(node: Dict[str, Any], key: str, where: str = "") -> list:
    value = node.get(key)
    if value is None:
        raise MapParseError(f"missing required field '{key}'", field=field_path(where, key))
    if not isinstance(value, list):
        raise MapParseError(f"expected a list, got {type(value).__name__}",
                            field=field_path(where, key))
    return value


def optional_list(node: Dict[str, Any], key: str, where: str = "") -> list:
    """Like require_list, but a missing or null member reads as empty."""
    return [] if node.get(key) is None else require_list(node, key, where)


def require_object(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MapParseError(f"expected an object, got {type(value).__name__}", field=where)
    return value


# =============================================================================
# PROPERTY CLASS
# =============================================================================

@dataclass
class Property:
    """
    Custom property attached to any map element.

    Tiled allows adding custom properties to maps, layers, tiles, objects,
    etc. Properties are key-value pairs with typed values.

    ==========================================================================
    SUPPORTED TYPES
    ==========================================================================

    - string: Text value (default)
    - int: Integer number
    - float: Decimal number
    - bool: True/False
    - color: Color in #AARRGGBB format (kept as string)
    - file: File path reference
    - object: Reference to another object by ID
    - class: Nested property bag (value is a dict)

    ==========================================================================
    USE CASES
    ==========================================================================

    On tiles:
        solid=true         → Tile is marked in the collision grid

    On objects:
        health=100         → Copied into the entity's property overrides

    On layers:
        Z=2                → Height level of the layer

    ==========================================================================
    """
    name: str                    # Property name (key)
    type: str = "string"         # Value type
    value: Any = None            # The actual value
    propertytype: str = ""       # Custom type name (class properties)

    @staticmethod
    def _typed(prop_type: str, value: Any, field_name: str) -> Any:
        if prop_type in ('int', 'object'):
            return convert_value(value, int, field_name)
        if prop_type == 'float':
            return convert_value(value, float, field_name)
        if prop_type == 'bool':
            return convert_value(value, bool, field_name)
        if prop_type == 'class':
            return value if isinstance(value, dict) else {}
        # string, file, color and unknown custom enums stay textual
        return "" if value is None else str(value)

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "") -> 'Property':
        """
        Parse property from a JSON object.

        JSON format:
            {"name": "solid", "type": "bool", "value": true}
            {"name": "stats", "type": "class", "propertytype": "Stats",
             "value": {"hp": 10}}
        """
        name = get_field(node, 'name', str, where=where)
        prop_type = get_field(node, 'type', str, 'string', where)
        value = cls._typed(prop_type, node.get('value'), field_path(where, name))
        return cls(name=name, type=prop_type, value=value,
                   propertytype=get_field(node, 'propertytype', str, '', where))

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "") -> 'Property':
        """
        Parse property from XML element.

        XML format:
            <property name="solid" type="bool" value="true"/>
            <property name="description">multi-line
            text</property>            (type defaults to string)
        """
        name = get_field(elem, 'name', str, where=where)
        prop_type = elem.get('type', 'string')

        if prop_type == 'class':
            value = parse_properties_xml(elem, field_path(where, name))
            value = {prop.name: prop.value for prop in value.values()}
        else:
            raw = elem.get('value')
            if raw is None:
                raw = elem.text or ''
            value = cls._typed(prop_type, raw, field_path(where, name))

        return cls(name=name, type=prop_type, value=value,
                   propertytype=elem.get('propertytype', ''))


def parse_properties_json(node: Dict[str, Any], where: str = "") -> Dict[str, Property]:
    """Read the "properties" member of a JSON object, keyed by name."""
    raw = node.get('properties')
    properties: Dict[str, Property] = {}
    if raw is None:
        return properties

    if isinstance(raw, dict):
        # Pre-1.2 format: {"name": value, ...} with "propertytypes" alongside
        types = require_object(node.get('propertytypes') or {},
                               field_path(where, 'propertytypes'))
        for name, value in raw.items():
            prop_type = types.get(name, 'string')
            properties[name] = Property(
                name, prop_type,
                Property._typed(prop_type, value, field_path(where, f"properties.{name}")))
        return properties

    for index, item in enumerate(require_list(node, 'properties', where)):
        prop = Property.from_json(require_object(item, f"{where}.properties[{index}]"),
                                  field_path(where, f"properties[{index}]"))
        properties[prop.name] = prop
    return properties


def parse_properties_xml(elem: ET.Element, where: str = "") -> Dict[str, Property]:
    """Read the <properties> child of an element, keyed by name."""
    properties: Dict[str, Property] = {}
    props_elem = elem.find('properties')
    if props_elem is not None:
        for prop_elem in props_elem.findall('property'):
            prop = Property.from_xml(prop_elem, field_path(where, 'properties'))
            # Store by name for O(1) lookup
            properties[prop.name] = prop
    return properties


def property_values(properties: Dict[str, Property]) -> Dict[str, Any]:
    """Flatten a property dict to {name: value}."""
    return {name: prop.value for name, prop in properties.items()}


# =============================================================================
# IMAGE CLASS
# =============================================================================

@dataclass(frozen=True)
class Image:
    """
    Image reference used by tilesets, collection tiles and image layers.

    source: Path to image file (relative to the map/tileset file)
    width:  Image width in pixels (optional)
    height: Image height in pixels (optional)
    trans:  Transparent color in hex (e.g., "ff00ff")
    """
    source: str                          # Path to image file
    width: Optional[int] = None          # Image width (pixels)
    height: Optional[int] = None         # Image height (pixels)
    trans: Optional[str] = None          # Transparent color (#RRGGBB)

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "") -> Optional['Image']:
        """JSON flattens the image into its owner: image/imagewidth/imageheight."""
        source = node.get('image')
        if not source:
            return None
        return cls(
            source=convert_value(source, str, field_path(where, 'image')),
            width=get_field(node, 'imagewidth', int, None, where),
            height=get_field(node, 'imageheight', int, None, where),
            trans=node.get('transparentcolor'),
        )

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "") -> 'Image':
        return cls(
            source=elem.get('source', ''),
            # Width/height are optional - use None if not present
            width=get_field(elem, 'width', int, None, where),
            height=get_field(elem, 'height', int, None, where),
            trans=elem.get('trans'),
        )


# =============================================================================
# TILE CLASS
# =============================================================================

@dataclass(frozen=True)
class Tile:
    """
    Per-tile metadata within a tileset.

    Only tiles with custom properties, a type or (for image collections)
    their own image are listed. The 'id' is LOCAL to the tileset.
    """
    id: int                                          # Local tile ID (within tileset)
    type: str = ""                                   # Tile type/class
    properties: Dict[str, Property] = field(default_factory=dict)
    image: Optional[Image] = None                    # Image (for collection tilesets)

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "") -> 'Tile':
        return cls(
            id=get_field(node, 'id', int, where=where),
            type=node.get('type') or node.get('class') or '',
            properties=parse_properties_json(node, where),
            image=Image.from_json(node, where),
        )

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "") -> 'Tile':
        img_elem = elem.find('image')
        return cls(
            id=get_field(elem, 'id', int, where=where),
            type=elem.get('type') or elem.get('class') or '',
            properties=parse_properties_xml(elem, where),
            image=Image.from_xml(img_elem, where) if img_elem is not None else None,
        )

    def get_property(self, name: str, default: Any = None) -> Any:
        prop = self.properties.get(name)
        return prop.value if prop is not None else default


# =============================================================================
# TILESET CLASS
# =============================================================================

@dataclass(frozen=True)
class Tileset:
    """
    Tileset - a set of tile graphics claiming a contiguous GID range.

    Frozen: external definitions are shared between map loads through the
    tileset cache, and a map's reference is combined with a cached entry
    via dataclasses.replace().

    ==========================================================================
    SPACING AND MARGIN
    ==========================================================================

    margin = pixels around the EDGE of the entire image
    spacing = pixels BETWEEN tiles

    Atlas rectangle of local id N:
        col = N % columns,  row = N // columns
        x = margin + col * (tilewidth + spacing)
        y = margin + row * (tileheight + spacing)

    ==========================================================================
    TILE OFFSET
    ==========================================================================

    <tileoffset x="0" y="16"/> / "tileoffset": {"x": 0, "y": 16}
    Pixel offset applied when drawing tiles of this set, and when placing
    tile objects that reference it.

    ==========================================================================
    """
    firstgid: int                                    # First Global ID
    name: str                                        # Tileset name
    tilewidth: int                                   # Tile width in pixels
    tileheight: int                                  # Tile height in pixels
    tilecount: int = 0                               # Total number of tiles (0 = unknown)
    columns: int = 0                                 # Tiles per row (for spritesheet)
    spacing: int = 0                                 # Pixels between tiles
    margin: int = 0                                  # Pixels around edge
    image: Optional[Image] = None                    # Spritesheet image
    tileoffsetx: int = 0                             # Drawing offset X
    tileoffsety: int = 0                             # Drawing offset Y
    tiles: Dict[int, Tile] = field(default_factory=dict)  # Tile metadata
    properties: Dict[str, Property] = field(default_factory=dict)
    source: Optional[str] = None                     # External file reference

    @property
    def lastgid(self) -> Optional[int]:
        """Highest claimed GID, or None when the tile count is unknown."""
        if self.tilecount > 0:
            return self.firstgid + self.tilecount - 1
        return None

    @property
    def is_external(self) -> bool:
        return self.source is not None

    @property
    def tile_offset(self) -> PixelPos:
        return PixelPos(float(self.tileoffsetx), float(self.tileoffsety))

    def contains(self, gid: int) -> bool:
        """Whether this tileset's own range claims the (unflagged) gid."""
        if gid < self.firstgid:
            return False
        lastgid = self.lastgid
        return lastgid is None or gid <= lastgid

    def atlas_position(self, local_id: int) -> Tuple[int, int]:
        """(column, row) of a local id in the spritesheet grid."""
        if self.columns <= 0:
            return 0, 0
        return local_id % self.columns, local_id // self.columns

    def tile_rect(self, local_id: int) -> Optional[Tuple[int, int, int, int]]:
        """Source rectangle (x, y, w, h) of a local id, None without a grid."""
        if self.columns <= 0:
            return None
        col, row = self.atlas_position(local_id)
        x = self.margin + col * (self.tilewidth + self.spacing)
        y = self.margin + row * (self.tileheight + self.spacing)
        return x, y, self.tilewidth, self.tileheight

    def get_tile(self, local_id: int) -> Optional[Tile]:
        return self.tiles.get(local_id)


# =============================================================================
# LAYERS
# =============================================================================

class LayerKind(str, Enum):
    """Layer types, valued by their JSON "type" name."""
    TILE = "tilelayer"
    OBJECT = "objectgroup"
    IMAGE = "imagelayer"
    GROUP = "group"


XML_LAYER_TAGS = {
    'layer': LayerKind.TILE,
    'objectgroup': LayerKind.OBJECT,
    'imagelayer': LayerKind.IMAGE,
    'group': LayerKind.GROUP,
}


@dataclass
class Layer:
    """
    Fields shared by every layer kind.

    Positioning:
    - offsetx, offsety: Pixel offset from map origin (groups add theirs
      to every child)
    - parallaxx, parallaxy: Parallax scrolling factors
      (1.0 = normal, 0.5 = half speed, 0 = static background)
    """
    name: str = ""                                   # Layer name
    id: int = 0                                      # Unique layer ID
    visible: bool = True                             # Is layer rendered?
    opacity: float = 1.0                             # Transparency
    offsetx: float = 0.0                             # X pixel offset
    offsety: float = 0.0                             # Y pixel offset
    parallaxx: float = 1.0                           # Parallax X factor
    parallaxy: float = 1.0                           # Parallax Y factor
    tintcolor: Optional[str] = None                  # Color tint (#AARRGGBB)
    properties: Dict[str, Property] = field(default_factory=dict)

    kind: ClassVar[LayerKind]

    @property
    def offset(self) -> PixelPos:
        return PixelPos(float(self.offsetx), float(self.offsety))

    def get_property(self, name: str, default: Any = None) -> Any:
        prop = self.properties.get(name)
        return prop.value if prop is not None else default

    def get_level(self) -> int:
        """
        Height level from a 'Z', 'z' or 'level' layer property (default 0).

        Strings are parsed with int(value, 0) so "0x10" works; floats are
        truncated.
        """
        level = 0
        for prop_name in ('Z', 'z', 'level'):
            if prop_name in self.properties:
                level = self.properties[prop_name].value
                break

        if isinstance(level, str):
            try:
                level = int(level, 0)
            except ValueError as e:
                raise MapParseError(f"layer level {level!r} is not an integer",
                                    field=f"{self.name}.properties") from e
        elif isinstance(level, float):
            level = int(level)
        return int(level)

    @staticmethod
    def _common_json(node: Dict[str, Any], where: str) -> Dict[str, Any]:
        return dict(
            name=get_field(node, 'name', str, '', where),
            id=get_field(node, 'id', int, 0, where),
            visible=get_field(node, 'visible', bool, True, where),
            opacity=get_field(node, 'opacity', float, 1.0, where),
            offsetx=get_field(node, 'offsetx', float, 0.0, where),
            offsety=get_field(node, 'offsety', float, 0.0, where),
            parallaxx=get_field(node, 'parallaxx', float, 1.0, where),
            parallaxy=get_field(node, 'parallaxy', float, 1.0, where),
            tintcolor=node.get('tintcolor'),
            properties=parse_properties_json(node, where),
        )

    @staticmethod
    def _common_xml(elem: ET.Element, where: str) -> Dict[str, Any]:
        return dict(
            name=elem.get('name', ''),
            id=get_field(elem, 'id', int, 0, where),
            # absent means visible
            visible=get_field(elem, 'visible', bool, True, where),
            opacity=get_field(elem, 'opacity', float, 1.0, where),
            offsetx=get_field(elem, 'offsetx', float, 0.0, where),
            offsety=get_field(elem, 'offsety', float, 0.0, where),
            parallaxx=get_field(elem, 'parallaxx', float, 1.0, where),
            parallaxy=get_field(elem, 'parallaxy', float, 1.0, where),
            tintcolor=elem.get('tintcolor'),
            properties=parse_properties_xml(elem, where),
        )


def _decode(payload: Any, encoding: Optional[str], compression: Optional[str],
            expected: int, name: str) -> np.ndarray:
    """Decode one payload and check its size against the declared grid."""
    try:
        tiles = decode_tile_data(payload, encoding, compression)
    except DecodeError as e:
        raise e.with_context(name)
    if len(tiles) != expected:
        raise DataSizeError(name, expected, len(tiles))
    return tiles


def _json_payload(node: Dict[str, Any], where: str) -> Any:
    """The "data" member of a layer or chunk: a string, or a list of ints for csv."""
    payload = node['data']
    if not isinstance(payload, (str, list)):
        raise MapParseError(f"expected a string or a list, got {type(payload).__name__}",
                            field=field_path(where, 'data'))
    return payload


def _xml_payload(elem: ET.Element, encoding: Optional[str]) -> Tuple[Any, str]:
    """Payload and effective encoding of a <data>/<chunk> element."""
    if encoding is None:
        # Deprecated XML format: one <tile gid="..."/> per cell
        return [tile.get('gid', '0') for tile in elem.findall('tile')], 'csv'
    return elem.text or '', encoding


@dataclass(eq=False)
class Chunk:
    """
    Fixed-size region of an infinite layer.

    x, y is the chunk's own tile-space origin (may be negative); it is
    used as-is, no normalization against the map bounds.
    """
    x: int
    y: int
    width: int
    height: int
    data: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))

    @property
    def origin(self) -> TileCoord:
        return TileCoord(self.x, self.y)

    @property
    def bounds(self) -> TileBounds:
        return TileBounds(self.x, self.y, self.x + self.width - 1, self.y + self.height - 1)

    def get_tile_id(self, col: int, row: int) -> int:
        """Raw tile ID at chunk-local (col, row)."""
        return int(self.data[row * self.width + col])

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str, layer_name: str,
                  encoding: Optional[str], compression: Optional[str]) -> 'Chunk':
        x = get_field(node, 'x', int, where=where)
        y = get_field(node, 'y', int, where=where)
        width = get_field(node, 'width', int, where=where)
        height = get_field(node, 'height', int, where=where)
        if width <= 0 or height <= 0:
            raise MapSchemaError(f"chunk size must be positive, got {width}x{height}",
                                 field=where)
        if 'data' not in node:
            raise MapParseError("missing required field 'data'", field=field_path(where, 'data'))

        # Chunks inherit the layer's encoding
        data = _decode(_json_payload(node, where), encoding, compression, width * height,
                       f"{layer_name} chunk ({x}, {y})")
        return cls(x, y, width, height, data)

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str, layer_name: str,
                 encoding: Optional[str], compression: Optional[str]) -> 'Chunk':
        x = get_field(elem, 'x', int, where=where)
        y = get_field(elem, 'y', int, where=where)
        width = get_field(elem, 'width', int, where=where)
        height = get_field(elem, 'height', int, where=where)
        if width <= 0 or height <= 0:
            raise MapSchemaError(f"chunk size must be positive, got {width}x{height}",
                                 field=where)

        payload, encoding = _xml_payload(elem, encoding)
        data = _decode(payload, encoding, compression, width * height,
                       f"{layer_name} chunk ({x}, {y})")
        return cls(x, y, width, height, data)


@dataclass(eq=False)
class TileLayer(Layer):
    """
    Tile layer - a grid of raw tile IDs (flag bits included).

    Finite maps store one flat array (`data`, row-major, width*height).
    Infinite maps store `chunks`; `data` is None.

    ==========================================================================
    TILE ACCESS
    ==========================================================================

        tile_id = layer.get_tile_id(5, 10)   # column 5, row 10
        gid, flags = split_flags(tile_id)

    Out-of-bounds cells read as 0 (empty).

    ==========================================================================
    """
    width: int = 0                                   # Width in tiles
    height: int = 0                                  # Height in tiles
    data: Optional[np.ndarray] = None                # Finite tile IDs
    chunks: List[Chunk] = field(default_factory=list)  # Infinite chunks
    encoding: str = 'csv'                            # Declared encoding
    compression: Optional[str] = None                # Declared compression
    startx: int = 0
    starty: int = 0

    kind: ClassVar[LayerKind] = LayerKind.TILE

    @property
    def is_chunked(self) -> bool:
        return self.data is None

    def get_tile_id(self, x: int, y: int) -> int:
        """Raw tile ID at world tile (x, y); 0 when nothing covers it."""
        if self.data is not None:
            if 0 <= x < self.width and 0 <= y < self.height:
                # Convert 2D coords to 1D index: row-major order
                return int(self.data[y * self.width + x])
            return 0

        for chunk in self.chunks:
            if chunk.x <= x < chunk.x + chunk.width and chunk.y <= y < chunk.y + chunk.height:
                return chunk.get_tile_id(x - chunk.x, y - chunk.y)
        return 0

    def chunk_bounds(self) -> Optional[TileBounds]:
        """Union of all chunk rectangles, None when there are no chunks."""
        bounds = None
        for chunk in self.chunks:
            bounds = chunk.bounds if bounds is None else bounds.union(chunk.bounds)
        return bounds

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "",
                  infinite: bool = False) -> 'TileLayer':
        layer = cls(**cls._common_json(node, where))
        layer.width = get_field(node, 'width', int, 0, where)
        layer.height = get_field(node, 'height', int, 0, where)
        layer.startx = get_field(node, 'startx', int, 0, where)
        layer.starty = get_field(node, 'starty', int, 0, where)
        layer.encoding = get_field(node, 'encoding', str, 'csv', where)
        layer.compression = node.get('compression') or None

        if 'chunks' in node:
            for index, chunk_node in enumerate(require_list(node, 'chunks', where)):
                chunk_where = f"{where}.chunks[{index}]"
                layer.chunks.append(Chunk.from_json(
                    require_object(chunk_node, chunk_where), chunk_where,
                    layer.name, layer.encoding, layer.compression))
        elif 'data' in node:
            layer.data = _decode(_json_payload(node, where), layer.encoding, layer.compression,
                                 layer.width * layer.height, layer.name)
        elif not infinite:
            raise MapParseError("missing required field 'data'", field=field_path(where, 'data'))

        logger.debug("Tile layer '%s': %s", layer.name,
                     f"{len(layer.chunks)} chunks" if layer.is_chunked
                     else f"{layer.width}x{layer.height}")
        return layer

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "",
                 infinite: bool = False) -> 'TileLayer':
        layer = cls(**cls._common_xml(elem, where))
        layer.width = get_field(elem, 'width', int, 0, where)
        layer.height = get_field(elem, 'height', int, 0, where)

        data_elem = elem.find('data')
        if data_elem is None:
            if not infinite:
                raise MapParseError("missing <data> element", field=field_path(where, 'data'))
            return layer

        encoding = data_elem.get('encoding')
        layer.encoding = encoding or 'xml'
        layer.compression = data_elem.get('compression') or None

        chunk_elems = data_elem.findall('chunk')
        if chunk_elems:
            for index, chunk_elem in enumerate(chunk_elems):
                layer.chunks.append(Chunk.from_xml(
                    chunk_elem, f"{where}.chunks[{index}]", layer.name,
                    encoding, layer.compression))
        else:
            payload, encoding = _xml_payload(data_elem, encoding)
            layer.data = _decode(payload, encoding, layer.compression,
                                 layer.width * layer.height, layer.name)
        return layer


# =============================================================================
# OBJECTS
# =============================================================================

class ObjectShape(str, Enum):
    RECTANGLE = "rectangle"
    ELLIPSE = "ellipse"
    POINT = "point"
    POLYGON = "polygon"
    POLYLINE = "polyline"
    TEXT = "text"
    TILE = "tile"


@dataclass
class TiledObject:
    """
    Object in an object layer.

    x, y is the raw position written by the editor, in pixels. For tile
    objects (gid != 0) it is the bottom-left corner of the tile; for
    every other shape the top-left. Polygon/polyline points are relative
    to (x, y).

    gid keeps the flip flag bits as stored in the file.
    """
    id: int                                          # Unique object ID
    name: str = ""                                   # Object name
    type: str = ""                                   # Object type/class
    x: float = 0.0                                   # X position
    y: float = 0.0                                   # Y position
    width: float = 0.0                               # Width (0 for points)
    height: float = 0.0                              # Height (0 for points)
    rotation: float = 0.0                            # Rotation in degrees
    gid: int = 0                                     # Tile GID (tile objects)
    visible: bool = True                             # Is object visible?
    shape: ObjectShape = ObjectShape.RECTANGLE
    points: Optional[List[PixelPos]] = None          # Polygon/polyline points
    text: Optional[str] = None                       # Text objects
    template: Optional[str] = None                   # Template file reference
    properties: Dict[str, Property] = field(default_factory=dict)

    @property
    def position(self) -> PixelPos:
        return PixelPos(self.x, self.y)

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "") -> 'TiledObject':
        obj = cls(
            id=get_field(node, 'id', int, 0, where),
            name=get_field(node, 'name', str, '', where),
            # Tiled >= 1.9 writes "class" instead of "type"
            type=node.get('type') or node.get('class') or '',
            x=get_field(node, 'x', float, 0.0, where),
            y=get_field(node, 'y', float, 0.0, where),
            width=get_field(node, 'width', float, 0.0, where),
            height=get_field(node, 'height', float, 0.0, where),
            rotation=get_field(node, 'rotation', float, 0.0, where),
            gid=get_field(node, 'gid', int, 0, where),
            visible=get_field(node, 'visible', bool, True, where),
            template=node.get('template'),
            properties=parse_properties_json(node, where),
        )

        if strip_flags(obj.gid):
            obj.shape = ObjectShape.TILE
        elif node.get('ellipse'):
            obj.shape = ObjectShape.ELLIPSE
        elif node.get('point'):
            obj.shape = ObjectShape.POINT
        elif 'polygon' in node or 'polyline' in node:
            key = 'polygon' if 'polygon' in node else 'polyline'
            obj.shape = ObjectShape(key)
            obj.points = []
            for i, p in enumerate(require_list(node, key, where)):
                point_where = f"{where}.{key}[{i}]"
                point = require_object(p, point_where)
                obj.points.append(PixelPos(get_field(point, 'x', float, where=point_where),
                                           get_field(point, 'y', float, where=point_where)))
        elif 'text' in node:
            obj.shape = ObjectShape.TEXT
            text = node['text']
            obj.text = text.get('text', '') if isinstance(text, dict) else str(text)
        return obj

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "") -> 'TiledObject':
        obj = cls(
            id=get_field(elem, 'id', int, 0, where),
            name=elem.get('name', ''),
            type=elem.get('type') or elem.get('class') or '',
            x=get_field(elem, 'x', float, 0.0, where),
            y=get_field(elem, 'y', float, 0.0, where),
            width=get_field(elem, 'width', float, 0.0, where),
            height=get_field(elem, 'height', float, 0.0, where),
            rotation=get_field(elem, 'rotation', float, 0.0, where),
            gid=get_field(elem, 'gid', int, 0, where),
            visible=get_field(elem, 'visible', bool, True, where),
            template=elem.get('template'),
            properties=parse_properties_xml(elem, where),
        )

        if strip_flags(obj.gid):
            obj.shape = ObjectShape.TILE
        elif elem.find('ellipse') is not None:
            obj.shape = ObjectShape.ELLIPSE
        elif elem.find('point') is not None:
            obj.shape = ObjectShape.POINT
        else:
            for tag in ('polygon', 'polyline'):
                shape_elem = elem.find(tag)
                if shape_elem is not None:
                    obj.shape = ObjectShape(tag)
                    obj.points = _parse_xml_points(shape_elem.get('points', ''),
                                                   f"{where}.{tag}")
                    break
            else:
                text_elem = elem.find('text')
                if text_elem is not None:
                    obj.shape = ObjectShape.TEXT
                    obj.text = text_elem.text or ''
        return obj


def _parse_xml_points(points: str, where: str) -> List[PixelPos]:
    """Parse "x1,y1 x2,y2 ..." into relative pixel points."""
    result = []
    for index, pair in enumerate(points.split()):
        try:
            x, y = pair.split(',')
            result.append(PixelPos(float(x), float(y)))
        except ValueError as e:
            raise MapParseError(f"invalid point {pair!r}", field=f"{where}[{index}]") from e
    return result


@dataclass
class ObjectGroup(Layer):
    """
    Object layer - contains vector objects.

    Used for non-tile data: collision shapes, spawn points, trigger
    areas, patrol paths, entity placement.
    """
    objects: List[TiledObject] = field(default_factory=list)
    color: Optional[str] = None                      # Display color in editor
    draworder: str = "topdown"                       # topdown or index

    kind: ClassVar[LayerKind] = LayerKind.OBJECT

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "",
                  infinite: bool = False) -> 'ObjectGroup':
        group = cls(**cls._common_json(node, where))
        group.color = node.get('color')
        group.draworder = get_field(node, 'draworder', str, 'topdown', where)
        for index, obj_node in enumerate(optional_list(node, 'objects', where)):
            obj_where = f"{where}.objects[{index}]"
            group.objects.append(TiledObject.from_json(require_object(obj_node, obj_where),
                                                       obj_where))
        return group

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "",
                 infinite: bool = False) -> 'ObjectGroup':
        group = cls(**cls._common_xml(elem, where))
        group.color = elem.get('color')
        group.draworder = elem.get('draworder', 'topdown')
        for index, obj_elem in enumerate(elem.findall('object')):
            group.objects.append(TiledObject.from_xml(obj_elem, f"{where}.objects[{index}]"))
        return group


@dataclass
class ImageLayer(Layer):
    """Image layer - a single picture, typically a parallax background."""
    image: str = ""                                  # Image path as written
    repeatx: bool = False                            # Tile horizontally
    repeaty: bool = False                            # Tile vertically

    kind: ClassVar[LayerKind] = LayerKind.IMAGE

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "",
                  infinite: bool = False) -> 'ImageLayer':
        layer = cls(**cls._common_json(node, where))
        layer.image = get_field(node, 'image', str, '', where)
        layer.repeatx = get_field(node, 'repeatx', bool, False, where)
        layer.repeaty = get_field(node, 'repeaty', bool, False, where)
        return layer

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "",
                 infinite: bool = False) -> 'ImageLayer':
        layer = cls(**cls._common_xml(elem, where))
        img_elem = elem.find('image')
        if img_elem is not None:
            layer.image = img_elem.get('source', '')
        layer.repeatx = get_field(elem, 'repeatx', bool, False, where)
        layer.repeaty = get_field(elem, 'repeaty', bool, False, where)
        return layer


@dataclass
class LayerGroup(Layer):
    """
    Group of layers - a folder containing other layers.

    Layers:
    ├── Background (group)
    │   ├── Sky
    │   └── Mountains
    ├── Gameplay (group)
    │   ├── Ground
    │   └── Collisions
    └── Foreground

    Groups can be nested. A group's offset applies to all its children.
    """
    # Recursive type: can contain any layer kind, including more groups
    layers: List[Layer] = field(default_factory=list)

    kind: ClassVar[LayerKind] = LayerKind.GROUP

    @classmethod
    def from_json(cls, node: Dict[str, Any], where: str = "",
                  infinite: bool = False) -> 'LayerGroup':
        group = cls(**cls._common_json(node, where))
        group.layers = parse_layers_json(optional_list(node, 'layers', where),
                                         f"{where}.layers", infinite)
        return group

    @classmethod
    def from_xml(cls, elem: ET.Element, where: str = "",
                 infinite: bool = False) -> 'LayerGroup':
        group = cls(**cls._common_xml(elem, where))
        group.layers = parse_layers_xml(elem, where, infinite)
        return group


LAYER_CLASSES = {
    LayerKind.TILE: TileLayer,
    LayerKind.OBJECT: ObjectGroup,
    LayerKind.IMAGE: ImageLayer,
    LayerKind.GROUP: LayerGroup,
}


def parse_layers_json(nodes: List[Any], where: str = "layers",
                      infinite: bool = False) -> List[Layer]:
    """Parse a JSON layer list in document order."""
    layers: List[Layer] = []
    for index, node in enumerate(nodes):
        layer_where = f"{where}[{index}]"
        node = require_object(node, layer_where)
        layer_type = get_field(node, 'type', str, where=layer_where)
        try:
            kind = LayerKind(layer_type)
        except ValueError as e:
            raise MapSchemaError(f"unknown layer type '{layer_type}'",
                                 field=field_path(layer_where, 'type')) from e
        layers.append(LAYER_CLASSES[kind].from_json(node, layer_where, infinite))
    return layers


def parse_layers_xml(parent: ET.Element, where: str = "layers",
                     infinite: bool = False) -> List[Layer]:
    """Parse the layer children of a <map> or <group> in document order."""
    layers: List[Layer] = []
    for child in parent:
        kind = XML_LAYER_TAGS.get(child.tag)
        if kind is None:
            # <tileset>, <properties>, <editorsettings>...
            continue
        layer_where = f"{where}[{len(layers)}]"
        layers.append(LAYER_CLASSES[kind].from_xml(child, layer_where, infinite))
    return layers


def iter_layers(layers: List[Layer]) -> Iterator[Layer]:
    """Depth-first iteration over every layer, groups included."""
    for layer in layers:
        yield layer
        if isinstance(layer, LayerGroup):
            yield from iter_layers(layer.layers)


# =============================================================================
# TILED MAP CLASS (Main Entry Point)
# =============================================================================

ORIENTATIONS = ('orthogonal', 'isometric', 'staggered', 'hexagonal')
RENDER_ORDERS = ('right-down', 'right-up', 'left-down', 'left-up')


@dataclass
class TiledMap:
    """
    Complete Tiled map - the result of tmj_loader.load_from_file().

    Built once per load and treated as read-only afterwards: the converter
    never mutates it.

    ==========================================================================
    RENDER ORDER
    ==========================================================================

    Determines which corner tile iteration starts from:
    - right-down: Left-to-right, top-to-bottom (most common)
    - right-up: Left-to-right, bottom-to-top
    - left-down: Right-to-left, top-to-bottom
    - left-up: Right-to-left, bottom-to-top

    Render order never affects objects.

    ==========================================================================
    INFINITE MAPS
    ==========================================================================

    Tile layers hold chunks instead of a flat array; `tile_bounds` is the
    union of all chunks of all tile layers (groups included) and is None
    for finite maps.

    ==========================================================================
    """
    version: str = ""                                # Format version
    tiledversion: str = ""                           # Tiled editor version
    orientation: str = "orthogonal"                  # Map orientation
    renderorder: str = "right-down"                  # Render order
    width: int = 0                                   # Map width in tiles
    height: int = 0                                  # Map height in tiles
    tilewidth: int = 0                               # Tile width in pixels
    tileheight: int = 0                              # Tile height in pixels
    infinite: bool = False                           # Is map infinite?
    backgroundcolor: Optional[str] = None
    nextlayerid: int = 0
    nextobjectid: int = 0
    properties: Dict[str, Property] = field(default_factory=dict)
    tilesets: List[Tileset] = field(default_factory=list)
    layers: List[Layer] = field(default_factory=list)
    tile_bounds: Optional[TileBounds] = None         # Infinite maps only
    source: Optional[str] = None                     # File the map came from

    def get_tileset_for_gid(self, gid: int) -> Optional[Tileset]:
        """
        Find which tileset owns a GID (flag bits must be stripped).

        Binary search on firstgid: the owner is the last tileset whose
        firstgid <= gid, provided its own range reaches the gid.
        """
        if gid <= 0 or not self.tilesets:
            return None
        firstgids = [tileset.firstgid for tileset in self.tilesets]
        index = bisect.bisect_right(firstgids, gid) - 1
        if index < 0:
            return None
        tileset = self.tilesets[index]
        return tileset if tileset.contains(gid) else None

    def get_layer_by_name(self, name: str) -> Optional[Layer]:
        """Find the first layer (searching into groups) with this name."""
        for layer in iter_layers(self.layers):
            if layer.name == name:
                return layer
        return None

    def get_all_layers_flat(self) -> List[Layer]:
        """All non-group layers in document order (groups flattened)."""
        return [layer for layer in iter_layers(self.layers)
                if not isinstance(layer, LayerGroup)]

    def iter_tile_layers(self) -> Iterator[TileLayer]:
        for layer in iter_layers(self.layers):
            if isinstance(layer, TileLayer):
                yield layer

    def get_property(self, name: str, default: Any = None) -> Any:
        prop = self.properties.get(name)
        return prop.value if prop is not None else default
