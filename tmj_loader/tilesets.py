"""
Tileset resolution: embedded and external tilesets, and their cache

=============================================================================
EMBEDDED vs EXTERNAL TILESETS
=============================================================================

EMBEDDED: Tileset data is inside the map file
    {"firstgid": 1, "name": "terrain", "tilewidth": 32, ...}
    <tileset firstgid="1" name="terrain" tilewidth="32" ...>

EXTERNAL: The map only holds a reference, the definition lives in its
own file (.tsx/.xml in XML, .tsj/.json in JSON):
    {"firstgid": 1, "source": "terrain.tsj"}
    <tileset firstgid="1" source="terrain.tsx"/>

Both paths read the same fields, the per-tileset <tileoffset> included.
The firstgid always comes from the map, never from the tileset file.

=============================================================================
CACHE
=============================================================================

External definitions are shared by many maps. TilesetCache keeps parsed
definitions keyed by resolved path:

    cache = TilesetCache()
    load_from_file("a.tmj", cache=cache)     # miss: parses terrain.tsx
    load_from_file("b.tmj", cache=cache)     # hit: reuses the definition

Cached entries are frozen. The map's reference (firstgid + source) is
combined with the definition through dataclasses.replace().

One lock serializes both lookups and miss-parse-insert, so concurrent
loads of the same tileset parse it exactly once.

=============================================================================
"""

import dataclasses
import logging
import threading
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import orjson
from PIL import Image as PILImage

from .errors import MapIOError, MapParseError
from .structures import (
    Image,
    Node,
    Tile,
    Tileset,
    convert_value,
    get_field,
    parse_properties_json,
    parse_properties_xml,
    require_object,
)

logger = logging.getLogger(__name__)

JSON_EXTENSIONS = ('.tsj', '.json')
XML_EXTENSIONS = ('.tsx', '.xml')


# =============================================================================
# GRID DERIVATION
# =============================================================================

def _image_size(image: Image, base_dir: Optional[Path]) -> Optional[Tuple[int, int]]:
    """Declared image size, otherwise read from the image header."""
    if image.width and image.height:
        return image.width, image.height
    if base_dir is None:
        return None

    image_path = base_dir / image.source
    try:
        # open() only reads the header; pixels are never decoded here
        with PILImage.open(image_path) as img:
            return img.size
    except OSError as e:
        logger.warning("Cannot read size of tileset image %s: %s", image_path, e)
        return None


def derive_grid(tilewidth: int, tileheight: int, spacing: int, margin: int,
                image_width: int, image_height: int) -> Tuple[int, int]:
    """
    (columns, tilecount) of a spritesheet, honoring margin and spacing.

    usable = image - 2*margin; each tile takes tile + spacing except the
    last one, hence (usable + spacing) // (tile + spacing).
    """
    columns = (image_width - 2 * margin + spacing) // (tilewidth + spacing)
    rows = (image_height - 2 * margin + spacing) // (tileheight + spacing)
    return max(columns, 0), max(columns, 0) * max(rows, 0)


def _complete_grid(fields: Dict[str, Any], base_dir: Optional[Path]) -> Dict[str, Any]:
    image = fields.get('image')
    if image is None or (fields['columns'] > 0 and fields['tilecount'] > 0):
        return fields

    size = _image_size(image, base_dir)
    if size is None:
        return fields

    columns, tilecount = derive_grid(fields['tilewidth'], fields['tileheight'],
                                     fields['spacing'], fields['margin'], *size)
    if fields['columns'] <= 0:
        fields['columns'] = columns
    if fields['tilecount'] <= 0:
        fields['tilecount'] = tilecount
    logger.debug("Derived grid for tileset '%s': %d columns, %d tiles",
                 fields['name'], fields['columns'], fields['tilecount'])
    return fields


def _check_tile_size(fields: Dict[str, Any], where: str):
    for key in ('tilewidth', 'tileheight'):
        if fields[key] <= 0:
            raise MapParseError(f"{key} must be positive, got {fields[key]}",
                                field=f"{where}.{key}" if where else key)


# =============================================================================
# FORMAT READERS
# =============================================================================

def _fields_from_json(node: Dict[str, Any], where: str) -> Dict[str, Any]:
    offset_where = f"{where}.tileoffset" if where else 'tileoffset'
    offset = require_object(node.get('tileoffset') or {}, offset_where)

    tiles_where = f"{where}.tiles" if where else 'tiles'
    tiles_node = node.get('tiles') or []
    if isinstance(tiles_node, dict):
        # Pre-1.2 format: {"<id>": {...}}
        tiles_node = [dict(require_object(tile, f"{tiles_where}[{tile_id!r}]"),
                           id=convert_value(tile_id, int, f"{tiles_where}[{tile_id!r}]"))
                      for tile_id, tile in tiles_node.items()]
    elif not isinstance(tiles_node, list):
        raise MapParseError(f"expected a list, got {type(tiles_node).__name__}",
                            field=tiles_where)
    tiles = {}
    for index, tile_node in enumerate(tiles_node):
        tile_where = f"{where}.tiles[{index}]"
        tile = Tile.from_json(require_object(tile_node, tile_where), tile_where)
        tiles[tile.id] = tile

    return dict(
        name=get_field(node, 'name', str, '', where),
        tilewidth=get_field(node, 'tilewidth', int, where=where),
        tileheight=get_field(node, 'tileheight', int, where=where),
        tilecount=get_field(node, 'tilecount', int, 0, where),
        columns=get_field(node, 'columns', int, 0, where),
        spacing=get_field(node, 'spacing', int, 0, where),
        margin=get_field(node, 'margin', int, 0, where),
        image=Image.from_json(node, where),
        tileoffsetx=get_field(offset, 'x', int, 0, offset_where),
        tileoffsety=get_field(offset, 'y', int, 0, offset_where),
        tiles=tiles,
        properties=parse_properties_json(node, where),
    )


def _fields_from_xml(elem: ET.Element, where: str) -> Dict[str, Any]:
    offset_elem = elem.find('tileoffset')
    offset_where = f"{where}.tileoffset" if where else 'tileoffset'
    img_elem = elem.find('image')

    tiles = {}
    for index, tile_elem in enumerate(elem.findall('tile')):
        tile = Tile.from_xml(tile_elem, f"{where}.tiles[{index}]")
        tiles[tile.id] = tile

    return dict(
        name=elem.get('name', ''),
        tilewidth=get_field(elem, 'tilewidth', int, where=where),
        tileheight=get_field(elem, 'tileheight', int, where=where),
        tilecount=get_field(elem, 'tilecount', int, 0, where),
        columns=get_field(elem, 'columns', int, 0, where),
        spacing=get_field(elem, 'spacing', int, 0, where),
        margin=get_field(elem, 'margin', int, 0, where),
        image=Image.from_xml(img_elem, where) if img_elem is not None else None,
        tileoffsetx=(get_field(offset_elem, 'x', int, 0, offset_where)
                     if offset_elem is not None else 0),
        tileoffsety=(get_field(offset_elem, 'y', int, 0, offset_where)
                     if offset_elem is not None else 0),
        tiles=tiles,
        properties=parse_properties_xml(elem, where),
    )


def _build(fields: Dict[str, Any], firstgid: int, source: Optional[str],
           base_dir: Optional[Path], where: str) -> Tileset:
    _check_tile_size(fields, where)
    fields = _complete_grid(fields, base_dir)
    return Tileset(firstgid=firstgid, source=source, **fields)


# =============================================================================
# PUBLIC API
# =============================================================================

def parse_embedded(node: Node, firstgid: int, base_dir: Optional[Union[str, Path]] = None,
                   where: str = "") -> Tileset:
    """
    Parse a tileset defined inside the map document.

    Parameters:
    -----------
    node : dict or ET.Element
        The JSON tileset object or the <tileset> element
    firstgid : int
        First Global ID (from the map)
    base_dir : path, optional
        Directory image paths are relative to (the map's directory);
        needed only to read image sizes from disk
    """
    base = Path(base_dir) if base_dir is not None else None
    if isinstance(node, ET.Element):
        fields = _fields_from_xml(node, where)
    else:
        fields = _fields_from_json(require_object(node, where or 'tileset'), where)
    return _build(fields, firstgid, None, base, where)


def load_external(path: Union[str, Path]) -> Tileset:
    """
    Parse an external tileset file.

    Format is selected by extension: .tsj/.json → JSON, .tsx/.xml → XML.
    The returned definition has firstgid 0 and source = the file path;
    callers combine it with the map reference.

    Raises:
    -------
    MapIOError : file missing or unreadable
    MapParseError : malformed document, missing/invalid field, unknown
                    extension
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in JSON_EXTENSIONS + XML_EXTENSIONS:
        raise MapParseError(f"unsupported tileset format '{suffix or path.name}'",
                            source=str(path))

    try:
        raw = path.read_bytes()
    except OSError as e:
        raise MapIOError(path, e.strerror or str(e)) from e

    if suffix in JSON_EXTENSIONS:
        try:
            node = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise MapParseError(f"malformed JSON: {e}", source=str(path)) from e
        if not isinstance(node, dict):
            raise MapParseError("root is not an object", field="tileset", source=str(path))
        fields = _fields_from_json(node, "")
    else:
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as e:
            raise MapParseError(f"malformed XML: {e}", source=str(path)) from e
        if root.tag != 'tileset':
            raise MapParseError(f"root element is <{root.tag}>, expected <tileset>",
                                field="tileset", source=str(path))
        fields = _fields_from_xml(root, "")

    tileset = _build(fields, 0, str(path), path.parent, "")
    logger.debug("Parsed external tileset '%s' from %s (%d tiles)",
                 tileset.name, path, tileset.tilecount)
    return tileset


class TilesetCache:
    """
    Path-keyed cache of parsed external tileset definitions.

    Explicit and injectable: pass an instance to the loader to share
    definitions between loads, or a fresh one to isolate them. `hits` and
    `misses` count lookups.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Tileset] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(path: Union[str, Path]) -> str:
        return str(Path(path).resolve())

    def get(self, path: Union[str, Path]) -> Tileset:
        """Return the cached definition for `path`, parsing it on a miss."""
        key = self._key(path)
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self.hits += 1
                logger.debug("Tileset cache hit: %s", key)
                return cached

            self.misses += 1
            logger.debug("Tileset cache miss: %s", key)
            tileset = load_external(path)
            self._entries[key] = tileset
            return tileset

    def __contains__(self, path) -> bool:
        key = self._key(path)
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self):
        """Drop every entry and reset the counters."""
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0


def resolve_reference(firstgid: int, source: str, base_dir: Union[str, Path],
                      cache: TilesetCache) -> Tileset:
    """Combine a map's external reference with the cached definition."""
    definition = cache.get(Path(base_dir) / source)
    return dataclasses.replace(definition, firstgid=firstgid, source=source)
