"""
tmj_loader - Tiled map loading and level conversion

Requirements:
    pip install numpy pillow zstandard orjson
"""

from .analysis import LevelManifest, ObjectReference, analyze, analyze_file
from .collision import CollisionGrid
from .config import ConversionConfig, load_placeholder_mapping
from .converter import GidResolver, LevelConverter, ResolvedGid, classify_layer, convert
from .coords import PixelPos, TileBounds, TileCoord
from .decoder import (
    FLIPPED_DIAGONALLY_FLAG, FLIPPED_HORIZONTALLY_FLAG, FLIPPED_VERTICALLY_FLAG,
    GID_MASK, TileFlags, apply_flags, decode_tile_data, encode_tile_data,
    split_flags, strip_flags,
)
from .errors import (
    Base64DecodeError, CompressionError, CompressionFailure, DataSizeError,
    DecodeError, InvalidTokenError, MalformedDataError, MapIOError,
    MapParseError, MapSchemaError, TiledError, UnsupportedEncodingError,
)
from .level import (
    EntityPlacement, LayerCategory, LevelDefinition, ParallaxLayer,
    TileLayerPlacement, TilePlacement, UnresolvedGid,
)
from .loader import MapLoader, load_from_file
from .structures import (
    Chunk, ImageLayer, LayerGroup, LayerKind, ObjectGroup, ObjectShape,
    TiledMap, TiledObject, TileLayer, Tileset,
)
from .tilesets import TilesetCache, load_external, parse_embedded

__version__ = "1.0.0"
__all__ = [
    "load_from_file",
    "MapLoader",
    "analyze",
    "analyze_file",
    "LevelManifest",
    "ObjectReference",
    "convert",
    "LevelConverter",
    "ConversionConfig",
    "load_placeholder_mapping",
    "GidResolver",
    "ResolvedGid",
    "classify_layer",
    "TilesetCache",
    "load_external",
    "parse_embedded",
    "decode_tile_data",
    "encode_tile_data",
    "split_flags",
    "apply_flags",
    "strip_flags",
    "TileFlags",
    "FLIPPED_HORIZONTALLY_FLAG",
    "FLIPPED_VERTICALLY_FLAG",
    "FLIPPED_DIAGONALLY_FLAG",
    "GID_MASK",
    "TileCoord",
    "PixelPos",
    "TileBounds",
    "TiledMap",
    "Tileset",
    "TileLayer",
    "Chunk",
    "ObjectGroup",
    "ImageLayer",
    "LayerGroup",
    "LayerKind",
    "TiledObject",
    "ObjectShape",
    "LevelDefinition",
    "TileLayerPlacement",
    "TilePlacement",
    "EntityPlacement",
    "ParallaxLayer",
    "UnresolvedGid",
    "LayerCategory",
    "CollisionGrid",
    "TiledError",
    "MapIOError",
    "MapParseError",
    "MapSchemaError",
    "DataSizeError",
    "DecodeError",
    "InvalidTokenError",
    "Base64DecodeError",
    "CompressionError",
    "CompressionFailure",
    "MalformedDataError",
    "UnsupportedEncodingError",
]
