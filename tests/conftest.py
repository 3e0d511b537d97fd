"""Shared fixtures: map documents written into tmp_path."""

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
import pytest

from tmj_loader.tilesets import TilesetCache


GROUND_TILESET = {
    "firstgid": 1,
    "name": "ground",
    "tilewidth": 32,
    "tileheight": 32,
    "tilecount": 16,
    "columns": 4,
    "image": "ground.png",
    "imagewidth": 128,
    "imageheight": 128,
}


def tile_layer(name: str, data: List[int], width: int = 4, height: int = 4,
               **extra) -> Dict[str, Any]:
    layer = {
        "type": "tilelayer",
        "id": 1,
        "name": name,
        "width": width,
        "height": height,
        "data": data,
        "visible": True,
        "opacity": 1,
        "x": 0,
        "y": 0,
    }
    layer.update(extra)
    return layer


def object_layer(name: str, objects: List[Dict[str, Any]], **extra) -> Dict[str, Any]:
    layer = {
        "type": "objectgroup",
        "id": 2,
        "name": name,
        "objects": objects,
        "visible": True,
        "opacity": 1,
        "draworder": "topdown",
    }
    layer.update(extra)
    return layer


def map_document(width: int = 4, height: int = 4, tilewidth: int = 32, tileheight: int = 32,
                 orientation: str = "orthogonal", renderorder: str = "right-down",
                 infinite: bool = False, layers: Optional[List[Dict[str, Any]]] = None,
                 tilesets: Optional[List[Dict[str, Any]]] = None, **extra) -> Dict[str, Any]:
    document = {
        "type": "map",
        "version": "1.10",
        "tiledversion": "1.10.2",
        "width": width,
        "height": height,
        "tilewidth": tilewidth,
        "tileheight": tileheight,
        "orientation": orientation,
        "renderorder": renderorder,
        "infinite": infinite,
        "nextlayerid": 3,
        "nextobjectid": 1,
        "layers": layers if layers is not None else [tile_layer("Ground", [1] * (width * height),
                                                                 width, height)],
        "tilesets": tilesets if tilesets is not None else [copy.deepcopy(GROUND_TILESET)],
    }
    document.update(extra)
    return document


@pytest.fixture
def write_file(tmp_path):
    """Write bytes/str/JSON-able content to tmp_path/name and return the path."""
    def write(name: str, content) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        elif isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_bytes(orjson.dumps(content))
        return path
    return write


@pytest.fixture
def write_map(write_file):
    """Write a map document (see map_document) and return its path."""
    def write(document: Optional[Dict[str, Any]] = None, name: str = "map.tmj",
              **kwargs) -> Path:
        if document is None:
            document = map_document(**kwargs)
        return write_file(name, document)
    return write


@pytest.fixture
def cache():
    """A fresh, isolated tileset cache."""
    return TilesetCache()
