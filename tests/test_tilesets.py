"""Embedded and external tilesets, grid derivation and the tileset cache."""

import threading
import xml.etree.ElementTree as ET

import pytest
from PIL import Image as PILImage

from tmj_loader.errors import MapIOError, MapParseError
from tmj_loader.tilesets import (
    TilesetCache,
    derive_grid,
    load_external,
    parse_embedded,
    resolve_reference,
)


TERRAIN_TSX = """<?xml version="1.0" encoding="UTF-8"?>
<tileset version="1.10" tiledversion="1.10.2" name="terrain" tilewidth="64" tileheight="32"
         spacing="1" margin="2" tilecount="8" columns="4">
 <tileoffset x="0" y="16"/>
 <image source="terrain.png" width="263" height="69"/>
 <properties>
  <property name="biome" value="grass"/>
 </properties>
 <tile id="3" type="Wall">
  <properties>
   <property name="solid" type="bool" value="true"/>
  </properties>
 </tile>
</tileset>
"""

TERRAIN_TSJ = {
    "type": "tileset",
    "name": "terrain",
    "tilewidth": 64,
    "tileheight": 32,
    "spacing": 1,
    "margin": 2,
    "tilecount": 8,
    "columns": 4,
    "image": "terrain.png",
    "imagewidth": 263,
    "imageheight": 69,
    "tileoffset": {"x": 0, "y": 16},
    "properties": [{"name": "biome", "type": "string", "value": "grass"}],
    "tiles": [
        {"id": 3, "type": "Wall",
         "properties": [{"name": "solid", "type": "bool", "value": True}]},
    ],
}


def check_terrain(tileset):
    assert tileset.name == "terrain"
    assert (tileset.tilewidth, tileset.tileheight) == (64, 32)
    assert (tileset.tilecount, tileset.columns) == (8, 4)
    assert (tileset.spacing, tileset.margin) == (1, 2)
    assert (tileset.tileoffsetx, tileset.tileoffsety) == (0, 16)
    assert tileset.image.source == "terrain.png"
    assert tileset.properties["biome"].value == "grass"
    wall = tileset.get_tile(3)
    assert wall.type == "Wall"
    assert wall.get_property("solid") is True


class TestEmbedded:

    def test_json_with_tileoffset(self):
        tileset = parse_embedded(dict(TERRAIN_TSJ), firstgid=5)
        assert tileset.firstgid == 5
        assert tileset.source is None
        assert not tileset.is_external
        check_terrain(tileset)

    def test_xml(self):
        elem = ET.fromstring(TERRAIN_TSX.split("\n", 1)[1])
        tileset = parse_embedded(elem, firstgid=1)
        check_terrain(tileset)

    def test_missing_tile_size(self):
        node = dict(TERRAIN_TSJ)
        del node["tilewidth"]
        with pytest.raises(MapParseError) as exc:
            parse_embedded(node, firstgid=1, where="tilesets[0]")
        assert exc.value.field == "tilesets[0].tilewidth"

    def test_non_positive_tile_size(self):
        with pytest.raises(MapParseError):
            parse_embedded(dict(TERRAIN_TSJ, tileheight=0), firstgid=1)

    def test_legacy_tiles_object(self):
        node = dict(TERRAIN_TSJ, tiles={"2": {"type": "Door"}})
        assert parse_embedded(node, firstgid=1).get_tile(2).type == "Door"


class TestGeometry:

    def test_lastgid(self):
        tileset = parse_embedded(dict(TERRAIN_TSJ), firstgid=10)
        assert tileset.lastgid == 17
        assert tileset.contains(10)
        assert tileset.contains(17)
        assert not tileset.contains(18)

    def test_tile_rect_with_margin_and_spacing(self):
        tileset = parse_embedded(dict(TERRAIN_TSJ), firstgid=1)
        assert tileset.atlas_position(5) == (1, 1)
        assert tileset.tile_rect(5) == (2 + 65, 2 + 33, 64, 32)

    def test_derive_grid(self):
        assert derive_grid(16, 16, 2, 2, 100, 68) == (5, 15)
        assert derive_grid(32, 32, 0, 0, 128, 64) == (4, 8)

    def test_grid_from_image_header(self, tmp_path):
        PILImage.new("RGBA", (100, 68)).save(tmp_path / "sheet.png")
        node = {"name": "sheet", "tilewidth": 16, "tileheight": 16,
                "spacing": 2, "margin": 2, "image": "sheet.png"}
        tileset = parse_embedded(node, firstgid=1, base_dir=tmp_path)
        assert (tileset.columns, tileset.tilecount) == (5, 15)

    def test_unreadable_image_leaves_grid_unknown(self, tmp_path):
        node = {"name": "sheet", "tilewidth": 16, "tileheight": 16, "image": "missing.png"}
        tileset = parse_embedded(node, firstgid=1, base_dir=tmp_path)
        assert tileset.tilecount == 0
        assert tileset.lastgid is None


class TestExternal:

    def test_tsx(self, write_file):
        path = write_file("terrain.tsx", TERRAIN_TSX)
        tileset = load_external(path)
        assert tileset.firstgid == 0
        assert tileset.source == str(path)
        check_terrain(tileset)

    def test_tsj(self, write_file):
        tileset = load_external(write_file("terrain.tsj", TERRAIN_TSJ))
        check_terrain(tileset)

    def test_missing_file(self, tmp_path):
        with pytest.raises(MapIOError) as exc:
            load_external(tmp_path / "nope.tsx")
        assert exc.value.path.endswith("nope.tsx")

    def test_wrong_root_element(self, write_file):
        path = write_file("bad.tsx", '<map version="1.10"/>')
        with pytest.raises(MapParseError) as exc:
            load_external(path)
        assert exc.value.field == "tileset"

    def test_malformed_json(self, write_file):
        with pytest.raises(MapParseError):
            load_external(write_file("bad.tsj", "{not json"))

    def test_unknown_extension(self, write_file):
        with pytest.raises(MapParseError):
            load_external(write_file("terrain.png", b"\x89PNG"))


class TestCache:

    def test_hit_and_miss_counts(self, write_file, cache):
        path = write_file("terrain.tsx", TERRAIN_TSX)
        first = cache.get(path)
        second = cache.get(path)
        assert first is second
        assert (cache.hits, cache.misses) == (1, 1)
        assert path in cache
        assert len(cache) == 1

    def test_key_is_resolved_path(self, write_file, cache):
        path = write_file("sets/terrain.tsx", TERRAIN_TSX)
        cache.get(path)
        cache.get(path.parent / ".." / "sets" / "terrain.tsx")
        assert cache.misses == 1
        assert cache.hits == 1

    def test_clear(self, write_file, cache):
        path = write_file("terrain.tsx", TERRAIN_TSX)
        cache.get(path)
        cache.clear()
        assert len(cache) == 0
        assert (cache.hits, cache.misses) == (0, 0)
        cache.get(path)
        assert cache.misses == 1

    def test_failed_load_is_not_cached(self, tmp_path, cache):
        with pytest.raises(MapIOError):
            cache.get(tmp_path / "missing.tsx")
        assert len(cache) == 0

    def test_concurrent_loads_parse_once(self, write_file, cache):
        path = write_file("terrain.tsx", TERRAIN_TSX)
        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get(path)))
                   for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert cache.misses == 1
        assert cache.hits == 7
        assert all(result is results[0] for result in results)

    def test_resolve_reference_applies_map_firstgid(self, write_file, cache):
        write_file("terrain.tsx", TERRAIN_TSX)
        base_dir = write_file("map.tmj", {}).parent
        tileset = resolve_reference(33, "terrain.tsx", base_dir, cache)
        assert tileset.firstgid == 33
        assert tileset.source == "terrain.tsx"
        assert tileset.is_external
        # The shared definition is untouched
        assert cache.get(base_dir / "terrain.tsx").firstgid == 0
