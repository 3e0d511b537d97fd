"""Converting loaded maps into LevelDefinition values."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from conftest import GROUND_TILESET, map_document, object_layer, tile_layer
from tmj_loader.config import (
    DEFAULT_PLACEHOLDER,
    PATROL_PLACEHOLDER,
    SECTOR_PLACEHOLDER,
    ConversionConfig,
)
from tmj_loader.converter import (
    GidResolver,
    LevelConverter,
    classify_layer,
    convert,
    parse_color,
    render_order_indices,
)
from tmj_loader.coords import PixelPos, TileBounds, TileCoord
from tmj_loader.decoder import FLIPPED_HORIZONTALLY_FLAG, FLIPPED_VERTICALLY_FLAG, TileFlags
from tmj_loader.level import LayerCategory, UnresolvedGid
from tmj_loader.loader import load_from_file
from tmj_loader.structures import ObjectShape, Tileset


@pytest.fixture
def load_map(write_map, cache):
    def load(document):
        return load_from_file(write_map(document), cache=cache)
    return load


@pytest.fixture
def level_of(load_map):
    """Load a document and convert it; keyword arguments override the config."""
    def convert_document(document, **overrides):
        tiled_map = load_map(document)
        return convert(tiled_map, ConversionConfig.from_map(tiled_map, **overrides))
    return convert_document


def chunked_layer(name, *chunks):
    layer = tile_layer(name, None, width=16, height=16, chunks=list(chunks))
    del layer["data"]
    return layer


def chunk(x, y, gid, size=16):
    return {"x": x, "y": y, "width": size, "height": size, "data": [gid] * (size * size)}


def objects_map(*objects, orientation="orthogonal", layer_name="Objects", **extra):
    return map_document(orientation=orientation,
                        layers=[object_layer(layer_name, list(objects), **extra)])


# =============================================================================
# TILE LAYERS
# =============================================================================

class TestTilePlacement:

    def test_finite_csv_layer(self, level_of):
        level = level_of(map_document())

        assert len(level.tile_layers) == 1
        ground = level.tile_layers[0]
        assert ground.z_order == 0
        assert len(ground.tiles) == 16
        assert ground.tiles[0].tile == TileCoord(0, 0)
        assert ground.tiles[-1].tile == TileCoord(3, 3)
        assert {t.tile for t in ground.tiles} == {TileCoord(x, y)
                                                  for x in range(4) for y in range(4)}
        assert all(t.gid == 1 and t.local_id == 0 and t.tileset == "ground"
                   for t in ground.tiles)
        assert level.diagnostics.is_clean

    def test_negative_chunk_origin_is_kept(self, level_of):
        document = map_document(width=16, height=16, infinite=True,
                                layers=[chunked_layer("Ground", chunk(-16, -16, 5))])
        level = level_of(document)

        tiles = level.tile_layers[0].tiles
        assert len(tiles) == 256
        xs = [t.tile.x for t in tiles]
        ys = [t.tile.y for t in tiles]
        assert (min(xs), min(ys)) == (-16, -16)
        assert (max(xs), max(ys)) == (-1, -1)
        assert all(t.local_id == 4 for t in tiles)
        assert level.metadata.tile_bounds == TileBounds(-16, -16, -1, -1)
        assert level.collision.bounds == TileBounds(-16, -16, -1, -1)

    def test_empty_cells_are_skipped(self, level_of):
        document = map_document(layers=[tile_layer("Ground", [0] * 15 + [3])])
        tiles = level_of(document).tile_layers[0].tiles
        assert [t.tile for t in tiles] == [TileCoord(3, 3)]

    def test_cells_holding_only_flags_are_empty(self, level_of):
        document = map_document(layers=[
            tile_layer("Ground", [FLIPPED_HORIZONTALLY_FLAG, FLIPPED_VERTICALLY_FLAG] + [1] * 14)])
        level = level_of(document)
        assert len(level.tile_layers[0].tiles) == 14
        assert level.unresolved_gid_count == 0

    def test_distant_chunks(self, level_of):
        document = map_document(width=16, height=16, infinite=True, layers=[
            chunked_layer("Walls", chunk(-1_000_000, -1_000_000, 1),
                          chunk(1_000_000, 1_000_000, 1)),
        ])
        level = level_of(document)
        grid = level.collision
        assert grid.bounds == TileBounds(-1_000_000, -1_000_000, 1_000_015, 1_000_015)
        assert grid.solid_count == 512
        assert grid.block_count == 2
        assert grid.is_solid(TileCoord(1_000_015, 1_000_015))
        assert grid.is_walkable(TileCoord(0, 0))
        assert level.tile_count == 512

    def test_flags_and_atlas(self, level_of):
        data = [0] * 16
        data[5] = 6 | FLIPPED_HORIZONTALLY_FLAG
        level = level_of(map_document(layers=[tile_layer("Ground", data)]))
        tile = level.tile_layers[0].tiles[0]
        assert tile.tile == TileCoord(1, 1)
        assert tile.gid == 6
        assert tile.local_id == 5
        assert tile.atlas == (1, 1)
        assert tile.flags == TileFlags(horizontal=True)

    def test_second_tileset(self, level_of):
        props = {"firstgid": 17, "name": "props", "tilewidth": 32, "tileheight": 32,
                 "tilecount": 4, "columns": 2, "tileoffset": {"x": 0, "y": -16}}
        document = map_document(layers=[tile_layer("Ground", [18] + [0] * 15)],
                                tilesets=[dict(GROUND_TILESET), props])
        tile = level_of(document).tile_layers[0].tiles[0]
        assert (tile.tileset, tile.firstgid, tile.local_id) == ("props", 17, 1)
        assert tile.offset == PixelPos(0.0, -16.0)

    @pytest.mark.parametrize("order,expected", [
        ("right-down", [(0, 0), (1, 0), (0, 1), (1, 1)]),
        ("right-up", [(0, 1), (1, 1), (0, 0), (1, 0)]),
        ("left-down", [(1, 0), (0, 0), (1, 1), (0, 1)]),
        ("left-up", [(1, 1), (0, 1), (1, 0), (0, 0)]),
    ])
    def test_render_order(self, level_of, order, expected):
        document = map_document(width=2, height=2, renderorder=order,
                                layers=[tile_layer("Ground", [1, 2, 3, 4], 2, 2)])
        tiles = level_of(document).tile_layers[0].tiles
        assert [tuple(t.tile) for t in tiles] == expected

    def test_render_order_indices(self):
        assert render_order_indices(3, 2, "left-up").tolist() == [5, 4, 3, 2, 1, 0]
        assert render_order_indices(3, 2, "right-down").tolist() == [0, 1, 2, 3, 4, 5]

    def test_unresolved_gid_is_not_fatal(self, level_of):
        document = map_document(layers=[tile_layer("Ground", [1] * 15 + [99])])
        level = level_of(document)

        assert len(level.tile_layers[0].tiles) == 15
        assert level.unresolved_gid_count == 1
        assert level.diagnostics.unresolved_gids == (
            UnresolvedGid("Ground", 99, "tile (3, 3)"),
        )

    def test_level_property(self, level_of):
        layer = tile_layer("Upper", [1] * 16,
                           properties=[{"name": "Z", "type": "string", "value": "2"}])
        assert level_of(map_document(layers=[layer])).tile_layers[0].level == 2


class TestLayerTraversal:

    def test_z_order_counts_tile_and_image_layers(self, level_of):
        document = map_document(layers=[
            tile_layer("Ground", [1] * 16),
            object_layer("Objects", []),
            {"type": "imagelayer", "id": 3, "name": "Sky", "image": "sky.png"},
            tile_layer("Top", [1] * 16, id=4),
        ])
        level = level_of(document)
        assert [(l.name, l.z_order) for l in level.tile_layers] == [("Ground", 0), ("Top", 2)]
        assert level.parallax_layers[0].z_order == 1

    def test_group_state_accumulates(self, level_of):
        inner = tile_layer("Inner", [1] * 16, offsetx=5, offsety=1, opacity=0.5,
                           parallaxx=0.5)
        group = {"type": "group", "id": 9, "name": "Group", "offsetx": 10, "offsety": 2,
                 "opacity": 0.5, "parallaxx": 0.5, "layers": [inner]}
        placement = level_of(map_document(layers=[group])).tile_layers[0]
        assert placement.offset == PixelPos(15.0, 3.0)
        assert placement.opacity == 0.25
        assert placement.parallax == (0.25, 1.0)

    def test_hidden_layers(self, level_of):
        document = map_document(layers=[
            tile_layer("Ground", [1] * 16),
            tile_layer("Secret", [1] * 16, id=2, visible=False),
        ])
        assert [l.name for l in level_of(document).tile_layers] == ["Ground"]

        included = level_of(document, include_hidden_layers=True).tile_layers
        assert [(l.name, l.visible) for l in included] == [("Ground", True), ("Secret", False)]

    def test_hidden_group_hides_children(self, level_of):
        group = {"type": "group", "id": 9, "name": "Group", "visible": False,
                 "layers": [tile_layer("Inner", [1] * 16)]}
        assert level_of(map_document(layers=[group])).tile_layers == ()


# =============================================================================
# OBJECTS
# =============================================================================

class TestObjectPositions:

    def test_isometric_position_is_passed_through(self, level_of):
        document = objects_map({"id": 1, "x": 464, "y": 432}, orientation="isometric")
        entity = level_of(document).entities[0]
        assert entity.position == PixelPos(464.0, 432.0)

    def test_isometric_ignores_flip_and_render_order(self, level_of):
        document = objects_map({"id": 1, "x": 464, "y": 432}, orientation="isometric")
        document["renderorder"] = "left-up"
        for flip_y in (True, False):
            entity = level_of(document, flip_y=flip_y).entities[0]
            assert entity.position == PixelPos(464.0, 432.0)

    def test_isometric_layer_offset(self, level_of):
        document = objects_map({"id": 1, "x": 464, "y": 432}, orientation="isometric",
                               offsetx=16, offsety=-8)
        assert level_of(document).entities[0].position == PixelPos(480.0, 424.0)

    def test_orthogonal_flip_y(self, level_of):
        document = objects_map({"id": 1, "x": 10, "y": 20})
        level = level_of(document)
        assert level.metadata.pixel_bottom == 128.0
        assert level.entities[0].position == PixelPos(10.0, 108.0)

    def test_orthogonal_without_flip(self, level_of):
        document = objects_map({"id": 1, "x": 10, "y": 20})
        assert level_of(document, flip_y=False).entities[0].position == PixelPos(10.0, 20.0)

    def test_layer_offset_applied_before_flip(self, level_of):
        document = objects_map({"id": 1, "x": 10, "y": 20}, offsetx=5, offsety=5)
        assert level_of(document).entities[0].position == PixelPos(15.0, 103.0)

    def test_tile_object_uses_tileset_offset(self, level_of):
        tileset = dict(GROUND_TILESET, tileoffset={"x": 4, "y": 8})
        document = map_document(
            layers=[object_layer("Objects", [{"id": 3, "x": 0, "y": 64, "gid": 1,
                                              "width": 32, "height": 32}])],
            tilesets=[tileset])
        entity = level_of(document, flip_y=False).entities[0]
        assert entity.shape == ObjectShape.TILE
        assert entity.gid == 1
        assert entity.position == PixelPos(4.0, 72.0)

    def test_tile_object_with_unknown_gid(self, level_of):
        document = objects_map({"id": 3, "x": 0, "y": 64, "gid": 500})
        level = level_of(document, flip_y=False)
        assert level.entities[0].position == PixelPos(0.0, 64.0)
        assert level.diagnostics.unresolved_gids == (UnresolvedGid("Objects", 500, "object 3"),)

    def test_object_gid_holding_only_flags(self, level_of):
        document = objects_map({"id": 3, "x": 10, "y": 20, "gid": FLIPPED_HORIZONTALLY_FLAG})
        level = level_of(document, flip_y=False)
        entity = level.entities[0]
        assert entity.shape == ObjectShape.RECTANGLE
        assert entity.gid == 0
        assert entity.position == PixelPos(10.0, 20.0)
        assert level.unresolved_gid_count == 0

    def test_infinite_map_mirror_axis(self, level_of):
        document = map_document(width=16, height=16, infinite=True, layers=[
            chunked_layer("Ground", chunk(-16, -16, 1), chunk(0, 0, 1)),
            object_layer("Objects", [{"id": 1, "x": 0, "y": -100}]),
        ])
        level = level_of(document)
        # Chunks reach row 15: (15 + 1) * 32
        assert level.metadata.pixel_bottom == 512.0
        assert level.entities[0].position == PixelPos(0.0, 612.0)

    def test_points_stay_relative(self, level_of):
        path = {"id": 1, "x": 32, "y": 32,
                "polyline": [{"x": 0, "y": 0}, {"x": 64, "y": 16}]}
        flipped = level_of(objects_map(path)).entities[0]
        assert flipped.points == (PixelPos(0.0, 0.0), PixelPos(64.0, -16.0))

        plain = level_of(objects_map(path), flip_y=False).entities[0]
        assert plain.points == (PixelPos(0.0, 0.0), PixelPos(64.0, 16.0))

        iso = level_of(objects_map(path, orientation="isometric")).entities[0]
        assert iso.points == (PixelPos(0.0, 0.0), PixelPos(64.0, 16.0))


class TestEntities:

    def test_placeholders(self, level_of):
        document = objects_map(
            {"id": 1, "type": "Guard", "x": 0, "y": 0},
            {"id": 2, "type": "Dragon", "x": 0, "y": 0},
            {"id": 3, "x": 0, "y": 0},
        )
        guard, dragon, blank = level_of(
            document, type_to_placeholder={"Guard": "Blueprints/Npc.json"}).entities

        assert (guard.placeholder, guard.placeholder_mapped) == ("Blueprints/Npc.json", True)
        assert (dragon.placeholder, dragon.placeholder_mapped) == ("Blueprints/Dragon.json",
                                                                   False)
        assert (blank.placeholder, blank.placeholder_mapped) == (DEFAULT_PLACEHOLDER, True)

    def test_unmapped_types_are_reported(self, level_of):
        document = objects_map({"id": 1, "type": "Dragon", "x": 0, "y": 0},
                               {"id": 2, "type": "Dragon", "x": 0, "y": 0},
                               {"id": 3, "type": "Bat", "x": 0, "y": 0})
        assert level_of(document).diagnostics.unmapped_types == ("Bat", "Dragon")

    def test_ids_and_default_names(self, level_of):
        document = objects_map(
            {"id": 1, "x": 0, "y": 0},
            {"id": 2, "x": 0, "y": 0, "polygon": [{"x": 0, "y": 0}, {"x": 8, "y": 0},
                                                   {"x": 8, "y": 8}]},
            {"id": 3, "x": 0, "y": 0, "polyline": [{"x": 0, "y": 0}, {"x": 8, "y": 0}]},
            {"id": 4, "name": "Boss", "x": 0, "y": 0},
        )
        entities = level_of(document).entities
        assert [(e.id, e.name, e.placeholder) for e in entities] == [
            ("entity_1", "Object 1", DEFAULT_PLACEHOLDER),
            ("sector_2", "Sector 2", SECTOR_PLACEHOLDER),
            ("patrol_3", "Patrol 3", PATROL_PLACEHOLDER),
            ("entity_4", "Boss", DEFAULT_PLACEHOLDER),
        ]

    def test_sector_layer(self, level_of):
        document = objects_map({"id": 4, "x": 0, "y": 0, "width": 64, "height": 64},
                               layer_name="Zone A")
        entity = level_of(document).entities[0]
        assert entity.category == LayerCategory.SECTOR
        assert entity.id == "sector_4"
        assert entity.placeholder == SECTOR_PLACEHOLDER

    def test_properties_are_read_only(self, level_of):
        document = objects_map({"id": 1, "x": 0, "y": 0, "properties": [
            {"name": "health", "type": "int", "value": 100}]})
        entity = level_of(document).entities[0]
        assert entity.properties["health"] == 100
        with pytest.raises(TypeError):
            entity.properties["health"] = 1


# =============================================================================
# IMAGE LAYERS
# =============================================================================

class TestParallax:

    def test_image_layer(self, level_of):
        sky = {"type": "imagelayer", "id": 3, "name": "Sky", "image": "sky.png",
               "parallaxx": 0.5, "parallaxy": 0.25, "repeatx": True,
               "opacity": 0.8, "tintcolor": "#80ff0000"}
        level = level_of(map_document(layers=[sky]), resource_base_path="assets/")
        layer = level.parallax_layers[0]
        assert layer.image_path == "assets/sky.png"
        assert (layer.scroll_factor_x, layer.scroll_factor_y) == (0.5, 0.25)
        assert layer.repeat_x and not layer.repeat_y
        assert layer.opacity == 0.8
        assert layer.tint == 0x80FF0000

    def test_nested_parallax_multiplies(self, level_of):
        sky = {"type": "imagelayer", "id": 3, "name": "Sky", "image": "sky.png",
               "parallaxx": 0.5}
        group = {"type": "group", "id": 2, "name": "Back", "parallaxx": 0.5, "layers": [sky]}
        layer = level_of(map_document(layers=[group])).parallax_layers[0]
        assert layer.scroll_factor_x == 0.25
        assert layer.image_path == "sky.png"

    def test_invalid_tint_is_a_warning(self, level_of):
        sky = {"type": "imagelayer", "id": 3, "name": "Sky", "image": "sky.png",
               "tintcolor": "#zzzzzz"}
        level = level_of(map_document(layers=[sky]))
        assert level.parallax_layers[0].tint is None
        assert len(level.diagnostics.warnings) == 1

    @pytest.mark.parametrize("color,expected", [
        ("#ff0000", 0xFFFF0000),
        ("80112233", 0x80112233),
        ("", None),
        (None, None),
    ])
    def test_parse_color(self, color, expected):
        assert parse_color(color) == expected


# =============================================================================
# COLLISION
# =============================================================================

class TestCollision:

    def test_collision_layer_marks_tiles(self, level_of):
        document = map_document(layers=[
            tile_layer("Ground", [1] * 16),
            tile_layer("Walls", [0] * 15 + [1], id=2),
        ])
        level = level_of(document)
        assert level.get_tile_layer("Walls").category == LayerCategory.COLLISION
        assert level.collision.solid_count == 1
        assert level.collision.is_solid(TileCoord(3, 3))
        assert level.collision.is_walkable(TileCoord(0, 0))

    def test_solid_tile_property(self, level_of):
        tileset = dict(GROUND_TILESET, tiles=[
            {"id": 1, "properties": [{"name": "solid", "type": "bool", "value": True}]}])
        document = map_document(layers=[tile_layer("Ground", [2, 1] + [0] * 14)],
                                tilesets=[tileset])
        level = level_of(document)
        assert level.collision.solid_count == 1
        assert level.collision.is_solid(TileCoord(0, 0))

    def test_collision_rectangles(self, level_of):
        document = objects_map({"id": 1, "x": 32, "y": 32, "width": 64, "height": 32},
                               layer_name="Collision")
        grid = level_of(document).collision
        assert grid.solid_count == 2
        assert grid.is_solid(TileCoord(1, 1))
        assert grid.is_solid(TileCoord(2, 1))

    def test_isometric_rectangles_do_not_mark(self, level_of):
        document = objects_map({"id": 1, "x": 32, "y": 32, "width": 64, "height": 32},
                               layer_name="Collision", orientation="isometric")
        assert level_of(document).collision.solid_count == 0

    def test_grid_is_read_only(self, level_of):
        grid = level_of(map_document()).collision
        with pytest.raises(ValueError):
            grid.set_flags(TileCoord(0, 0), 1)


# =============================================================================
# CONVERTER BEHAVIOUR
# =============================================================================

class TestConverter:

    def test_repeatable(self, load_map):
        document = map_document(layers=[
            tile_layer("Ground", [1] * 15 + [99]),
            object_layer("Objects", [{"id": 1, "type": "Dragon", "x": 1, "y": 2}]),
        ])
        tiled_map = load_map(document)
        converter = LevelConverter()
        first = converter.convert(tiled_map)
        second = converter.convert(tiled_map)
        assert first == second
        assert second.unresolved_gid_count == 1
        assert second.diagnostics.unmapped_types == ("Dragon",)

    def test_concurrent_conversions(self, load_map):
        tiled_map = load_map(map_document())
        converter = LevelConverter()
        with ThreadPoolExecutor(max_workers=4) as pool:
            levels = list(pool.map(lambda _: converter.convert(tiled_map), range(8)))
        assert all(level == levels[0] for level in levels)

    def test_map_is_not_modified(self, load_map):
        tiled_map = load_map(map_document())
        before = tiled_map.layers[0].data.copy()
        convert(tiled_map, ConversionConfig(flip_y=False))
        assert np.array_equal(tiled_map.layers[0].data, before)

    def test_default_config_follows_map(self, load_map):
        tiled_map = load_map(map_document(tilewidth=16, tileheight=8))
        metadata = convert(tiled_map).metadata
        assert (metadata.tile_width, metadata.tile_height) == (16, 8)
        assert metadata.orientation == "orthogonal"


class TestGidResolver:

    @staticmethod
    def tileset(firstgid, tilecount, name):
        return Tileset(firstgid=firstgid, name=name, tilewidth=32, tileheight=32,
                       tilecount=tilecount, columns=4)

    def test_ranges(self):
        resolver = GidResolver([self.tileset(1, 16, "a"), self.tileset(17, 8, "b")])
        assert resolver.find_index(0) is None
        assert resolver.find_index(1) == 0
        assert resolver.find_index(16) == 0
        assert resolver.find_index(17) == 1
        assert resolver.find_index(25) is None

    def test_unknown_tilecount_reaches_next_tileset(self):
        resolver = GidResolver([self.tileset(1, 0, "a"), self.tileset(50, 0, "b")])
        assert resolver.find_index(49) == 0
        assert resolver.find_index(50) == 1
        assert resolver.find_index(100000) == 1

    def test_resolve_strips_flags(self):
        resolver = GidResolver([self.tileset(1, 16, "a")])
        resolved = resolver.resolve(6 | FLIPPED_HORIZONTALLY_FLAG)
        assert (resolved.gid, resolved.local_id) == (6, 5)
        assert (resolved.atlas_x, resolved.atlas_y) == (1, 1)
        assert resolved.flags.horizontal
        assert resolver.resolve(0) is None

    def test_lookup_array(self):
        resolver = GidResolver([self.tileset(1, 16, "a"), self.tileset(17, 8, "b")])
        ids = np.array([0, 1, 17 | FLIPPED_HORIZONTALLY_FLAG, 30], dtype=np.uint32)
        assert resolver.lookup_array(ids).tolist() == [-1, 0, 1, -1]

    def test_no_tilesets(self):
        resolver = GidResolver([])
        assert resolver.resolve(1) is None
        assert resolver.lookup_array(np.array([1, 2], dtype=np.uint32)).tolist() == [-1, -1]


@pytest.mark.parametrize("name,expected", [
    ("Collision", LayerCategory.COLLISION),
    ("outer WALLS", LayerCategory.COLLISION),
    ("Sector 1", LayerCategory.SECTOR),
    ("zone_b", LayerCategory.SECTOR),
    ("Enemies", LayerCategory.ENTITY),
])
def test_classify_layer(name, expected):
    assert classify_layer(name, ConversionConfig()) == expected
