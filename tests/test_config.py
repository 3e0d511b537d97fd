"""ConversionConfig and placeholder mapping files."""

import dataclasses

import pytest

from conftest import map_document
from tmj_loader.config import DEFAULT_PLACEHOLDER, ConversionConfig, load_placeholder_mapping
from tmj_loader.errors import MapIOError, MapParseError
from tmj_loader.loader import load_from_file


def test_frozen():
    config = ConversionConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.flip_y = False
    with pytest.raises(TypeError):
        config.type_to_placeholder["Player"] = "x.json"


def test_caller_mapping_is_copied():
    mapping = {"Player": "Blueprints/Player.json"}
    config = ConversionConfig(type_to_placeholder=mapping)
    mapping["Player"] = "changed"
    assert config.type_to_placeholder["Player"] == "Blueprints/Player.json"


def test_from_map(write_map, cache):
    tiled_map = load_from_file(write_map(map_document(
        orientation="isometric", renderorder="left-up", tilewidth=64, tileheight=32)),
        cache=cache)
    config = ConversionConfig.from_map(tiled_map, flip_y=False)
    assert config.map_orientation == "isometric"
    assert config.is_isometric
    assert config.render_order == "left-up"
    assert (config.tile_width, config.tile_height) == (64, 32)
    assert config.flip_y is False


class TestPlaceholderFor:

    def test_mapped(self):
        config = ConversionConfig(type_to_placeholder={"Guard": "Blueprints/Npc.json"})
        assert config.placeholder_for("Guard") == ("Blueprints/Npc.json", True)

    def test_empty_type_uses_default(self):
        assert ConversionConfig().placeholder_for("") == (DEFAULT_PLACEHOLDER, True)

    def test_unmapped_type(self):
        assert ConversionConfig().placeholder_for("Chest") == ("Blueprints/Chest.json", False)


class TestMappingFiles:

    def test_flat_layout(self, write_file):
        path = write_file("types.json", {"Player": "Blueprints/Player.json"})
        assert load_placeholder_mapping(path) == ({"Player": "Blueprints/Player.json"}, None)

    def test_nested_layout(self, write_file):
        path = write_file("types.json", {"mapping": {"Guard": "Blueprints/Npc.json"},
                                         "default": "Blueprints/Generic.json"})
        mapping, default = load_placeholder_mapping(path)
        assert mapping == {"Guard": "Blueprints/Npc.json"}
        assert default == "Blueprints/Generic.json"

    def test_with_mapping_file_merges(self, write_file):
        path = write_file("types.json", {"mapping": {"Guard": "Blueprints/Npc.json"},
                                         "default": "Blueprints/Generic.json"})
        base = ConversionConfig(type_to_placeholder={"Player": "Blueprints/Player.json"})
        config = base.with_mapping_file(path)
        assert dict(config.type_to_placeholder) == {"Player": "Blueprints/Player.json",
                                                   "Guard": "Blueprints/Npc.json"}
        assert config.default_placeholder == "Blueprints/Generic.json"
        assert base.default_placeholder == DEFAULT_PLACEHOLDER

    def test_missing_file(self, tmp_path):
        with pytest.raises(MapIOError):
            load_placeholder_mapping(tmp_path / "types.json")

    @pytest.mark.parametrize("content", ["[1, 2]", '{"Player": 3}', "{oops"])
    def test_invalid_content(self, write_file, content):
        with pytest.raises(MapParseError):
            load_placeholder_mapping(write_file("types.json", content))
