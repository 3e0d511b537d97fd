"""
Conversion settings

ConversionConfig is frozen: one value is supplied per conversion and
nothing in the converter changes it. Use ConversionConfig.from_map() to
take orientation, tile size and render order from a loaded map, and
dataclasses.replace() / with_mapping_file() to derive variants.

Placeholder mapping files map object types to the blueprint an external
instantiation step should use. Two layouts are accepted:

    {"Player": "Blueprints/Player.json", "Guard": "Blueprints/Npc.json"}

    {"mapping": {"Player": "Blueprints/Player.json"},
     "default": "Blueprints/Generic.json"}
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple, Union

import orjson

from .errors import MapIOError, MapParseError

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER = "Blueprints/DefaultEntity.json"
DEFAULT_COLLISION_PATTERNS = ("collision", "walls")
DEFAULT_SECTOR_PATTERNS = ("sector", "zone")
UNMAPPED_PLACEHOLDER = "Blueprints/{type}.json"
SECTOR_PLACEHOLDER = "Blueprints/Sector.json"
PATROL_PLACEHOLDER = "Blueprints/PatrolPath.json"


@dataclass(frozen=True)
class ConversionConfig:
    map_orientation: str = "orthogonal"
    tile_width: int = 32
    tile_height: int = 32
    render_order: str = "right-down"
    flip_y: bool = True                               # Mirror orthogonal objects vertically
    type_to_placeholder: Mapping[str, str] = field(default_factory=dict)
    default_placeholder: str = DEFAULT_PLACEHOLDER    # For objects without a type
    collision_layer_patterns: Tuple[str, ...] = DEFAULT_COLLISION_PATTERNS
    sector_layer_patterns: Tuple[str, ...] = DEFAULT_SECTOR_PATTERNS
    resource_base_path: str = ""                      # Prefix for image layer paths
    include_hidden_layers: bool = False

    def __post_init__(self):
        # Freeze the containers too
        object.__setattr__(self, 'type_to_placeholder',
                           MappingProxyType(dict(self.type_to_placeholder)))
        object.__setattr__(self, 'collision_layer_patterns',
                           tuple(self.collision_layer_patterns))
        object.__setattr__(self, 'sector_layer_patterns',
                           tuple(self.sector_layer_patterns))

    @classmethod
    def from_map(cls, tiled_map, **overrides) -> 'ConversionConfig':
        """Config matching a loaded map; keyword arguments override fields."""
        values = dict(
            map_orientation=tiled_map.orientation,
            tile_width=tiled_map.tilewidth,
            tile_height=tiled_map.tileheight,
            render_order=tiled_map.renderorder,
        )
        values.update(overrides)
        return cls(**values)

    def with_mapping_file(self, path: Union[str, Path]) -> 'ConversionConfig':
        """Copy with a mapping file merged over the current mapping."""
        mapping, default = load_placeholder_mapping(path)
        merged = dict(self.type_to_placeholder)
        merged.update(mapping)
        return dataclasses.replace(
            self,
            type_to_placeholder=merged,
            default_placeholder=default or self.default_placeholder,
        )

    @property
    def is_isometric(self) -> bool:
        return self.map_orientation == "isometric"

    def placeholder_for(self, object_type: str) -> Tuple[str, bool]:
        """
        (placeholder, mapped) for an object type.

        Mapped types use their entry; an empty type gets the default
        placeholder; anything else falls back to Blueprints/<type>.json
        and reports mapped=False.
        """
        if object_type in self.type_to_placeholder:
            return self.type_to_placeholder[object_type], True
        if not object_type:
            return self.default_placeholder, True
        return UNMAPPED_PLACEHOLDER.format(type=object_type), False


def load_placeholder_mapping(path: Union[str, Path]) -> Tuple[Dict[str, str], Optional[str]]:
    """
    Read a placeholder mapping file.

    Returns:
    --------
    (mapping, default) : default is None for the flat layout
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise MapIOError(path, e.strerror or str(e)) from e

    try:
        document = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MapParseError(f"malformed JSON: {e}", source=str(path)) from e
    if not isinstance(document, dict):
        raise MapParseError("root is not an object", field="mapping", source=str(path))

    default = None
    if isinstance(document.get('mapping'), dict):
        default = document.get('default')
        if default is not None and not isinstance(default, str):
            raise MapParseError("expected a string", field="default", source=str(path))
        document = document['mapping']

    mapping = {}
    for object_type, placeholder in document.items():
        if not isinstance(placeholder, str):
            raise MapParseError(f"expected a string, got {placeholder!r}",
                                field=f"mapping.{object_type}", source=str(path))
        mapping[object_type] = placeholder

    logger.debug("Loaded %d placeholder mappings from %s", len(mapping), path)
    return mapping, default
