#!/usr/bin/env python3

"""
Tiled map inspector

Loads a map, converts it and prints a summary of the resulting level.

Usage:
    python -m tmj_loader <map.tmj|map.tmx> [--mapping types.json] [--no-flip-y]
                         [--analyze] [--verbose]

Exit code 1 on any load/conversion error (message on stderr).
"""

import argparse
import logging
import sys
from collections import Counter
from typing import List, Optional

from .analysis import LevelManifest, analyze
from .config import ConversionConfig
from .converter import LevelConverter
from .errors import TiledError
from .level import LevelDefinition
from .loader import load_from_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m tmj_loader",
        description="Load a Tiled map and print a summary of the converted level.",
    )
    parser.add_argument("map", help="map file (.tmj/.json or .tmx)")
    parser.add_argument("--mapping", metavar="FILE",
                        help="JSON file mapping object types to placeholders")
    parser.add_argument("--no-flip-y", action="store_true",
                        help="keep Tiled's top-down Y axis for orthogonal objects")
    parser.add_argument("--analyze", action="store_true",
                        help="also list images, object types and object links")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="debug logging")
    return parser


def format_summary(level: LevelDefinition) -> str:
    meta = level.metadata
    lines = [
        f"Map: {meta.width}x{meta.height} tiles of {meta.tile_width}x{meta.tile_height} px, "
        f"{meta.orientation}, {meta.render_order}" + (" (infinite)" if meta.infinite else ""),
    ]
    if meta.tile_bounds is not None:
        b = meta.tile_bounds
        lines.append(f"Bounds: ({b.min_x}, {b.min_y}) .. ({b.max_x}, {b.max_y})")

    lines.append(f"Tile layers: {len(level.tile_layers)}")
    for layer in level.tile_layers:
        lines.append(f"  [{layer.z_order}] {layer.name}: {len(layer.tiles)} tiles "
                     f"({layer.category.value}, level {layer.level})")

    categories = Counter(entity.category.value for entity in level.entities)
    detail = ", ".join(f"{count} {name}" for name, count in sorted(categories.items()))
    lines.append(f"Entities: {len(level.entities)}" + (f" ({detail})" if detail else ""))
    lines.append(f"Parallax layers: {len(level.parallax_layers)}")
    lines.append(f"Solid cells: {level.collision.solid_count}")

    diagnostics = level.diagnostics
    lines.append(f"Unresolved gids: {level.unresolved_gid_count}")
    if diagnostics.unmapped_types:
        lines.append(f"Unmapped types: {', '.join(diagnostics.unmapped_types)}")
    for warning in diagnostics.warnings:
        lines.append(f"Warning: {warning}")
    return "\n".join(lines)


def format_manifest(manifest: LevelManifest) -> str:
    visual, census = manifest.visual, manifest.census
    lines = [f"Images: {visual.image_count}"]
    lines.extend(f"  {path}" for path in visual.image_paths)
    lines.append(f"Objects: {census.total}")
    lines.extend(f"  {type_name}: {count}" for type_name, count in census.type_counts.items())
    if census.template_paths:
        lines.append(f"Templates: {', '.join(census.template_paths)}")
    lines.append(f"References: {len(manifest.references)}")
    for ref in manifest.references:
        target = ref.target_id if ref.target_id is not None else ref.target_name
        status = "" if ref.resolved else " (missing)"
        lines.append(f"  {ref.source_id}.{ref.property_name} -> {target}{status}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        tiled_map = load_from_file(args.map)
        config = ConversionConfig.from_map(tiled_map, flip_y=not args.no_flip_y)
        if args.mapping:
            config = config.with_mapping_file(args.mapping)
        level = LevelConverter().convert(tiled_map, config)
    except TiledError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(format_summary(level))
    if args.analyze:
        print(format_manifest(analyze(tiled_map)))
    return 0


if __name__ == "__main__":
    sys.exit(main())
