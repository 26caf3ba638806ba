#!/usr/bin/env python3
"""
Command line front-end for dose-field export and volume files.

Usage example
-------------
gate-dose export scene.yaml
gate-dose info simulation-Dose.mhd
gate-dose pack simulation-Dose.mhd volume.json
gate-dose unpack volume.json restored.mhd
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import export_settings_from_config, load_config
from .dose_field import export_dose_field
from .grid_utils import header_summary
from .metaimage import read_metaimage, write_metaimage
from .persistence import VolumeParams, decode_volume, encode_volume

logger = logging.getLogger(__name__)


def cmd_export(args) -> int:
    settings = export_settings_from_config(load_config(Path(args.config)))
    output_dir = Path(args.output_dir) if args.output_dir else settings.output_dir
    workers = args.workers or settings.workers
    mhd_path, raw_path = export_dose_field(
        settings.grid,
        settings.sources,
        output_dir=output_dir,
        basename=settings.basename,
        workers=workers,
    )
    print(f"Wrote {mhd_path} and {raw_path}")
    return 0


def cmd_info(args) -> int:
    result = read_metaimage(Path(args.mhd))
    print(header_summary(result.grid.header, result.grid.values))
    for msg in result.warnings:
        print(f"WARNING: {msg}")
    return 0


def cmd_pack(args) -> int:
    result = read_metaimage(Path(args.mhd))
    params = VolumeParams.defaults_for(result.grid)
    if args.min_threshold is not None:
        params.min_threshold = args.min_threshold
    if args.max_threshold is not None:
        params.max_threshold = args.max_threshold
    record = encode_volume(result.grid, params)
    Path(args.output).write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
    print(f"Packed {args.mhd} -> {args.output}")
    return 0


def cmd_unpack(args) -> int:
    record = json.loads(Path(args.record).read_text(encoding="utf-8"))
    restored = decode_volume(record)
    mhd_path, raw_path = write_metaimage(restored.grid, Path(args.output))
    print(f"Wrote {mhd_path} and {raw_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="gate-dose",
        description="Export synthetic dose fields and convert MetaImage dose volumes",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("export", help="Evaluate sources from a YAML/JSON config and write .mhd/.raw")
    p.add_argument("config")
    p.add_argument("--output-dir", default=None, help="Overrides output.directory")
    p.add_argument("--workers", type=int, default=None, help="Overrides workers")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("info", help="Print header and value range of a .mhd volume")
    p.add_argument("mhd")
    p.set_defaults(func=cmd_info)

    p = sub.add_parser("pack", help="Store a .mhd volume as a JSON persistence record")
    p.add_argument("mhd")
    p.add_argument("output")
    p.add_argument("--min-threshold", type=float, default=None)
    p.add_argument("--max-threshold", type=float, default=None)
    p.set_defaults(func=cmd_pack)

    p = sub.add_parser("unpack", help="Write a JSON persistence record back as .mhd/.raw")
    p.add_argument("record")
    p.add_argument("output", help="Output .mhd path")
    p.set_defaults(func=cmd_unpack)
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    try:
        return args.func(args)
    except (ValueError, OSError) as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
