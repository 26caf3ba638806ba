"""
Dose Field Export - Complete Workflow

This example walks through the dose-field pipeline end to end:
1. Load the export grid and sources from a YAML config
2. Evaluate the superposed dose on the lattice
3. Write the .mhd/.raw pair for the simulation
4. Read it back and derive the displayed voxel subset
5. Save a scene file with the volume embedded, then restore it

Run from the repository root:
    python examples/export_dose_field.py examples/scene.yaml --output-dir out
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from GateDose.config import export_settings_from_config, load_config
from GateDose.dose_field import export_dose_field
from GateDose.grid_utils import derive_visible_subset, header_summary
from GateDose.metaimage import read_metaimage
from GateDose.persistence import VolumeParams, deserialize_scene, serialize_scene


def run_workflow(config_path: str, output_dir: str = None):
    """
    Export a dose field and round-trip it through a scene file.

    Parameters
    ----------
    config_path : str
        YAML/JSON export config
    output_dir : str, optional
        Overrides output.directory from the config
    """
    print("=" * 70)
    print("DOSE FIELD EXPORT")
    print("=" * 70)

    # ========== 1. Config ==========
    print("\n[1/5] Loading config...")
    settings = export_settings_from_config(load_config(config_path))
    out_dir = Path(output_dir) if output_dir else settings.output_dir
    print(f"  Domain: {settings.grid.domain_size}, voxels: {settings.grid.voxel_count}")
    print(f"  Spacing: {settings.grid.spacing}")
    for i, src in enumerate(settings.sources):
        print(f"  Source {i}: pos={src.position}, r={src.radius}, {src.falloff.value}")

    # ========== 2-3. Evaluate and write ==========
    print("\n[2/5] Evaluating dose field...")
    mhd_path, raw_path = export_dose_field(
        settings.grid,
        settings.sources,
        output_dir=out_dir,
        basename=settings.basename,
        workers=settings.workers,
    )
    print(f"\n[3/5] Wrote {mhd_path} and {raw_path}")

    # ========== 4. Read back ==========
    print("\n[4/5] Reading export back...")
    result = read_metaimage(mhd_path)
    grid = result.grid
    print(header_summary(grid.header, grid.values))

    params = VolumeParams.defaults_for(grid)
    positions, colors = derive_visible_subset(grid, params.min_threshold, params.max_threshold)
    print(f"  Visible voxels in [{params.min_threshold:.2f}, {params.max_threshold:.2f}]: "
          f"{len(positions)} of {len(grid)}")

    # ========== 5. Scene file ==========
    print("\n[5/5] Saving scene...")
    scene_path = out_dir / "scene.json"
    scene_path.write_text(
        serialize_scene(settings.grid, settings.sources, volumes=[(grid, params)]),
        encoding="utf-8",
    )
    doc = deserialize_scene(scene_path.read_text(encoding="utf-8"))
    print(f"  {scene_path}: {len(doc.sources)} source(s), {len(doc.volumes)} volume(s)")

    print("\n" + "=" * 70)
    print("DONE")
    print("=" * 70)
    return doc


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    ap = argparse.ArgumentParser(description="Dose field export walkthrough")
    ap.add_argument("config", nargs="?", default=os.path.join(os.path.dirname(__file__), "scene.yaml"))
    ap.add_argument("--output-dir", default=None)
    args = ap.parse_args()

    run_workflow(args.config, args.output_dir)
