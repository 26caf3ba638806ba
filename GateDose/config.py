import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from .dose_field import DoseSource
from .grid_utils import GridConfig, as_triple

DEFAULT_DOMAIN_SIZE = (4000.0, 3000.0, 4000.0)
DEFAULT_VOXEL_COUNT = (80, 60, 80)
DEFAULT_OFFSET = (-2000.0, 0.0, -2000.0)
DEFAULT_BASENAME = "simulation-Dose"


@dataclass
class ExportSettings:
    grid: GridConfig
    sources: List[DoseSource] = field(default_factory=list)
    output_dir: Path = Path(".")
    basename: str = DEFAULT_BASENAME
    workers: int = 1


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.safe_load(f) or {}
        return json.load(f)


def _triple(section: Dict[str, Any], key: str, default, cast) -> tuple:
    raw = section.get(key, default)
    if not isinstance(raw, (list, tuple)) or len(raw) != 3:
        raise ValueError(f"grid.{key} must be a list of 3 numbers, got {raw!r}")
    return as_triple(raw, f"grid.{key}", cast)


def export_settings_from_config(cfg: Dict[str, Any]) -> ExportSettings:
    grid_cfg = cfg.get("grid") or {}
    grid = GridConfig(
        domain_size=_triple(grid_cfg, "domain_size", DEFAULT_DOMAIN_SIZE, float),
        voxel_count=_triple(grid_cfg, "voxel_count", DEFAULT_VOXEL_COUNT, int),
        offset=_triple(grid_cfg, "offset", DEFAULT_OFFSET, float),
    )

    sources = []
    for i, src in enumerate(cfg.get("sources") or []):
        if not isinstance(src, dict):
            raise ValueError(f"sources[{i}] must be a mapping, got {src!r}")
        try:
            sources.append(DoseSource.from_dict(src))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"sources[{i}]: {exc}") from exc

    output_cfg = cfg.get("output") or {}
    workers = int(cfg.get("workers", 1))
    if workers < 1:
        raise ValueError(f"workers must be >= 1, got {workers}")

    return ExportSettings(
        grid=grid,
        sources=sources,
        output_dir=Path(output_cfg.get("directory", ".")),
        basename=str(output_cfg.get("basename", DEFAULT_BASENAME)),
        workers=workers,
    )
