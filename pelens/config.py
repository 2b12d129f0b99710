from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field


class Limits(BaseModel):
    max_file_size_bytes: int = 200_000_000

    max_sections: int = 96
    max_import_modules: int = 256
    max_thunks_per_module: int = 4096
    max_export_functions: int = 65536
    max_export_names: int = 65536
    max_name_len: int = 512

    # stdcall heuristic bounds
    stdcall_scan_window: int = 2048
    export_range_fallback: int = 4096


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    limits: Limits = Limits()

    resolve_ordinals: bool = True
    # Searched after the analyzed image's own directory
    dependency_dirs: List[str] = Field(default_factory=list)


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return AppConfig.model_validate(data or {})


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()
