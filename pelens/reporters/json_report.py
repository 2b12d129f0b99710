from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict


def dumps_bundle(bundle: Dict[str, Any]) -> str:
    return json.dumps(bundle, indent=2, ensure_ascii=False)


def write_bundle_json(path: Path, bundle: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_bundle(bundle) + "\n", encoding="utf-8")
