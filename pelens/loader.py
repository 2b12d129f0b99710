from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional


class DirectoryLoader:
    """
    ``load_file`` capability over a list of directories.

    Module names are matched case-insensitively, the way the Windows loader
    treats them. Results (including misses) are memoized for the lifetime of
    the instance.
    """

    def __init__(self, directories: Iterable[Path], *, max_bytes: int = 200_000_000):
        self.directories: List[Path] = [Path(d) for d in directories]
        self.max_bytes = max_bytes
        self._cache: Dict[str, Optional[bytes]] = {}

    @classmethod
    def for_image(cls, image_path: Path, extra_dirs: Iterable[str] = (), **kwargs) -> "DirectoryLoader":
        dirs = [Path(image_path).expanduser().resolve().parent]
        dirs.extend(Path(d).expanduser() for d in extra_dirs)
        return cls(dirs, **kwargs)

    def find(self, module_name: str) -> Optional[Path]:
        # Only bare file names; import tables never legitimately carry paths.
        name = Path(module_name).name
        if not name or name != module_name:
            return None
        wanted = name.lower()
        for d in self.directories:
            exact = d / name
            if exact.is_file():
                return exact
            if not d.is_dir():
                continue
            for p in sorted(d.iterdir()):
                if p.name.lower() == wanted and p.is_file():
                    return p
        return None

    def __call__(self, module_name: str) -> Optional[bytes]:
        key = module_name.lower()
        if key in self._cache:
            return self._cache[key]

        data = None
        p = self.find(module_name)
        if p is not None:
            try:
                if p.stat().st_size <= self.max_bytes:
                    data = p.read_bytes()
            except OSError:
                data = None
        self._cache[key] = data
        return data
