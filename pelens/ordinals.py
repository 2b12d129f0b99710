from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from pelens.errors import PeFormatError
from pelens.exports import parse_exports
from pelens.imports import ImportedModule
from pelens.logging_config import log_debug
from pelens.pe import read_pe_image

# Returns the raw bytes of a dependency module, or None when it cannot be found.
LoadFile = Callable[[str], Optional[bytes]]


class OrdinalResolver:
    """
    Resolves ordinal-only imports against the export table of the declaring
    module. Dependency tables are memoized per resolver instance, so one
    resolver should serve exactly one analysis.
    """

    def __init__(self, load_file: LoadFile, *, max_sections: int = 96, max_name_len: int = 512):
        self._load_file = load_file
        self._max_sections = max_sections
        self._max_name_len = max_name_len
        self._maps: Dict[str, Optional[Mapping[int, Optional[str]]]] = {}

    def ordinal_map(self, dll_name: str) -> Optional[Mapping[int, Optional[str]]]:
        key = dll_name.lower()
        if key not in self._maps:
            self._maps[key] = self._load_ordinal_map(dll_name)
        return self._maps[key]

    def _load_ordinal_map(self, dll_name: str) -> Optional[Mapping[int, Optional[str]]]:
        try:
            data = self._load_file(dll_name)
        except Exception as e:
            log_debug(f"ordinals: loading {dll_name} failed: {type(e).__name__}: {e}")
            return None
        if not data:
            log_debug(f"ordinals: {dll_name} not found")
            return None

        try:
            image, _ = read_pe_image(data, max_sections=self._max_sections)
        except PeFormatError as e:
            log_debug(f"ordinals: {dll_name} is not parsable: {e}")
            return None

        table, _ = parse_exports(image, max_name_len=self._max_name_len)
        return table.ordinal_map

    def resolve(self, dll_name: str, ordinal: int) -> Optional[str]:
        m = self.ordinal_map(dll_name)
        if m is None:
            return None
        return m.get(ordinal)

    def resolve_module(self, module: ImportedModule) -> ImportedModule:
        if not any(s.is_ordinal and s.resolved_name is None for s in module.symbols):
            return module
        symbols = tuple(
            replace(s, resolved_name=self.resolve(module.dll_name, s.ordinal))
            if s.is_ordinal and s.ordinal is not None and s.resolved_name is None
            else s
            for s in module.symbols
        )
        return replace(module, symbols=symbols)


def resolve_ordinal_imports(
    modules: Iterable[ImportedModule],
    load_file: Optional[LoadFile],
    **kwargs,
) -> List[ImportedModule]:
    """Never raises: unresolvable ordinals are returned unchanged."""
    modules = list(modules)
    if load_file is None:
        return modules
    resolver = OrdinalResolver(load_file, **kwargs)
    return [resolver.resolve_module(m) for m in modules]
