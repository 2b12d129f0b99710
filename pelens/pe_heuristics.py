from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional

from pelens.exports import ExportEntry
from pelens.pe import ARCH_X86

RET_IMM16 = 0xC2

# stdcall pops whole 4-byte stack slots; larger values are almost always
# operand bytes that happen to contain 0xC2.
STDCALL_MAX_ARG_BYTES = 128
STDCALL_SLOT = 4


def guess_stdcall_arg_bytes(
    data: bytes,
    start: Optional[int],
    end: Optional[int],
    *,
    max_scan: int = 2048,
) -> Optional[int]:
    """
    Guess how many argument bytes an x86 function pops by finding the last
    ``ret imm16`` (C2 iw) in ``[start, end)``, capped to ``max_scan`` bytes.
    Best effort only: no disassembly is done, so the result is a hint.
    """
    if start is None or end is None:
        return None
    if start < 0 or start >= len(data):
        return None
    stop = min(len(data), max(start, end), start + max_scan)

    last = None
    i = data.find(RET_IMM16, start, stop)
    while i != -1 and i + 2 < stop:
        last = data[i + 1] | (data[i + 2] << 8)
        i = data.find(RET_IMM16, i + 1, stop)

    if last is None:
        return None
    if last > STDCALL_MAX_ARG_BYTES or last % STDCALL_SLOT != 0:
        return None
    return last


def annotate_stdcall(
    data: bytes,
    entries: Iterable[ExportEntry],
    *,
    architecture: str,
    max_scan: int = 2048,
) -> List[ExportEntry]:
    """Attach stdcall argument-byte guesses to exports; x86 images only."""
    entries = list(entries)
    if architecture != ARCH_X86:
        return entries
    out: List[ExportEntry] = []
    for e in entries:
        if e.forwarder is not None:
            out.append(e)
            continue
        guess = guess_stdcall_arg_bytes(data, e.file_offset, e.approximate_end_offset, max_scan=max_scan)
        out.append(replace(e, stdcall_arg_bytes=guess))
    return out
