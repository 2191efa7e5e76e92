#!/usr/bin/env python3
"""
symbols.py

Symbol table for kern-profile.

Responsibilities:
  - Read raw (address, size, name) entries from the ELF symbol section
    (.symtab) using pyelftools.
  - Demangle raw linker names for display (rust-demangler; plain C names
    are kept as they are).
  - Build a sorted interval index and answer "which symbol contains this
    address" with a binary search.

Notes:
  - Ranges are half-open: [start, start + size).
  - Ranges are expected not to overlap. Overlaps are reported when the
    table is built. Inside an overlap a lookup may return either symbol,
    or none at all when the search lands on a nested range that ends
    before the address.
"""

from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection
from rust_demangler import demangle as rust_demangle

from kern_profile.errors import ElfFormatError


LOG = logging.getLogger("symbols")

RawSymbol = Tuple[int, int, Union[str, bytes]]


# ---------------------------------------------------------------------------
# Demangling
# ---------------------------------------------------------------------------

# Legacy Rust symbols end with a "::h<16 hex digits>" disambiguator.
_RUST_HASH_RE = re.compile(r"::h[0-9a-f]{16}$")

_MANGLED_PREFIXES = ("_ZN", "_R")


def demangle_name(raw_name: Union[str, bytes]) -> str:
    """
    Turn a raw linker symbol name into a display name.

    Names that are not mangled Rust symbols (or that the demangler rejects)
    are returned unchanged.
    """
    if isinstance(raw_name, bytes):
        raw_name = raw_name.decode("utf-8", errors="replace")

    if not raw_name.startswith(_MANGLED_PREFIXES):
        return raw_name

    try:
        name = rust_demangle(raw_name)
    except Exception as e:
        LOG.debug("Cannot demangle %s: %s", raw_name, e)
        return raw_name

    return _RUST_HASH_RE.sub("", name)


# ---------------------------------------------------------------------------
# ELF reading
# ---------------------------------------------------------------------------

def read_symtab_entries(elf: ELFFile) -> List[RawSymbol]:
    """
    Collect raw entries from the SHT_SYMTAB section of an opened ELF.

    Raises ElfFormatError if the ELF has no symbol table at all. An empty
    symbol table is fine and yields an empty list.
    """
    for section in elf.iter_sections():
        if not isinstance(section, SymbolTableSection):
            continue
        if section["sh_type"] != "SHT_SYMTAB":
            # .dynsym only lists exported symbols; not what we want.
            continue
        return [
            (sym["st_value"], sym["st_size"], sym.name)
            for sym in section.iter_symbols()
        ]

    raise ElfFormatError("ELF does not have a symbol table")


def load_elf_symbols(path: Path) -> List[RawSymbol]:
    """
    Open an ELF file and return its raw symbol entries.

    Any I/O or parse failure is reported as ElfFormatError.
    """
    LOG.info("Reading ELF symbols: %s", path)
    try:
        with path.open("rb") as f:
            elf = ELFFile(f)
            entries = read_symtab_entries(elf)
    except ElfFormatError:
        raise
    except (OSError, ELFError) as e:
        raise ElfFormatError(f"Could not read ELF {path}: {e}") from e

    LOG.info("Read %d raw symbols from %s", len(entries), path)
    return entries


# ---------------------------------------------------------------------------
# Symbol table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Symbol:
    """
    A named address range [start, start + size).
    """
    start: int
    size: int
    name: str

    @property
    def end(self) -> int:
        return self.start + self.size

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


class SymbolTable:
    """
    Immutable interval index over symbols, sorted by (start, size).

    Build it with SymbolTable.build(); query it with lookup().
    """

    def __init__(self, symbols: List[Symbol]) -> None:
        self._symbols = sorted(symbols, key=lambda s: (s.start, s.size))
        self._starts = [s.start for s in self._symbols]
        self.overlaps = self._count_overlaps()

    @classmethod
    def build(cls, raw_symbols: Iterable[RawSymbol]) -> "SymbolTable":
        """
        Build a table from raw (address, size, raw_name) entries.

        Zero-size entries (section markers, labels) contain no address and
        are left out of the index.
        """
        symbols: List[Symbol] = []
        empty = 0
        for address, size, raw_name in raw_symbols:
            if size == 0:
                empty += 1
                continue
            symbols.append(Symbol(address, size, demangle_name(raw_name)))

        if empty:
            LOG.debug("Dropped %d zero-size symbols", empty)

        table = cls(symbols)
        LOG.info("Symbol table ready: %d symbols", len(table))
        return table

    def _count_overlaps(self) -> int:
        count = 0
        first: Optional[Tuple[Symbol, Symbol]] = None
        for prev, cur in zip(self._symbols, self._symbols[1:]):
            if cur.start < prev.end:
                count += 1
                if first is None:
                    first = (prev, cur)

        if first is not None:
            prev, cur = first
            LOG.warning(
                "%d overlapping symbol ranges (first: %s [%#x, %#x) and %s [%#x, %#x)); "
                "lookups inside overlaps may return either symbol or none",
                count,
                prev.name, prev.start, prev.end,
                cur.name, cur.start, cur.end,
            )
        return count

    def __len__(self) -> int:
        return len(self._symbols)

    def __iter__(self):
        return iter(self._symbols)

    def find(self, address: int) -> Optional[Symbol]:
        """
        Return the symbol whose range contains address, or None.
        """
        idx = bisect.bisect_right(self._starts, address)
        if idx == 0:
            return None
        sym = self._symbols[idx - 1]
        if address < sym.end:
            return sym
        return None

    def lookup(self, address: int) -> Optional[str]:
        """
        Return the name of the symbol containing address, or None.
        """
        sym = self.find(address)
        return sym.name if sym is not None else None


__all__ = [
    "RawSymbol",
    "Symbol",
    "SymbolTable",
    "demangle_name",
    "read_symtab_entries",
    "load_elf_symbols",
]
