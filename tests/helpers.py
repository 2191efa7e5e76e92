"""
Builders for binary profile traces and a small symbol table used across tests.
"""

import struct

from kern_profile.symbols import SymbolTable

FOO = 0x1000
BAR = 0x1010
BAZ = 0x2000
OUTSIDE = 0xdead0000


def make_table():
    # foo: [0x1000, 0x1010), bar: [0x1010, 0x1030), baz: [0x2000, 0x2100)
    return SymbolTable.build([
        (FOO, 0x10, "foo"),
        (BAR, 0x20, "bar"),
        (BAZ, 0x100, "baz"),
    ])


def cpu_record(*addresses, order="="):
    return struct.pack(f"{order}B{len(addresses)}Q", len(addresses), *addresses)


def alloc_event(allocator, opcode, pointer, size, addresses=(), order="="):
    name = allocator.encode("utf-8")
    return (
        struct.pack(f"{order}B", len(name))
        + name
        + struct.pack(f"{order}BQQB", opcode, pointer, size, len(addresses))
        + struct.pack(f"{order}{len(addresses)}Q", *addresses)
    )


# ---------------------------------------------------------------------------
# Minimal ELF64 images
# ---------------------------------------------------------------------------

SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_DYNSYM = 11

_SHSTRTAB = b"\0.shstrtab\0.strtab\0.symtab\0.dynsym\0"
_SECTION_HEADER = struct.Struct("<IIQQQQIIQQ")
_SYMBOL = struct.Struct("<IBBHQQ")


def _shname(name):
    return _SHSTRTAB.index(name.encode() + b"\0")


def make_elf(symbols=None, symtab_type=SHT_SYMTAB):
    """
    Build a little-endian x86_64 relocatable ELF.

    symbols: list of (name, value, size) placed in a symbol table section
    of type symtab_type, or None for an ELF without any symbol table.
    """
    strtab = b"\0"
    symtab = _SYMBOL.pack(0, 0, 0, 0, 0, 0)
    for name, value, size in symbols or ():
        name_off = len(strtab)
        strtab += name.encode() + b"\0"
        # STB_GLOBAL | STT_FUNC, SHN_ABS
        symtab += _SYMBOL.pack(name_off, 0x12, 0, 0xfff1, value, size)

    shstrtab_off = 64
    strtab_off = shstrtab_off + len(_SHSTRTAB)
    symtab_off = (strtab_off + len(strtab) + 7) & ~7
    body_end = symtab_off + len(symtab) if symbols is not None else strtab_off + len(strtab)
    shoff = (body_end + 7) & ~7

    headers = [
        _SECTION_HEADER.pack(0, 0, 0, 0, 0, 0, 0, 0, 0, 0),
        _SECTION_HEADER.pack(_shname(".shstrtab"), SHT_STRTAB, 0, 0, shstrtab_off, len(_SHSTRTAB), 0, 0, 1, 0),
        _SECTION_HEADER.pack(_shname(".strtab"), SHT_STRTAB, 0, 0, strtab_off, len(strtab), 0, 0, 1, 0),
    ]
    if symbols is not None:
        name = ".symtab" if symtab_type == SHT_SYMTAB else ".dynsym"
        headers.append(
            _SECTION_HEADER.pack(_shname(name), symtab_type, 0, 0, symtab_off, len(symtab), 2, 1, 8, _SYMBOL.size)
        )

    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
    elf_header = ident + struct.pack(
        "<HHIQQQIHHHHHH",
        1,            # ET_REL
        62,           # EM_X86_64
        1,            # EV_CURRENT
        0, 0, shoff,  # entry, phoff, shoff
        0,            # flags
        64, 0, 0,     # ehsize, phentsize, phnum
        _SECTION_HEADER.size, len(headers), 1,
    )

    image = bytearray(shoff)
    image[0:64] = elf_header
    image[shstrtab_off:shstrtab_off + len(_SHSTRTAB)] = _SHSTRTAB
    image[strtab_off:strtab_off + len(strtab)] = strtab
    if symbols is not None:
        image[symtab_off:symtab_off + len(symtab)] = symtab
    return bytes(image) + b"".join(headers)
