#!/usr/bin/env python3
"""
decoder.py

Binary profile decoder for kern-profile.

Two wire formats are supported. Neither has a header or a terminator: the
stream is just records back to back until end of file. All integers use
the byte order given by the caller (native by default, since the tracer
writes them straight from memory).

CPU mode, one record per sample:

    u8   k             number of frames
    u64  addr[k]       return addresses, innermost frame first

Allocation mode, one event per allocator call:

    u8   L             allocator name length
    u8   name[L]       allocator name (UTF-8)
    u8   opcode        0 = alloc, 1 = realloc, 2 = free
    u64  pointer
    u64  size
    u8   k             number of frames
    u64  addr[k]       innermost frame first

Resolution rules:
  - CPU mode: an address outside every known symbol means the frame walk
    left kernel code. The record is cut at every such address and each
    non-empty piece is folded as its own stack.
  - Allocation mode: unresolved addresses become the "unknown" frame and
    the stack is kept whole.

A record that ends early raises TruncatedRecordError; an unknown opcode
raises InvalidOpcodeError. Both abort decoding; nothing is returned.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from kern_profile.errors import InvalidOpcodeError, TruncatedRecordError
from kern_profile.folder import AllocationTracker, CallStack, StackFolder
from kern_profile.symbols import SymbolTable


LOG = logging.getLogger("decoder")

ADDRESS_SIZE = 8
UNKNOWN_FRAME = "unknown"

BYTE_ORDERS: Dict[str, str] = {
    "native": "=",
    "little": "<",
    "big": ">",
}

Buffer = Union[bytes, bytearray, memoryview]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

class AllocOp(IntEnum):
    ALLOC = 0
    REALLOC = 1
    FREE = 2


@dataclass
class CpuRecord:
    """
    One CPU sample: raw return addresses, innermost first.
    """
    offset: int
    addresses: Tuple[int, ...]


@dataclass
class AllocEvent:
    """
    One allocator call as recorded by the tracer.
    """
    offset: int
    allocator: str
    opcode: AllocOp
    pointer: int
    size: int
    addresses: Tuple[int, ...]


# ---------------------------------------------------------------------------
# Low-level reader
# ---------------------------------------------------------------------------

class _Reader:
    """
    Cursor over a profile buffer.

    Every read takes the offset of the record being decoded so that errors
    point at the start of the record rather than at the failing field.
    """

    def __init__(self, data: Buffer, byte_order: str = "native") -> None:
        try:
            self._prefix = BYTE_ORDERS[byte_order]
        except KeyError:
            raise ValueError(f"unknown byte order: {byte_order}") from None
        self._data = memoryview(data)
        self._u64 = struct.Struct(self._prefix + "Q")
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self._data)

    def _need(self, n: int, record_offset: int, field: str) -> None:
        remaining = len(self._data) - self.pos
        if remaining < n:
            raise TruncatedRecordError(record_offset, field, n, remaining)

    def read_u8(self, record_offset: int, field: str) -> int:
        self._need(1, record_offset, field)
        value = self._data[self.pos]
        self.pos += 1
        return value

    def read_u64(self, record_offset: int, field: str) -> int:
        self._need(ADDRESS_SIZE, record_offset, field)
        (value,) = self._u64.unpack_from(self._data, self.pos)
        self.pos += ADDRESS_SIZE
        return value

    def read_bytes(self, n: int, record_offset: int, field: str) -> bytes:
        self._need(n, record_offset, field)
        value = self._data[self.pos:self.pos + n].tobytes()
        self.pos += n
        return value

    def read_addresses(self, count: int, record_offset: int) -> Tuple[int, ...]:
        size = count * ADDRESS_SIZE
        self._need(size, record_offset, "frame addresses")
        values = struct.unpack_from(f"{self._prefix}{count}Q", self._data, self.pos)
        self.pos += size
        return values


# ---------------------------------------------------------------------------
# CPU mode
# ---------------------------------------------------------------------------

def iter_cpu_records(data: Buffer, byte_order: str = "native") -> Iterator[CpuRecord]:
    """
    Yield raw CPU sample records from a profile buffer.
    """
    reader = _Reader(data, byte_order)
    while not reader.at_end():
        offset = reader.pos
        count = reader.read_u8(offset, "frame count")
        yield CpuRecord(offset=offset, addresses=reader.read_addresses(count, offset))


def split_resolved(frames: Iterable[Optional[str]]) -> Iterator[CallStack]:
    """
    Cut a resolved frame sequence at unresolved entries (None).

    Yields each maximal run of resolved names; empty runs are skipped.

        [A, B, None, C]     -> (A, B), (C,)
        [None, None, A]     -> (A,)
    """
    run: List[str] = []
    for name in frames:
        if name is None:
            if run:
                yield tuple(run)
                run = []
            continue
        run.append(name)
    if run:
        yield tuple(run)


def decode_cpu_profile(
    data: Buffer,
    table: SymbolTable,
    byte_order: str = "native",
) -> StackFolder:
    """
    Decode a CPU profile and count identical stacks.
    """
    folder = StackFolder()
    records = 0
    frames = 0
    unresolved = 0

    for record in iter_cpu_records(data, byte_order):
        records += 1
        frames += len(record.addresses)
        resolved = [table.lookup(addr) for addr in record.addresses]
        unresolved += resolved.count(None)
        for stack in split_resolved(resolved):
            folder.fold(stack, 1)

    LOG.info(
        "Decoded %d CPU samples (%d frames, %d unresolved) into %d stacks",
        records,
        frames,
        unresolved,
        len(folder),
    )
    return folder


# ---------------------------------------------------------------------------
# Allocation mode
# ---------------------------------------------------------------------------

def iter_alloc_events(data: Buffer, byte_order: str = "native") -> Iterator[AllocEvent]:
    """
    Yield allocation events from a profile buffer.
    """
    reader = _Reader(data, byte_order)
    while not reader.at_end():
        offset = reader.pos
        name_len = reader.read_u8(offset, "allocator name length")
        name = reader.read_bytes(name_len, offset, "allocator name")

        raw_opcode = reader.read_u8(offset, "opcode")
        try:
            opcode = AllocOp(raw_opcode)
        except ValueError:
            raise InvalidOpcodeError(offset, raw_opcode) from None

        pointer = reader.read_u64(offset, "pointer")
        size = reader.read_u64(offset, "size")
        count = reader.read_u8(offset, "frame count")
        addresses = reader.read_addresses(count, offset)

        yield AllocEvent(
            offset=offset,
            allocator=name.decode("utf-8", errors="replace"),
            opcode=opcode,
            pointer=pointer,
            size=size,
            addresses=addresses,
        )


def resolve_alloc_stack(addresses: Iterable[int], table: SymbolTable) -> CallStack:
    """
    Resolve addresses, replacing misses with the "unknown" frame.
    """
    return tuple(table.lookup(addr) or UNKNOWN_FRAME for addr in addresses)


def decode_alloc_profile(
    data: Buffer,
    table: SymbolTable,
    byte_order: str = "native",
) -> Dict[str, StackFolder]:
    """
    Decode an allocation profile into live bytes per stack, per allocator.

    Allocators appear in the result in the order they were first seen.
    """
    trackers: Dict[str, AllocationTracker] = {}
    events = 0

    for event in iter_alloc_events(data, byte_order):
        events += 1
        tracker = trackers.get(event.allocator)
        if tracker is None:
            LOG.debug("New allocator: %s", event.allocator)
            tracker = AllocationTracker(event.allocator)
            trackers[event.allocator] = tracker

        if event.opcode == AllocOp.FREE:
            tracker.free(event.pointer)
        else:
            stack = resolve_alloc_stack(event.addresses, table)
            tracker.allocate(event.pointer, event.size, stack)

    result = {name: tracker.fold() for name, tracker in trackers.items()}

    LOG.info("Decoded %d allocation events for %d allocators", events, len(result))
    for name, folder in result.items():
        LOG.info("  %s: %d stacks, %d live bytes", name, len(folder), folder.total())
    return result


__all__ = [
    "ADDRESS_SIZE",
    "UNKNOWN_FRAME",
    "BYTE_ORDERS",
    "AllocOp",
    "CpuRecord",
    "AllocEvent",
    "iter_cpu_records",
    "split_resolved",
    "decode_cpu_profile",
    "iter_alloc_events",
    "resolve_alloc_stack",
    "decode_alloc_profile",
]
