#!/usr/bin/env python3
"""
folder.py

Stack folding for kern-profile.

Responsibilities:
  - StackFolder: accumulate a value per exact call-stack
    (sample counts in CPU mode, live bytes in allocation mode).
  - AllocationTracker: per-allocator table of live pointers, each tied to
    the call-stack that first allocated it, folded into a StackFolder at
    the end of the stream.

A call-stack is a tuple of frame names, innermost frame first. Two stacks
are the same key only if they hold the same names in the same order.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Tuple

LOG = logging.getLogger("folder")

CallStack = Tuple[str, ...]


class StackFolder:
    """
    Mapping from call-stack to an accumulated integer value.

    The mapping only grows: there is no way to remove a stack.
    """

    def __init__(self) -> None:
        self._values: Dict[CallStack, int] = {}

    def fold(self, stack: CallStack, delta: int = 1) -> None:
        """
        Add delta to the value of stack, inserting it with delta if absent.
        """
        key = tuple(stack)
        self._values[key] = self._values.get(key, 0) + delta

    def __len__(self) -> int:
        return len(self._values)

    def __getitem__(self, stack: CallStack) -> int:
        return self._values[tuple(stack)]

    def __contains__(self, stack: object) -> bool:
        return isinstance(stack, (tuple, list)) and tuple(stack) in self._values

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StackFolder):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"StackFolder({self._values!r})"

    def items(self) -> Iterator[Tuple[CallStack, int]]:
        return iter(self._values.items())

    def total(self) -> int:
        return sum(self._values.values())

    def as_dict(self) -> Dict[CallStack, int]:
        return dict(self._values)


class AllocationTracker:
    """
    Live-pointer table for a single allocator.

    Each pointer remembers the call-stack of its first allocation and its
    current size. Reallocations update the size only; frees set it to 0.
    """

    def __init__(self, allocator: str) -> None:
        self.allocator = allocator
        # pointer -> [stack, size]
        self._pointers: Dict[int, List] = {}

    def __len__(self) -> int:
        return len(self._pointers)

    def allocate(self, pointer: int, size: int, stack: CallStack) -> None:
        """
        Record an allocation or reallocation of pointer.

        A pointer seen before keeps its original stack; only the size
        changes.
        """
        state = self._pointers.get(pointer)
        if state is None:
            self._pointers[pointer] = [tuple(stack), size]
        else:
            state[1] = size

    def free(self, pointer: int) -> None:
        state = self._pointers.get(pointer)
        if state is None:
            LOG.debug(
                "%s: free of untracked pointer %#x ignored", self.allocator, pointer
            )
            return
        state[1] = 0

    def fold(self) -> StackFolder:
        """
        Sum current sizes per captured stack.
        """
        folder = StackFolder()
        for stack, size in self._pointers.values():
            folder.fold(stack, size)
        return folder


__all__ = [
    "CallStack",
    "StackFolder",
    "AllocationTracker",
]
