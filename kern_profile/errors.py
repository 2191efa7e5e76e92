#!/usr/bin/env python3
"""
errors.py

Exception types raised by kern-profile.

Every error the tool reports to the user derives from KernProfileError so
that the CLI can turn it into a one-line diagnostic and exit status 1.
Decode errors carry the byte offset of the record or event being read.
"""

from __future__ import annotations

from typing import Optional


class KernProfileError(Exception):
    """Base class for all errors reported by kern-profile."""


class UsageError(KernProfileError):
    """Bad command-line invocation."""


class ElfFormatError(KernProfileError):
    """The ELF file cannot be read, is malformed, or has no symbol table."""


class ProfileDecodeError(KernProfileError):
    """
    Base class for errors found while decoding a profile stream.

    Fields:
        offset: byte offset of the record / event that failed to decode.
    """

    def __init__(self, offset: int, message: str) -> None:
        super().__init__(f"at offset {offset:#x}: {message}")
        self.offset = offset


class TruncatedRecordError(ProfileDecodeError):
    """The stream ended in the middle of a record."""

    def __init__(self, offset: int, field: str, expected: int, actual: int) -> None:
        super().__init__(
            offset,
            f"truncated record while reading {field}: "
            f"expected {expected} bytes, got {actual}",
        )
        self.field = field
        self.expected = expected
        self.actual = actual


class InvalidOpcodeError(ProfileDecodeError):
    """An allocation event carries an opcode other than alloc/realloc/free."""

    def __init__(self, offset: int, opcode: int) -> None:
        super().__init__(offset, f"invalid allocation opcode {opcode}")
        self.opcode = opcode


class RendererLaunchError(KernProfileError):
    """The flame-graph renderer could not be started or failed."""

    def __init__(self, command: str, reason: str, stderr: Optional[str] = None) -> None:
        message = f"flame-graph renderer '{command}' {reason}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)
        self.command = command
        self.stderr = stderr


__all__ = [
    "KernProfileError",
    "UsageError",
    "ElfFormatError",
    "ProfileDecodeError",
    "TruncatedRecordError",
    "InvalidOpcodeError",
    "RendererLaunchError",
]
