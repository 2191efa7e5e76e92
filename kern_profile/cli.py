#!/usr/bin/env python3
"""
cli.py

Main entry point for kern-profile.

Responsibilities:
  - Parse the command line:
        kern-profile [--alloc] <profile file> <elf file>
  - Build the symbol table from the ELF (.symtab).
  - Decode the profile (CPU samples, or allocator events with --alloc).
  - Write one flame graph per target:
        * cpu.svg for CPU tracing
        * mem-<allocator>.svg for each allocator in memory tracing
    or the raw folded stacks with --folded.

All phases run in order and decoding finishes before anything is written,
so a corrupt profile never leaves a partial flame graph behind.

Exit status is 0 on success and 1 on any reported error.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from kern_profile.decoder import BYTE_ORDERS, decode_alloc_profile, decode_cpu_profile
from kern_profile.errors import KernProfileError, UsageError
from kern_profile.output_formatter import (
    FlamegraphRenderer,
    FoldedFileSink,
    alloc_targets,
    cpu_targets,
    render_targets,
)
from kern_profile.symbols import SymbolTable, load_elf_symbols


LOG = logging.getLogger("kern_profile")

DEFAULT_FLAMEGRAPH = "flamegraph.pl"
FLAMEGRAPH_ENV = "KERN_PROFILE_FLAMEGRAPH"


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

class _ArgumentParser(argparse.ArgumentParser):
    """
    ArgumentParser that reports bad invocations as UsageError (exit 1)
    instead of exiting with status 2.
    """

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def build_argparser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog="kern-profile",
        description=(
            "Turn kernel CPU samples or allocator traces into flame graphs. "
            "On success, writes cpu.svg for CPU tracing, or "
            "mem-<allocator>.svg for memory tracing."
        ),
    )
    p.add_argument(
        "--alloc",
        action="store_true",
        help=(
            "The profile file contains memory allocator tracing. "
            "If not set, it contains CPU tracing."
        ),
    )
    p.add_argument(
        "profile",
        metavar="PROFILE_FILE",
        help="Path to the file containing samples recorded from execution.",
    )
    p.add_argument(
        "elf",
        metavar="ELF_FILE",
        help="Path to the observed kernel.",
    )
    p.add_argument(
        "--flamegraph",
        default=os.environ.get(FLAMEGRAPH_ENV, DEFAULT_FLAMEGRAPH),
        help=(
            "Flame-graph renderer command, reading folded stacks on stdin "
            f"(default: ${FLAMEGRAPH_ENV} or {DEFAULT_FLAMEGRAPH})."
        ),
    )
    p.add_argument(
        "--output-dir",
        default=".",
        help="Directory for the generated files (default: current directory).",
    )
    p.add_argument(
        "--folded",
        action="store_true",
        help="Write folded stacks (<name>.folded) instead of running the renderer.",
    )
    p.add_argument(
        "--byte-order",
        choices=sorted(BYTE_ORDERS),
        default="native",
        help="Byte order of integers in the profile file (default: native).",
    )
    p.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of renderer processes to run in parallel (default: 1).",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return p


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def read_profile(path: Path) -> bytes:
    LOG.info("Reading profile: %s", path)
    data = path.read_bytes()
    LOG.info("Read %d bytes from %s", len(data), path)
    return data


def run_profile(
    profile_path: Path,
    elf_path: Path,
    alloc: bool,
    sink,
    byte_order: str = "native",
    workers: int = 1,
) -> List[Path]:
    """
    Run the whole pipeline and return the paths of the written artifacts.
    """
    table = SymbolTable.build(load_elf_symbols(elf_path))
    data = read_profile(profile_path)

    if alloc:
        targets = alloc_targets(decode_alloc_profile(data, table, byte_order))
        if not targets:
            LOG.warning("No allocation events in %s; nothing to write", profile_path)
    else:
        targets = cpu_targets(decode_cpu_profile(data, table, byte_order))

    return render_targets(targets, sink, workers)


def make_sink(args: argparse.Namespace):
    out_dir = Path(args.output_dir)
    if out_dir.exists() and not out_dir.is_dir():
        raise UsageError(f"--output-dir is not a directory: {out_dir}")

    if args.folded:
        return FoldedFileSink(out_dir)
    return FlamegraphRenderer(args.flamegraph, out_dir)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_argparser()
    try:
        args = parser.parse_args(argv)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        sys.stderr.write(f"{parser.prog}: error: {e}\n")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    try:
        sink = make_sink(args)
        run_profile(
            profile_path=Path(args.profile),
            elf_path=Path(args.elf),
            alloc=args.alloc,
            sink=sink,
            byte_order=args.byte_order,
            workers=args.workers,
        )
    except (KernProfileError, OSError) as e:
        LOG.error("%s", e)
        LOG.debug("Details:", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
