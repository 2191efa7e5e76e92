#!/usr/bin/env python3
"""
output_formatter.py

Folded-stack output for kern-profile.

Responsibilities:
  - Encode a StackFolder as folded-stack text, one line per stack:

        root;caller;...;leaf <value>

    Frames are stored innermost first, so they are reversed here.
  - Describe each artifact to produce (OutputTarget):
        * CPU mode: a single "cpu.svg"
        * allocation mode: one "mem-<allocator>.svg" per allocator
  - Hand each target to a sink:
        * FlamegraphRenderer: pipe the text into an external flame-graph
          program (flamegraph.pl or compatible) and save its SVG output.
        * FoldedFileSink: write the text itself to "<name>.folded".

Line order inside one output follows dict iteration order and carries no
meaning.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Sequence, TextIO

from kern_profile.errors import RendererLaunchError
from kern_profile.folder import CallStack, StackFolder


LOG = logging.getLogger("output_formatter")

CPU_ARTIFACT = "cpu.svg"
MEM_RENDERER_ARGS = ["--colors", "mem", "--countname", "bytes"]

# Keep only the last lines of renderer stderr in error messages.
_STDERR_TAIL_LINES = 5


# ---------------------------------------------------------------------------
# Text protocol
# ---------------------------------------------------------------------------

def format_folded_line(stack: CallStack, value: int) -> str:
    """
    Format one folded stack, root first, without the trailing newline.
    """
    return f"{';'.join(reversed(stack))} {value}"


def encode_folded(folder: StackFolder) -> Iterator[str]:
    """
    Yield newline-terminated folded-stack lines.
    """
    for stack, value in folder.items():
        yield format_folded_line(stack, value) + "\n"


def write_folded(folder: StackFolder, stream: TextIO) -> int:
    """
    Write folder to stream. Returns the number of lines written.
    """
    count = 0
    for line in encode_folded(folder):
        stream.write(line)
        count += 1
    return count


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

@dataclass
class OutputTarget:
    """
    One artifact to produce.

    Fields:
        name:          Artifact file name, e.g. "cpu.svg".
        folded:        The stacks to encode.
        renderer_args: Extra arguments for the flame-graph renderer.
    """
    name: str
    folded: StackFolder
    renderer_args: List[str] = field(default_factory=list)


def alloc_artifact_name(allocator: str) -> str:
    """
    "mem-<allocator>.svg", with path separators made harmless.
    """
    safe = allocator.replace("/", "_").replace("\\", "_")
    return f"mem-{safe}.svg"


def cpu_targets(folded: StackFolder) -> List[OutputTarget]:
    return [OutputTarget(name=CPU_ARTIFACT, folded=folded)]


def alloc_targets(per_allocator: Dict[str, StackFolder]) -> List[OutputTarget]:
    return [
        OutputTarget(
            name=alloc_artifact_name(allocator),
            folded=folded,
            renderer_args=list(MEM_RENDERER_ARGS),
        )
        for allocator, folded in per_allocator.items()
    ]


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class FoldedFileSink:
    """
    Write the folded-stack text of each target to "<stem>.folded".
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def write(self, target: OutputTarget) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        out_path = self.output_dir / (Path(target.name).stem + ".folded")
        with out_path.open("w", encoding="utf-8") as f:
            lines = write_folded(target.folded, f)
        LOG.info("Wrote %s (%d stacks)", out_path, lines)
        return out_path


class FlamegraphRenderer:
    """
    Pipe folded stacks into an external flame-graph program.

    The renderer reads folded-stack text on stdin and writes an SVG on
    stdout, which is saved as the target's artifact.
    """

    def __init__(self, command: str, output_dir: Path) -> None:
        self.command = command
        self.argv = shlex.split(command)
        self.output_dir = output_dir
        if not self.argv:
            raise RendererLaunchError(command, "is empty")

    def write(self, target: OutputTarget) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        out_path = self.output_dir / target.name
        cmd = self.argv + list(target.renderer_args)
        text = "".join(encode_folded(target.folded))

        LOG.debug("Running renderer: %s > %s", cmd, out_path)
        out = out_path.open("wb")
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=out,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            out.close()
            out_path.unlink()
            raise RendererLaunchError(self.command, "could not be started", str(e)) from e

        with out:
            _, err = proc.communicate(text.encode("utf-8"))

        if proc.returncode != 0:
            out_path.unlink()
            raise RendererLaunchError(
                self.command,
                f"exited with code {proc.returncode}",
                _stderr_tail(err),
            )

        if err:
            LOG.warning("Renderer stderr for %s: %s", target.name, _stderr_tail(err))

        LOG.info("Wrote %s (%d stacks)", out_path, len(target.folded))
        return out_path


def _stderr_tail(err: bytes) -> str:
    lines = err.decode("utf-8", errors="replace").strip().splitlines()
    return " | ".join(lines[-_STDERR_TAIL_LINES:])


def render_targets(
    targets: Sequence[OutputTarget],
    sink,
    workers: int = 1,
) -> List[Path]:
    """
    Send every target to sink, optionally in parallel.

    Targets are independent, so they can be rendered concurrently. The
    first failure is re-raised once all submitted work has finished.
    """
    if workers <= 1 or len(targets) <= 1:
        return [sink.write(t) for t in targets]

    paths: List[Path] = []
    with ThreadPoolExecutor(max_workers=min(workers, len(targets))) as ex:
        futures = [ex.submit(sink.write, t) for t in targets]
        for fut in as_completed(futures):
            paths.append(fut.result())
    return paths


__all__ = [
    "CPU_ARTIFACT",
    "MEM_RENDERER_ARGS",
    "OutputTarget",
    "format_folded_line",
    "encode_folded",
    "write_folded",
    "alloc_artifact_name",
    "cpu_targets",
    "alloc_targets",
    "FoldedFileSink",
    "FlamegraphRenderer",
    "render_targets",
]
