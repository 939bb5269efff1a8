"""
Folding and Rendering

Turns raw sampler output into the folded-stack format (one line per unique
stack: ``frame;frame;frame count``) and hands it to the FlameGraph scripts.
The collapse and render steps are external tools; this module only wires
them together and applies the line filters the tasks need.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable

from .config import VectorSettings
from .errors import RenderFailure
from .tasks import TaskProfile
from .utils.process_utils import PipelineError, run_pipeline

logger = logging.getLogger(__name__)

IDLE_FRAMES = ("cpu_idle", "cpuidle_enter")


@dataclass
class FoldContext:
    """Inputs of one folding run."""

    settings: VectorSettings
    profile: TaskProfile
    raw: Path  # perf.data, or the bcc tool's folded stdout
    folded: Path
    events: tuple[str, ...] = ()
    pebs: bool = False

    @property
    def timeout(self) -> float:
        return self.settings.processing_timeout

    def tool(self, name: str) -> str:
        return str(self.settings.flamegraph_tool(name))

    def perf_script(self) -> list[str]:
        return [self.settings.perf_bin, "script", "-i", str(self.raw)]


@dataclass
class RenderPlan:
    """A folded file plus the extra flamegraph.pl options it needs."""

    folded: Path
    flamegraph_args: list[str] = field(default_factory=list)


def drop_idle(lines: Iterable[str]) -> list[str]:
    return [line for line in lines if not any(f in line for f in IDLE_FRAMES)]


def scale_counts(lines: Iterable[str], divisor: float = 1000.0) -> list[str]:
    """Rescale the trailing count of folded lines (e.g. us -> ms)."""
    scaled = []
    for line in lines:
        stack, sep, count = line.rpartition(" ")
        if not sep:
            continue
        try:
            scaled.append(f"{stack} {float(count) / divisor:.2f}")
        except ValueError:
            continue
    return scaled


def parse_ipc(report: str) -> str:
    """Instructions-per-cycle from ``perf report --stdio`` event counts."""
    instructions = cycles = None
    in_instructions = False
    for line in report.splitlines():
        if line.startswith("# Samples: "):
            in_instructions = "instructions" in line
        elif line.startswith("# Event count"):
            try:
                value = float(line.split()[-1])
            except (IndexError, ValueError):
                continue
            if in_instructions:
                instructions = value
            else:
                cycles = value
    if cycles and instructions is not None:
        return f"{instructions / cycles:.2f}"
    return "?"


def _write_lines(path: Path, lines: Iterable[str]) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        for line in lines:
            fh.write(line + "\n")


def _collapse(ctx: FoldContext, collapser: list[str]) -> list[str]:
    text = run_pipeline([ctx.perf_script(), collapser], timeout=ctx.timeout)
    lines = text.splitlines()
    return drop_idle(lines) if ctx.profile.filter_idle else lines


def fold_perf_stacks(ctx: FoldContext) -> RenderPlan:
    lines = _collapse(ctx, [ctx.tool("stackcollapse-perf.pl"), "--all"])
    _write_lines(ctx.folded, lines)
    return RenderPlan(ctx.folded)


def fold_package_names(ctx: FoldContext) -> RenderPlan:
    # only Java package names are understood by pkgsplit
    lines = _collapse(ctx, [ctx.tool("pkgsplit-perf.pl")])
    _write_lines(ctx.folded, [line for line in lines if "java" in line])
    return RenderPlan(ctx.folded)


def fold_ipc(ctx: FoldContext) -> RenderPlan:
    cycles_event, instructions_event = ctx.events
    per_event = {}
    for label, event in (("cpu-cycles", cycles_event), ("instructions", instructions_event)):
        path = ctx.folded.with_name(f"{ctx.folded.name}.{label}")
        lines = _collapse(
            ctx,
            [ctx.tool("stackcollapse-perf.pl"), "--all", f"--event-filter={event}"],
        )
        _write_lines(path, lines)
        per_event[label] = path
    try:
        diff = run_pipeline(
            [
                [
                    ctx.tool("difffolded.pl"),
                    "-ns",
                    str(per_event["instructions"]),
                    str(per_event["cpu-cycles"]),
                ]
            ],
            timeout=ctx.timeout,
        )
        ctx.folded.write_text(diff)
        report = run_pipeline(
            [[ctx.settings.perf_bin, "report", "--stdio", "-i", str(ctx.raw)]],
            timeout=ctx.timeout,
        )
    finally:
        for path in per_event.values():
            path.unlink(missing_ok=True)

    ipc = parse_ipc(report)
    subtitle = (
        f"IPC: {ipc}; PEBS: {int(ctx.pebs)}; "
        "red == instruction heavy, blue == stall heavy"
    )
    return RenderPlan(ctx.folded, ["--negate", f"--subtitle={subtitle}"])


def fold_bcc(ctx: FoldContext) -> RenderPlan:
    with open(ctx.raw, encoding="utf-8", errors="replace") as fh:
        lines = [line.rstrip("\n") for line in fh if line.strip()]
    if ctx.profile.scale_to_ms:
        lines = scale_counts(lines)
    _write_lines(ctx.folded, lines)
    return RenderPlan(ctx.folded)


FOLDERS: Dict[str, Callable[[FoldContext], RenderPlan]] = {
    "perf_stacks": fold_perf_stacks,
    "package_names": fold_package_names,
    "ipc": fold_ipc,
    "bcc_folded": fold_bcc,
}


def fold(ctx: FoldContext) -> RenderPlan:
    """Run the profile's folding strategy; failures become RenderFailure."""
    try:
        return FOLDERS[ctx.profile.folding](ctx)
    except (PipelineError, OSError) as e:
        raise RenderFailure(f"Processing profile failed: {e}")


def render_flamegraph(
    settings: VectorSettings,
    plan: RenderPlan,
    svg: Path,
    title: str,
    color: str,
    countname: str | None = None,
) -> Path:
    """Render ``plan.folded`` into ``svg`` with flamegraph.pl."""
    argv = [
        str(settings.flamegraph_tool("flamegraph.pl")),
        "--minwidth=0.5",
        f"--color={color}",
        "--hash",
        f"--title={title}",
    ]
    if countname:
        argv.append(f"--countname={countname}")
    argv.extend(plan.flamegraph_args)

    partial = svg.with_name(f".{svg.name}.{os.getpid()}.tmp")
    try:
        with open(plan.folded, "rb") as src, open(partial, "wb") as dst:
            run_pipeline([argv], timeout=settings.processing_timeout, stdin=src, stdout=dst)
        os.replace(partial, svg)
    except (PipelineError, OSError) as e:
        partial.unlink(missing_ok=True)
        raise RenderFailure(f"Flame graph generation failed: {e}")
    logger.debug(f"Rendered {svg} from {plan.folded}")
    return svg
