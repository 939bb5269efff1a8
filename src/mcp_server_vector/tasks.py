"""Task catalogue: one profile per background task metric."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .config import VectorSettings
from .errors import UnknownMetric

# A prerequisite returns a diagnostic naming the missing capability, or None.
Prerequisite = Callable[[VectorSettings], Optional[str]]


def flamegraph_software(settings: VectorSettings) -> Optional[str]:
    if not settings.flamegraph_dir.is_dir():
        return "Flame graph software missing"
    return None


def perf_installed(settings: VectorSettings) -> Optional[str]:
    if shutil.which(settings.perf_bin) is None:
        return f"perf not installed ({settings.perf_bin})"
    return None


def pmcs_available(settings: VectorSettings) -> Optional[str]:
    events = settings.pmc_events_dir
    if not (events / "cpu-cycles").exists() or not (events / "instructions").exists():
        return "PMCs not available on this instance (see help)"
    return None


def bpf_stacks_available(settings: VectorSettings) -> Optional[str]:
    # check for the capability rather than the kernel version, it may be backported
    try:
        with open(settings.kallsyms_path, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                if line.split()[2:3] == ["bpf_get_stackid"]:
                    return None
    except OSError:
        pass
    return "BPF stacks not available on this kernel version (see help)"


def bcc_tool(name: str) -> Prerequisite:
    def check(settings: VectorSettings) -> Optional[str]:
        if not settings.bcc_tool(name).exists():
            return f"bcc/BPF tool {name} not installed ({settings.bcc_dir})"
        return None

    return check


def tracepoint(category: str, event: str) -> Prerequisite:
    def check(settings: VectorSettings) -> Optional[str]:
        if not (settings.tracing_dir / "events" / category / event).exists():
            return f"tracepoint {category}:{event} not available on this kernel"
        return None

    return check


def has_pebs(settings: VectorSettings) -> bool:
    try:
        with open(settings.cpuinfo_path, encoding="utf-8", errors="replace") as fh:
            return any("pebs" in line for line in fh)
    except OSError:
        return False


PERF_FAILURE = "perf instrumentation failed. Check perf_event permissions. (See help.)"
BPF_FAILURE = "BPF instrumentation failed. Old kernel version? (See help.)"


@dataclass(frozen=True)
class TaskProfile:
    """How one metric samples, folds and renders."""

    metric: str
    description: str
    title: str
    default_seconds: int
    sampler: str = "perf"  # "perf" or "bcc"
    perf_args: Tuple[str, ...] = ()
    events: Tuple[str, ...] = ()
    precise_events: bool = False
    bcc_tool: Optional[str] = None
    bcc_args: Tuple[str, ...] = ()
    verb: str = "Profiling"
    failure_hint: str = PERF_FAILURE
    prerequisites: Tuple[Prerequisite, ...] = field(default_factory=tuple)
    container_aware: bool = True
    uninlined: bool = False
    folding: str = "perf_stacks"
    filter_idle: bool = False
    color: Optional[str] = None  # None: pick java/js from running processes
    countname: Optional[str] = None
    scale_to_ms: bool = False

    def resolve_events(self, settings: VectorSettings) -> Tuple[str, ...]:
        if self.precise_events and has_pebs(settings):
            return tuple(f"{e}:p" for e in self.events)
        return self.events

    def check_prerequisites(self, settings: VectorSettings) -> Optional[str]:
        """First missing prerequisite, or None when everything is present."""
        for check in (flamegraph_software,) + self.prerequisites:
            missing = check(settings)
            if missing:
                return missing
        return None


_PERF = (perf_installed,)

PROFILES: Dict[str, TaskProfile] = {
    p.metric: p
    for p in (
        TaskProfile(
            metric="cpuflamegraph",
            description="Profile CPU stack traces and create a flame graph.",
            title="CPU Flame Graph (no idle)",
            default_seconds=60,
            perf_args=("-F", "49", "-g"),
            prerequisites=_PERF,
            filter_idle=True,
        ),
        TaskProfile(
            metric="pnamecpuflamegraph",
            description="Profile CPU instruction pointer and create a package name flame graph.",
            title="Package CPU Flame Graph (Java only)",
            default_seconds=60,
            perf_args=("-F", "49"),
            prerequisites=_PERF,
            folding="package_names",
        ),
        TaskProfile(
            metric="uninlinedcpuflamegraph",
            description="Profile CPU stack traces with some uninlining for a flame graph.",
            title="Uninlined CPU Flame Graph (no idle)",
            default_seconds=60,
            perf_args=("-F", "49", "-g"),
            prerequisites=_PERF,
            uninlined=True,
            filter_idle=True,
        ),
        TaskProfile(
            metric="pagefaultflamegraph",
            description="Trace page faults with stacks and create a flame graph.",
            title="Page Fault Flame Graph",
            default_seconds=60,
            events=("page-faults",),
            perf_args=("-g",),
            verb="Tracing",
            prerequisites=_PERF,
            color="mem",
            countname="pages",
        ),
        TaskProfile(
            metric="diskioflamegraph",
            description="Trace disk I/O issues with stacks and create a flame graph.",
            title="Disk I/O Flame Graph",
            default_seconds=60,
            events=("block:block_rq_insert",),
            perf_args=("-g",),
            verb="Tracing",
            prerequisites=_PERF + (tracepoint("block", "block_rq_insert"),),
            color="io",
            countname="I/O",
        ),
        TaskProfile(
            metric="ipcflamegraph",
            description="Profile cycles and instructions for an IPC flame graph (needs PMCs).",
            title="IPC Flame Graph (no idle)",
            default_seconds=30,
            events=("cpu-cycles", "instructions"),
            precise_events=True,
            perf_args=("-c", "100000000", "-g"),
            failure_hint="PMC instrumentation failed. Are PMCs available? (See help.)",
            prerequisites=_PERF + (pmcs_available,),
            folding="ipc",
            filter_idle=True,
        ),
        TaskProfile(
            metric="cswflamegraph",
            description="Trace context switches with stacks and create a flame graph.",
            title="Context Switch Flame Graph",
            default_seconds=30,
            events=("cs",),
            perf_args=("-g",),
            verb="Tracing",
            prerequisites=_PERF,
            color="io",
            countname="switches",
        ),
        TaskProfile(
            metric="offcpuflamegraph",
            description="Trace scheduler events and create an off-CPU time flame graph.",
            title="Off-CPU Time Flame Graph",
            default_seconds=10,
            sampler="bcc",
            bcc_tool="offcputime",
            bcc_args=("-df",),
            verb="Tracing",
            failure_hint=BPF_FAILURE,
            prerequisites=(bpf_stacks_available, bcc_tool("offcputime")),
            container_aware=False,
            folding="bcc_folded",
            color="blue",
            countname="ms",
            scale_to_ms=True,
        ),
        TaskProfile(
            metric="offwakeflamegraph",
            description="Trace scheduler events and create an off-wake time flame graph.",
            title="Off-Wake Time Flame Graph",
            default_seconds=10,
            sampler="bcc",
            bcc_tool="offwaketime",
            bcc_args=("-f",),
            verb="Tracing",
            failure_hint=BPF_FAILURE,
            prerequisites=(bpf_stacks_available, bcc_tool("offwaketime")),
            container_aware=False,
            folding="bcc_folded",
            color="chain",
            countname="us",
        ),
    )
}


def get_profile(metric: str) -> TaskProfile:
    try:
        return PROFILES[metric]
    except KeyError:
        raise UnknownMetric(f"Unknown task metric: {metric}")


def list_profiles() -> list[TaskProfile]:
    return list(PROFILES.values())
