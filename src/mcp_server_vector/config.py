"""
Server Settings

All paths, tool locations, intervals and bounds used by the task server.
Values come from ``VECTOR_*`` environment variables with the defaults of a
stock PCP Vector installation.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

_TRUE_VALUES = {"1", "true", "yes"}


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value if value else default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _env_optional_int(name: str) -> int | None:
    """Unset, empty or non-positive values mean "no bound"."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in _TRUE_VALUES


@dataclass
class VectorSettings:
    """Runtime configuration for the dispatcher and its workers."""

    # Status store
    store_backend: str = "diskcache"  # "diskcache" or "memory"
    store_dir: Path = Path(tempfile.gettempdir()) / "vector_status"
    status_ttl_seconds: float | None = None  # None: busy records never expire
    reset_on_start: bool = True

    # Working areas
    working_dir: Path = Path("/var/log/pcp/vector")
    website_dir: Path = Path("/usr/share/pcp/webapps")
    perf_map_dir: Path = Path("/tmp")

    # External tools
    perf_bin: str = "perf"
    flamegraph_dir: Path = Path("/var/lib/pcp/pmdas/vector/BINFlameGraph")
    bcc_dir: Path = Path("/usr/share/bcc/tools")
    container_engine: str = "docker"
    nsenter_bin: str = "nsenter"
    oracle_agent_dir: Path = Path("/usr/lib/jvm/perf-map-agent")
    openjdk_agent_dir: Path = Path("/usr/lib/jvm/perf-map-agent-openjdk")

    # Kernel feature probes
    cgroup_root: Path = Path("/sys/fs/cgroup")
    pmc_events_dir: Path = Path("/sys/devices/cpu/events")
    kallsyms_path: Path = Path("/proc/kallsyms")
    cpuinfo_path: Path = Path("/proc/cpuinfo")
    tracing_dir: Path = Path("/sys/kernel/debug/tracing")

    # Sampling loop
    poll_interval: float = 1.0
    progress_interval: float = 5.0
    sample_grace: float = 30.0
    processing_timeout: float = 20.0
    agent_timeout: float = 60.0
    worker_nice: int = 19

    # Bounds (None: unbounded, a single trusted operator is assumed)
    max_duration: int | None = None
    max_sessions: int | None = None

    container_aware: bool = True
    extra_env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "VectorSettings":
        """Build settings from ``VECTOR_*`` environment variables."""
        base = cls()
        ttl = _env_float("VECTOR_STATUS_TTL", 0.0)
        return replace(
            base,
            store_backend=_env_str("VECTOR_STORE_BACKEND", base.store_backend),
            store_dir=Path(_env_str("VECTOR_STORE_DIR", str(base.store_dir))),
            status_ttl_seconds=ttl if ttl > 0 else None,
            reset_on_start=_env_bool("VECTOR_RESET_ON_START", base.reset_on_start),
            working_dir=Path(_env_str("VECTOR_WORKING_DIR", str(base.working_dir))),
            website_dir=Path(_env_str("VECTOR_WEBSITE_DIR", str(base.website_dir))),
            perf_map_dir=Path(
                _env_str("VECTOR_PERF_MAP_DIR", str(base.perf_map_dir))
            ),
            perf_bin=_env_str("VECTOR_PERF", base.perf_bin),
            flamegraph_dir=Path(
                _env_str("VECTOR_FLAMEGRAPH_DIR", str(base.flamegraph_dir))
            ),
            bcc_dir=Path(_env_str("VECTOR_BCC_DIR", str(base.bcc_dir))),
            container_engine=_env_str(
                "VECTOR_CONTAINER_ENGINE", base.container_engine
            ),
            oracle_agent_dir=Path(
                _env_str("VECTOR_ORACLE_AGENT_DIR", str(base.oracle_agent_dir))
            ),
            openjdk_agent_dir=Path(
                _env_str("VECTOR_OPENJDK_AGENT_DIR", str(base.openjdk_agent_dir))
            ),
            cgroup_root=Path(_env_str("VECTOR_CGROUP_ROOT", str(base.cgroup_root))),
            poll_interval=_env_float("VECTOR_POLL_INTERVAL", base.poll_interval),
            progress_interval=_env_float(
                "VECTOR_PROGRESS_INTERVAL", base.progress_interval
            ),
            processing_timeout=_env_float(
                "VECTOR_PROCESSING_TIMEOUT", base.processing_timeout
            ),
            max_duration=_env_optional_int("VECTOR_MAX_DURATION"),
            max_sessions=_env_optional_int("VECTOR_MAX_SESSIONS"),
            container_aware=_env_bool("VECTOR_CONTAINER_AWARE", base.container_aware),
        )

    def metric_working_dir(self, metric: str) -> Path:
        return self.working_dir / metric

    def metric_website_dir(self, metric: str) -> Path:
        return self.website_dir / metric

    def flamegraph_tool(self, name: str) -> Path:
        return self.flamegraph_dir / name

    def bcc_tool(self, name: str) -> Path:
        return self.bcc_dir / name
