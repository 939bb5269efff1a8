"""
Session Model

This module contains the Session class owned by each session worker and the
resource usage counters it reports on completion.
"""

from __future__ import annotations

import os
import resource
import time
from dataclasses import dataclass, field

from .namespaces import ContainerScope
from .status import SessionKey


@dataclass
class ResourceUsage:
    """Fault and CPU counters of a worker (CPU in clock ticks)."""

    minflt: int
    majflt: int
    utime: int
    stime: int

    @classmethod
    def for_current_thread(cls) -> "ResourceUsage":
        """Counters of the calling thread (Linux RUSAGE_THREAD)."""
        usage = resource.getrusage(resource.RUSAGE_THREAD)
        ticks = os.sysconf("SC_CLK_TCK")
        return cls(
            minflt=usage.ru_minflt,
            majflt=usage.ru_majflt,
            utime=int(usage.ru_utime * ticks),
            stime=int(usage.ru_stime * ticks),
        )

    def __str__(self) -> str:
        return (
            f"minflt {self.minflt} majflt {self.majflt} "
            f"utime {self.utime} stime {self.stime}"
        )


@dataclass
class Session:
    """Runtime entity owning one status record."""

    key: SessionKey
    seconds: int
    container: str | None = None
    scope: ContainerScope | None = None
    worker_id: int | None = None
    created_at: float = field(default_factory=time.time)
    usage: ResourceUsage | None = None

    @property
    def target_pids(self) -> list[int] | None:
        """Task ids of the container scope, or None for the whole host."""
        return list(self.scope.task_ids) if self.scope is not None else None
