"""
Namespace Resolver

Translates host process ids to namespace-local ids and container names to
the cgroup used to scope system-wide instrumentation.

The code assumes a Docker-compatible engine (``<engine> inspect``). Both
cgroup v1 (``perf_event`` controller hierarchy) and the cgroup v2 unified
hierarchy are understood.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import ContainerNotFound

logger = logging.getLogger(__name__)

PERF_EVENT_CONTROLLER = "perf_event"
PROC_ROOT = Path("/proc")


@dataclass(frozen=True)
class ContainerScope:
    """A container resolved to its cgroup and task ids."""

    name: str
    container_id: str
    init_pid: int
    cgroup: str  # path relative to the controller mount, for perf --cgroup
    cgroup_path: Path
    task_ids: tuple[int, ...]


@dataclass(frozen=True)
class NamespaceProcess:
    """Host pid and its namespace-local pid, with optional container info."""

    host_pid: int
    ns_pid: int
    container: str | None = None
    cgroup_path: Path | None = None

    @property
    def containerized(self) -> bool:
        return self.ns_pid != self.host_pid


def resolve_namespace_pid(host_pid: int, proc_root: Path = PROC_ROOT) -> int:
    """
    Return the pid of a process as seen from its own PID namespace.

    Reads the ``NSpid`` line of ``/proc/<pid>/status``; the last value is the
    innermost namespace. Processes that are not nested (or whose status
    cannot be read) keep their host pid.
    """
    try:
        with open(proc_root / str(host_pid) / "status", encoding="utf-8") as fh:
            for line in fh:
                if line.startswith("NSpid:"):
                    fields = line.split()[1:]
                    if fields:
                        return int(fields[-1])
                    break
    except (OSError, ValueError):
        pass
    return host_pid


def is_containerized(pid: int, proc_root: Path = PROC_ROOT) -> bool:
    return resolve_namespace_pid(pid, proc_root) != pid


def describe_process(
    pid: int,
    container: str | None = None,
    cgroup_path: Path | None = None,
    proc_root: Path = PROC_ROOT,
) -> NamespaceProcess:
    return NamespaceProcess(
        host_pid=pid,
        ns_pid=resolve_namespace_pid(pid, proc_root),
        container=container,
        cgroup_path=cgroup_path,
    )


def parse_cgroup_membership(
    text: str, controller: str = PERF_EVENT_CONTROLLER
) -> tuple[str, bool] | None:
    """
    Find a process's cgroup in ``/proc/<pid>/cgroup`` content.

    Returns (path, unified) where ``unified`` is True when the path came from
    the cgroup v2 hierarchy, or None if neither hierarchy is present.
    """
    unified: str | None = None
    for line in text.splitlines():
        parts = line.strip().split(":", 2)
        if len(parts) != 3:
            continue
        hierarchy, controllers, path = parts
        if controller in controllers.split(","):
            return path, False
        if hierarchy == "0" and controllers == "":
            unified = path
    if unified is not None:
        return unified, True
    return None


class NamespaceResolver:
    """Resolves container names to cgroup scopes."""

    def __init__(
        self,
        engine: str = "docker",
        cgroup_root: Path = Path("/sys/fs/cgroup"),
        proc_root: Path = PROC_ROOT,
        timeout: float = 10.0,
    ) -> None:
        self._engine = engine
        self._cgroup_root = Path(cgroup_root)
        self._proc_root = Path(proc_root)
        self._timeout = timeout

    def _inspect(self, name: str) -> tuple[str, int]:
        """Ask the container engine for the container id and init pid."""
        argv = [self._engine, "inspect", "--format", "{{ .Id }} {{ .State.Pid }}", name]
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ContainerNotFound(f"Container not found ({self._engine}: {e})")
        fields = result.stdout.split()
        if result.returncode != 0 or len(fields) < 2:
            raise ContainerNotFound("Container not found")
        container_id, pid_field = fields[0], fields[1]
        try:
            init_pid = int(pid_field)
        except ValueError:
            raise ContainerNotFound("Container not found")
        if init_pid <= 0:
            raise ContainerNotFound("Container not running")
        return container_id, init_pid

    def _read_tasks(self, cgroup_path: Path, unified: bool) -> tuple[int, ...]:
        tasks_file = cgroup_path / ("cgroup.procs" if unified else "tasks")
        try:
            text = tasks_file.read_text()
        except OSError as e:
            logger.warning(f"Could not read container tasks {tasks_file}: {e}")
            return ()
        return tuple(int(t) for t in text.split() if t.isdigit())

    def resolve_container(self, name: str) -> ContainerScope:
        """
        Resolve a container name to its cgroup handle and task id set.

        Raises:
            ContainerNotFound: unknown container, or cgroup path missing
        """
        container_id, init_pid = self._inspect(name)
        try:
            membership = (self._proc_root / str(init_pid) / "cgroup").read_text()
        except OSError:
            raise ContainerNotFound("Container cgroup not found")
        parsed = parse_cgroup_membership(membership)
        if parsed is None:
            raise ContainerNotFound("Container cgroup not found")
        cgroup, unified = parsed
        relative = cgroup.lstrip("/")
        if unified:
            cgroup_path = self._cgroup_root / relative
        else:
            cgroup_path = self._cgroup_root / PERF_EVENT_CONTROLLER / relative
        if not cgroup_path.exists():
            raise ContainerNotFound("Container cgroup not found")

        scope = ContainerScope(
            name=name,
            container_id=container_id,
            init_pid=init_pid,
            cgroup=cgroup,
            cgroup_path=cgroup_path,
            task_ids=self._read_tasks(cgroup_path, unified),
        )
        logger.info(
            f"Resolved container {name} ({container_id[:12]}) to {cgroup_path}, "
            f"{len(scope.task_ids)} tasks"
        )
        return scope
