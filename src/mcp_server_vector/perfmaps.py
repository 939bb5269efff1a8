"""
Symbol Map Reconciler

Produces the ``perf-<pid>.map`` files perf uses to translate JIT-compiled
addresses of Java and Node.js processes, on the host and inside containers.

Architecture:
- One SymbolMapper per (runtime kind, scope kind) pair, all exposing
  ``reconcile(target) -> SymbolMap``
- PerfMapArena owns the shared pid-keyed map directory; every map it writes
  is staged in a private temp file and published with ``os.replace`` (last
  writer wins, readers never see a torn file)
- Anything that goes wrong for one process degrades to a sentinel map and a
  warning; it never fails the session

Java requires perf-map-agent built for the same JVM family as the target
(Oracle and OpenJDK builds are not interchangeable and the wrong one can
crash the JVM). Node requires ``--perf-basic-prof`` live symbol logging.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

import psutil

from .config import VectorSettings
from .errors import SymbolMapDegraded
from .namespaces import PROC_ROOT, NamespaceProcess, describe_process
from .utils.perfmap_tidy import tidy_perf_map

logger = logging.getLogger(__name__)

SENTINEL_ENTRY = "000000000000 f00000000000 missing_perf_map"
AGENT_FILES = ("attach-main.jar", "libperfmap.so")
AGENT_MAIN_CLASS = "net.virtualvoid.perf.AttachOnce"
CONTAINER_MAP_DIR = Path("/tmp")
LIVE_LOG_FLAGS = ("perf-basic-prof", "perf_basic_prof")


class RuntimeKind(Enum):
    """Recognized JIT runtimes, valued by their process name."""

    JAVA = "java"
    NODE = "node"


class ScopeKind(Enum):
    HOST = "host"
    CONTAINER = "container"


@dataclass(frozen=True)
class MapTarget:
    """One process to reconcile."""

    process: NamespaceProcess
    kind: RuntimeKind
    uninlined: bool = False

    @property
    def pid(self) -> int:
        return self.process.host_pid

    @property
    def scope(self) -> ScopeKind:
        return ScopeKind.CONTAINER if self.process.containerized else ScopeKind.HOST


@dataclass(frozen=True)
class SymbolMap:
    """Result of reconciling one process."""

    pid: int
    path: Path
    sentinel: bool = False
    source: str = ""


class PerfMapArena:
    """The shared, pid-keyed symbol map directory."""

    def __init__(self, map_dir: Path) -> None:
        self.map_dir = Path(map_dir)

    def map_path(self, pid: int) -> Path:
        return self.map_dir / f"perf-{pid}.map"

    def live_map_path(self, pid: int) -> Path:
        return self.map_dir / f"perf-{pid}.livemap"

    def remove(self, pid: int) -> None:
        try:
            self.map_path(pid).unlink()
        except FileNotFoundError:
            pass

    def publish_lines(self, pid: int, lines: Iterable[str]) -> Path:
        """Write a map through a private temp file and rename it into place."""
        target = self.map_path(pid)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.map_dir, prefix=f".perf-{pid}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                for line in lines:
                    fh.write(line.rstrip("\n") + "\n")
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        return target

    def publish_file(self, pid: int, source: Path) -> Path:
        with open(source, encoding="utf-8", errors="replace") as fh:
            return self.publish_lines(pid, fh)

    def write_sentinel(self, pid: int, reason: str) -> SymbolMap:
        """Substitute a one-entry map so stacks show why symbols are missing."""
        path = self.publish_lines(pid, [SENTINEL_ENTRY])
        logger.warning(f"WARNING: {SymbolMapDegraded(f'PID {pid}: {reason}')}")
        return SymbolMap(pid=pid, path=path, sentinel=True, source=reason)

    def restore_owner(self, path: Path) -> None:
        """perf only trusts maps owned by root."""
        if not path.exists() or os.geteuid() != 0:
            return
        try:
            os.chown(path, 0, 0)
        except OSError as e:
            logger.debug(f"Could not chown {path}: {e}")


def _process_ids(pid: int) -> tuple[int, int]:
    process = psutil.Process(pid)
    return process.uids().real, process.gids().real


def _has_live_log(pid: int) -> bool:
    args = " ".join(psutil.Process(pid).cmdline())
    return any(flag in args for flag in LIVE_LOG_FLAGS)


class SymbolMapper(ABC):
    """Produces the symbol map for one kind of target."""

    kind: RuntimeKind
    scope: ScopeKind

    def __init__(
        self, arena: PerfMapArena, settings: VectorSettings, proc_root: Path
    ) -> None:
        self._arena = arena
        self._settings = settings
        self._proc_root = Path(proc_root)

    def _ns_root(self, pid: int) -> Path:
        return self._proc_root / str(pid) / "root"

    def _in_ns_root(self, pid: int, path: Path) -> Path:
        return self._ns_root(pid) / Path(path).relative_to("/")

    @abstractmethod
    def reconcile(self, target: MapTarget) -> SymbolMap:
        pass


class _JavaMapper(SymbolMapper):
    kind = RuntimeKind.JAVA

    def java_home(self, pid: int) -> str:
        """JAVA_HOME of a JVM, from its ``/proc/<pid>/exe`` link target."""
        exe = os.readlink(self._proc_root / str(pid) / "exe")
        for suffix in ("/jre/bin/java", "/bin/java"):
            if exe.endswith(suffix):
                return exe[: -len(suffix)]
        return str(Path(exe).parent.parent)

    def agent_dir_for(self, java_home: str) -> Path:
        """Pick the perf-map-agent build matching the JVM family."""
        if "openjdk" in java_home:
            return self._settings.openjdk_agent_dir
        return self._settings.oracle_agent_dir

    @staticmethod
    def find_agent(base: Path) -> Path | None:
        """Directory holding a complete agent (``out/`` first), if any."""
        for candidate in (base / "out", base):
            if candidate.is_dir():
                if all((candidate / name).exists() for name in AGENT_FILES):
                    return candidate
                return None
        return None

    def _attach_argv(self, java_home: str, pid: int, uninlined: bool) -> list[str]:
        argv = [
            f"{java_home}/bin/java",
            "-cp",
            f"attach-main.jar:{java_home}/lib/tools.jar",
            AGENT_MAIN_CLASS,
            str(pid),
        ]
        if uninlined:
            argv.append("unfoldall")
        return argv


class HostJavaMapper(_JavaMapper):
    scope = ScopeKind.HOST

    def reconcile(self, target: MapTarget) -> SymbolMap:
        pid = target.pid
        self._arena.remove(pid)

        java_home = self.java_home(pid)
        agent = self.find_agent(self.agent_dir_for(java_home))
        if agent is None:
            return self._arena.write_sentinel(
                pid, f"no perf-map-agent for PID {pid} ({java_home})"
            )

        # attach as the JVM's owner, or it refuses with "well-known file is not secure"
        uid, gid = _process_ids(pid)
        kwargs: dict = {}
        if os.geteuid() == 0 and uid != 0:
            kwargs.update(user=uid, group=gid)
        result = subprocess.run(
            self._attach_argv(java_home, pid, target.uninlined),
            cwd=agent,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=self._settings.agent_timeout,
            check=False,
            **kwargs,
        )
        path = self._arena.map_path(pid)
        if not path.exists():
            return self._arena.write_sentinel(
                pid,
                f"perf-map-agent produced no map (exit {result.returncode}): "
                f"{result.stderr.strip()[:200]}",
            )
        self._arena.restore_owner(path)
        return SymbolMap(pid=pid, path=path, source=str(agent))


class ContainerJavaMapper(_JavaMapper):
    scope = ScopeKind.CONTAINER

    def _locate_in_container(
        self, pid: int, agent_dir: Path
    ) -> tuple[Path, Path | None] | None:
        """
        Find the agent to run inside the container.

        Returns (in-container agent dir, host agent dir to copy in or None),
        or None when neither side has a complete agent.
        """
        in_ns = self.find_agent(self._in_ns_root(pid, agent_dir))
        if in_ns is not None:
            suffix = in_ns.relative_to(self._in_ns_root(pid, agent_dir))
            return agent_dir / suffix, None
        host_agent = self.find_agent(agent_dir)
        if host_agent is not None:
            return agent_dir, host_agent
        return None

    def _copy_agent_in(self, pid: int, source: Path, agent_dir: Path) -> None:
        dest = self._in_ns_root(pid, agent_dir)
        dest.mkdir(parents=True, exist_ok=True)
        for name in AGENT_FILES:
            shutil.copy2(source / name, dest / name)
        logger.info(f"Copied perf-map-agent into container of PID {pid}")

    def reconcile(self, target: MapTarget) -> SymbolMap:
        pid = target.pid
        nspid = target.process.ns_pid
        self._arena.remove(pid)

        java_home = self.java_home(pid)
        agent_dir = self.agent_dir_for(java_home)
        located = self._locate_in_container(pid, agent_dir)
        if located is None:
            return self._arena.write_sentinel(
                pid,
                f"no perf-map-agent for PID {pid} NSPID {nspid} ({java_home})",
            )
        ns_agent, host_agent = located
        if host_agent is not None:
            self._copy_agent_in(pid, host_agent, agent_dir)

        # a map left by an earlier session must not pass for this one
        ns_map = self._in_ns_root(pid, CONTAINER_MAP_DIR / f"perf-{nspid}.map")
        ns_map.unlink(missing_ok=True)

        uid, gid = _process_ids(pid)
        attach = " ".join(
            shlex.quote(a) for a in self._attach_argv(java_home, nspid, target.uninlined)
        )
        script = f"cd {shlex.quote(str(ns_agent))} && {attach} > /dev/null"
        argv = [
            self._settings.nsenter_bin,
            "-t", str(pid),
            "-m", "-p", "-u",
            "-S", str(uid),
            "-G", str(gid),
            "sh", "-c", script,
        ]  # fmt: skip
        result = subprocess.run(
            argv,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=self._settings.agent_timeout,
            check=False,
        )

        if not ns_map.exists():
            return self._arena.write_sentinel(
                pid,
                f"perf-map-agent produced no map in container "
                f"(exit {result.returncode}): {result.stderr.strip()[:200]}",
            )
        path = self._arena.publish_file(pid, ns_map)
        self._arena.restore_owner(path)
        return SymbolMap(pid=pid, path=path, source=str(ns_map))


class HostNodeMapper(SymbolMapper):
    kind = RuntimeKind.NODE
    scope = ScopeKind.HOST

    def reconcile(self, target: MapTarget) -> SymbolMap:
        pid = target.pid
        path = self._arena.map_path(pid)
        live = self._arena.live_map_path(pid)

        if not _has_live_log(pid):
            if path.exists():
                return SymbolMap(pid=pid, path=path, source="existing map")
            return self._arena.write_sentinel(pid, "node is not logging symbols")

        # node keeps appending to the renamed log; the canonical path is ours
        if not live.exists() and path.exists():
            os.rename(path, live)
        if not live.exists():
            return self._arena.write_sentinel(pid, "node symbol log not found")

        with open(live, encoding="utf-8", errors="replace") as fh:
            lines = tidy_perf_map(fh)
        path = self._arena.publish_lines(pid, lines)
        return SymbolMap(pid=pid, path=path, source=str(live))


class ContainerNodeMapper(SymbolMapper):
    kind = RuntimeKind.NODE
    scope = ScopeKind.CONTAINER

    def reconcile(self, target: MapTarget) -> SymbolMap:
        pid = target.pid
        path = self._arena.map_path(pid)

        if not _has_live_log(pid):
            if path.exists():
                return SymbolMap(pid=pid, path=path, source="existing map")
            return self._arena.write_sentinel(pid, "node is not logging symbols")

        ns_map = self._in_ns_root(
            pid, CONTAINER_MAP_DIR / f"perf-{target.process.ns_pid}.map"
        )
        if not ns_map.exists():
            return self._arena.write_sentinel(
                pid, f"node symbol log not found in container ({ns_map})"
            )
        with open(ns_map, encoding="utf-8", errors="replace") as fh:
            lines = tidy_perf_map(fh)
        path = self._arena.publish_lines(pid, lines)
        return SymbolMap(pid=pid, path=path, source=str(ns_map))


_MAPPERS: dict[tuple[RuntimeKind, ScopeKind], type[SymbolMapper]] = {
    (RuntimeKind.JAVA, ScopeKind.HOST): HostJavaMapper,
    (RuntimeKind.JAVA, ScopeKind.CONTAINER): ContainerJavaMapper,
    (RuntimeKind.NODE, ScopeKind.HOST): HostNodeMapper,
    (RuntimeKind.NODE, ScopeKind.CONTAINER): ContainerNodeMapper,
}


class SymbolMapReconciler:
    """Finds JIT runtime processes and reconciles their symbol maps."""

    def __init__(self, settings: VectorSettings, proc_root: Path = PROC_ROOT) -> None:
        self._settings = settings
        self._proc_root = Path(proc_root)
        self.arena = PerfMapArena(settings.perf_map_dir)

    def mapper_for(self, kind: RuntimeKind, scope: ScopeKind) -> SymbolMapper:
        if not self._settings.container_aware:
            scope = ScopeKind.HOST
        return _MAPPERS[(kind, scope)](self.arena, self._settings, self._proc_root)

    def find_processes(
        self, kind: RuntimeKind, pids: Iterable[int] | None = None
    ) -> list[int]:
        """Pids of processes named exactly after the runtime, optionally restricted."""
        allowed = set(pids) if pids is not None else None
        found = []
        for proc in psutil.process_iter(["pid", "name"]):
            if proc.info.get("name") != kind.value:
                continue
            if allowed is not None and proc.info["pid"] not in allowed:
                continue
            found.append(proc.info["pid"])
        return sorted(found)

    def reconcile(
        self, pid: int, kind: RuntimeKind, uninlined: bool = False
    ) -> SymbolMap:
        """Reconcile one process, substituting a sentinel on any failure."""
        try:
            target = MapTarget(
                process=describe_process(pid, proc_root=self._proc_root),
                kind=kind,
                uninlined=uninlined,
            )
            mapper = self.mapper_for(kind, target.scope)
            return mapper.reconcile(target)
        except (
            OSError,
            ValueError,
            subprocess.SubprocessError,
            psutil.Error,
        ) as e:
            return self.arena.write_sentinel(
                pid, f"{kind.value} map failed: {type(e).__name__}: {e}"
            )

    def dump_java_maps(
        self, pids: Iterable[int] | None = None, uninlined: bool = False
    ) -> list[SymbolMap]:
        return [
            self.reconcile(pid, RuntimeKind.JAVA, uninlined)
            for pid in self.find_processes(RuntimeKind.JAVA, pids)
        ]

    def fix_node_maps(self, pids: Iterable[int] | None = None) -> list[SymbolMap]:
        return [
            self.reconcile(pid, RuntimeKind.NODE)
            for pid in self.find_processes(RuntimeKind.NODE, pids)
        ]

    def reconcile_all(
        self, pids: Iterable[int] | None = None, uninlined: bool = False
    ) -> list[SymbolMap]:
        pid_list = list(pids) if pids is not None else None
        maps = self.dump_java_maps(pid_list, uninlined) + self.fix_node_maps(pid_list)
        sentinels = sum(1 for m in maps if m.sentinel)
        logger.info(f"Reconciled {len(maps)} symbol maps ({sentinels} sentinel)")
        return maps

    def pick_palette(self) -> str:
        """Flame graph palette: ``js`` when node runs on the host, else ``java``."""
        return "js" if self.find_processes(RuntimeKind.NODE) else "java"
