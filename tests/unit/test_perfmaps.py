"""
Unit tests for the Symbol Map Reconciler

Processes are simulated with a fake /proc tree (status, exe link, root
directory); psutil and subprocess are patched at the module boundary.
"""

import os
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from mcp_server_vector.namespaces import NamespaceProcess
from mcp_server_vector.perfmaps import (
    SENTINEL_ENTRY,
    ContainerJavaMapper,
    ContainerNodeMapper,
    HostJavaMapper,
    HostNodeMapper,
    MapTarget,
    PerfMapArena,
    RuntimeKind,
    ScopeKind,
    SymbolMapReconciler,
)

ORACLE_JAVA = "/usr/lib/jvm/java-8-oracle/jre/bin/java"
OPENJDK_JAVA = "/usr/lib/jvm/java-8-openjdk-amd64/jre/bin/java"


def make_process(proc_root, pid, ns_pid=None, exe=ORACLE_JAVA):
    pid_dir = proc_root / str(pid)
    (pid_dir / "root").mkdir(parents=True, exist_ok=True)
    nspid = f"{pid}\t{ns_pid}" if ns_pid is not None else str(pid)
    (pid_dir / "status").write_text(f"Name:\tx\nNSpid:\t{nspid}\n")
    os.symlink(exe, pid_dir / "exe")
    return pid_dir


def install_agent(base):
    out = base / "out"
    out.mkdir(parents=True)
    (out / "attach-main.jar").write_text("jar")
    (out / "libperfmap.so").write_text("so")
    return out


@pytest.fixture
def proc_root(temp_dir):
    root = temp_dir / "proc"
    root.mkdir()
    return root


@pytest.fixture
def map_settings(settings, temp_dir):
    return replace(
        settings,
        oracle_agent_dir=temp_dir / "agents" / "oracle",
        openjdk_agent_dir=temp_dir / "agents" / "openjdk",
    )


@pytest.fixture
def reconciler(map_settings, proc_root):
    return SymbolMapReconciler(map_settings, proc_root=proc_root)


class TestPerfMapArena:
    def test_publish_is_atomic_and_readable(self, temp_dir):
        arena = PerfMapArena(temp_dir)
        path = arena.publish_lines(42, ["1000 10 a\n", "2000 10 b"])
        assert path == temp_dir / "perf-42.map"
        assert path.read_text() == "1000 10 a\n2000 10 b\n"
        assert oct(path.stat().st_mode & 0o777) == oct(0o644)
        # no temp files left behind
        assert [p.name for p in temp_dir.iterdir()] == ["perf-42.map"]

    def test_publish_replaces_existing(self, temp_dir):
        arena = PerfMapArena(temp_dir)
        arena.publish_lines(42, ["1000 10 old"])
        arena.publish_lines(42, ["1000 10 new"])
        assert arena.map_path(42).read_text() == "1000 10 new\n"

    def test_sentinel(self, temp_dir):
        arena = PerfMapArena(temp_dir)
        with patch("mcp_server_vector.perfmaps.logger") as mock_logger:
            result = arena.write_sentinel(42, "no agent")
        assert result.sentinel
        assert result.path.read_text() == SENTINEL_ENTRY + "\n"
        mock_logger.warning.assert_called_once()
        assert "no agent" in mock_logger.warning.call_args[0][0]

    def test_remove_missing_is_quiet(self, temp_dir):
        PerfMapArena(temp_dir).remove(42)


class TestMapperSelection:
    @pytest.mark.parametrize(
        "kind,scope,expected",
        [
            (RuntimeKind.JAVA, ScopeKind.HOST, HostJavaMapper),
            (RuntimeKind.JAVA, ScopeKind.CONTAINER, ContainerJavaMapper),
            (RuntimeKind.NODE, ScopeKind.HOST, HostNodeMapper),
            (RuntimeKind.NODE, ScopeKind.CONTAINER, ContainerNodeMapper),
        ],
    )
    def test_mapper_for(self, reconciler, kind, scope, expected):
        assert isinstance(reconciler.mapper_for(kind, scope), expected)

    def test_container_support_disabled(self, map_settings, proc_root):
        reconciler = SymbolMapReconciler(
            replace(map_settings, container_aware=False), proc_root=proc_root
        )
        mapper = reconciler.mapper_for(RuntimeKind.NODE, ScopeKind.CONTAINER)
        assert isinstance(mapper, HostNodeMapper)

    def test_target_scope(self):
        host = MapTarget(NamespaceProcess(10, 10), RuntimeKind.JAVA)
        nested = MapTarget(NamespaceProcess(10, 3), RuntimeKind.JAVA)
        assert host.scope is ScopeKind.HOST
        assert nested.scope is ScopeKind.CONTAINER


class TestJavaMaps:
    def test_variant_detection(self, reconciler, map_settings, proc_root):
        make_process(proc_root, 100, exe=OPENJDK_JAVA)
        mapper = reconciler.mapper_for(RuntimeKind.JAVA, ScopeKind.HOST)
        home = mapper.java_home(100)
        assert home == "/usr/lib/jvm/java-8-openjdk-amd64"
        assert mapper.agent_dir_for(home) == map_settings.openjdk_agent_dir
        assert (
            mapper.agent_dir_for("/usr/lib/jvm/java-8-oracle")
            == map_settings.oracle_agent_dir
        )

    def test_find_agent(self, temp_dir):
        base = temp_dir / "agent"
        assert HostJavaMapper.find_agent(base) is None
        out = install_agent(base)
        assert HostJavaMapper.find_agent(base) == out

    def test_incomplete_agent_is_missing(self, temp_dir):
        out = temp_dir / "agent" / "out"
        out.mkdir(parents=True)
        (out / "attach-main.jar").write_text("jar")
        assert HostJavaMapper.find_agent(temp_dir / "agent") is None

    def test_no_agent_writes_sentinel(self, reconciler, map_settings, proc_root):
        make_process(proc_root, 100)
        with patch("mcp_server_vector.perfmaps.subprocess.run") as mock_run:
            result = reconciler.reconcile(100, RuntimeKind.JAVA)
        mock_run.assert_not_called()
        assert result.sentinel
        lines = result.path.read_text().splitlines()
        assert lines == [SENTINEL_ENTRY]
        assert result.path == map_settings.perf_map_dir / "perf-100.map"

    def test_host_attach_with_agent(self, reconciler, map_settings, proc_root):
        make_process(proc_root, 100)
        agent = install_agent(map_settings.oracle_agent_dir)
        map_path = map_settings.perf_map_dir / "perf-100.map"

        def fake_attach(argv, **kwargs):
            map_path.write_text("1000 10 Lcom/Foo;::bar\n")
            return SimpleNamespace(returncode=0, stderr="")

        with (
            patch("mcp_server_vector.perfmaps._process_ids", return_value=(1000, 1000)),
            patch(
                "mcp_server_vector.perfmaps.subprocess.run", side_effect=fake_attach
            ) as mock_run,
        ):
            result = reconciler.reconcile(100, RuntimeKind.JAVA, uninlined=True)

        assert not result.sentinel
        assert result.path == map_path
        argv = mock_run.call_args[0][0]
        assert argv[0] == "/usr/lib/jvm/java-8-oracle/bin/java"
        assert "100" in argv
        assert argv[-1] == "unfoldall"
        assert mock_run.call_args[1]["cwd"] == agent

    def test_host_attach_without_output(self, reconciler, map_settings, proc_root):
        make_process(proc_root, 100)
        install_agent(map_settings.oracle_agent_dir)
        with (
            patch("mcp_server_vector.perfmaps._process_ids", return_value=(0, 0)),
            patch(
                "mcp_server_vector.perfmaps.subprocess.run",
                return_value=SimpleNamespace(returncode=1, stderr="attach failed"),
            ),
        ):
            result = reconciler.reconcile(100, RuntimeKind.JAVA)
        assert result.sentinel

    def test_process_gone_degrades(self, reconciler, map_settings):
        # no /proc entry at all: readlink fails
        result = reconciler.reconcile(999, RuntimeKind.JAVA)
        assert result.sentinel
        assert (map_settings.perf_map_dir / "perf-999.map").exists()

    def test_container_attach_copies_agent(self, reconciler, map_settings, proc_root):
        pid_dir = make_process(proc_root, 200, ns_pid=7)
        install_agent(map_settings.oracle_agent_dir)
        ns_map = pid_dir / "root" / "tmp" / "perf-7.map"

        def fake_nsenter(argv, **kwargs):
            ns_map.parent.mkdir(parents=True, exist_ok=True)
            ns_map.write_text("2000 10 Lcom/Bar;::baz\n")
            return SimpleNamespace(returncode=0, stderr="")

        with (
            patch("mcp_server_vector.perfmaps._process_ids", return_value=(1000, 1000)),
            patch(
                "mcp_server_vector.perfmaps.subprocess.run", side_effect=fake_nsenter
            ) as mock_run,
        ):
            result = reconciler.reconcile(200, RuntimeKind.JAVA)

        copied = pid_dir / "root" / str(map_settings.oracle_agent_dir).lstrip("/")
        assert (copied / "attach-main.jar").exists()
        assert (copied / "libperfmap.so").exists()

        argv = mock_run.call_args[0][0]
        assert argv[:4] == ["nsenter", "-t", "200", "-m"]
        assert "-S" in argv and "-G" in argv
        assert " 7 " in argv[-1] or argv[-1].endswith(" 7 > /dev/null")

        assert not result.sentinel
        assert result.path == map_settings.perf_map_dir / "perf-200.map"
        assert result.path.read_text() == "2000 10 Lcom/Bar;::baz\n"

    def test_container_stale_map_not_reused(self, reconciler, map_settings, proc_root):
        pid_dir = make_process(proc_root, 200, ns_pid=7)
        install_agent(map_settings.oracle_agent_dir)
        ns_map = pid_dir / "root" / "tmp" / "perf-7.map"
        ns_map.parent.mkdir(parents=True)
        ns_map.write_text("1000 10 StaleFromLastRun\n")

        with (
            patch("mcp_server_vector.perfmaps._process_ids", return_value=(0, 0)),
            patch(
                "mcp_server_vector.perfmaps.subprocess.run",
                return_value=SimpleNamespace(returncode=1, stderr="attach failed"),
            ),
        ):
            result = reconciler.reconcile(200, RuntimeKind.JAVA)

        assert result.sentinel
        assert result.path.read_text().splitlines() == [SENTINEL_ENTRY]
        assert not ns_map.exists()

    def test_container_agent_already_inside(self, reconciler, map_settings, proc_root):
        pid_dir = make_process(proc_root, 200, ns_pid=7)
        in_ns = pid_dir / "root" / str(map_settings.oracle_agent_dir).lstrip("/")
        install_agent(in_ns)
        ns_map = pid_dir / "root" / "tmp" / "perf-7.map"

        def fake_nsenter(argv, **kwargs):
            ns_map.parent.mkdir(parents=True, exist_ok=True)
            ns_map.write_text("3000 10 Lcom/Baz;::qux\n")
            return SimpleNamespace(returncode=0, stderr="")

        with (
            patch("mcp_server_vector.perfmaps._process_ids", return_value=(0, 0)),
            patch("mcp_server_vector.perfmaps.shutil.copy2") as mock_copy,
            patch(
                "mcp_server_vector.perfmaps.subprocess.run", side_effect=fake_nsenter
            ) as mock_run,
        ):
            result = reconciler.reconcile(200, RuntimeKind.JAVA)

        mock_copy.assert_not_called()
        expected_dir = str(map_settings.oracle_agent_dir / "out")
        assert mock_run.call_args[0][0][-1].startswith(f"cd {expected_dir} && ")
        assert not result.sentinel

    def test_container_without_agent(self, reconciler, proc_root):
        make_process(proc_root, 200, ns_pid=7)
        with patch("mcp_server_vector.perfmaps._process_ids", return_value=(0, 0)):
            result = reconciler.reconcile(200, RuntimeKind.JAVA)
        assert result.sentinel


class TestNodeMaps:
    def test_host_live_log_renamed_once_and_tidied(
        self, reconciler, map_settings, proc_root
    ):
        make_process(proc_root, 300, exe="/usr/bin/node")
        canonical = map_settings.perf_map_dir / "perf-300.map"
        live = map_settings.perf_map_dir / "perf-300.livemap"
        canonical.write_text("3000 10 c\n1000 10 old\n1000 10 a\n")

        with patch("mcp_server_vector.perfmaps._has_live_log", return_value=True):
            first = reconciler.reconcile(300, RuntimeKind.NODE)
            assert live.exists()
            assert canonical.read_text() == "1000 10 a\n3000 10 c\n"

            # node keeps appending to the renamed log
            with open(live, "a") as fh:
                fh.write("2000 10 b\n")
            second = reconciler.reconcile(300, RuntimeKind.NODE)

        assert not first.sentinel and not second.sentinel
        assert canonical.read_text() == "1000 10 a\n2000 10 b\n3000 10 c\n"

    def test_host_without_logging_writes_sentinel(self, reconciler, proc_root):
        make_process(proc_root, 300, exe="/usr/bin/node")
        with patch("mcp_server_vector.perfmaps._has_live_log", return_value=False):
            result = reconciler.reconcile(300, RuntimeKind.NODE)
        assert result.sentinel

    def test_host_without_logging_keeps_existing_map(
        self, reconciler, map_settings, proc_root
    ):
        make_process(proc_root, 300, exe="/usr/bin/node")
        canonical = map_settings.perf_map_dir / "perf-300.map"
        canonical.write_text("1000 10 a\n")
        with patch("mcp_server_vector.perfmaps._has_live_log", return_value=False):
            result = reconciler.reconcile(300, RuntimeKind.NODE)
        assert not result.sentinel
        assert canonical.read_text() == "1000 10 a\n"

    def test_container_map_tidied_from_namespace_root(
        self, reconciler, map_settings, proc_root
    ):
        pid_dir = make_process(proc_root, 400, ns_pid=9, exe="/usr/bin/node")
        ns_tmp = pid_dir / "root" / "tmp"
        ns_tmp.mkdir(parents=True)
        (ns_tmp / "perf-9.map").write_text("2000 10 b\nbroken\n1000 10 a\n")

        with patch("mcp_server_vector.perfmaps._has_live_log", return_value=True):
            result = reconciler.reconcile(400, RuntimeKind.NODE)

        assert not result.sentinel
        published = map_settings.perf_map_dir / "perf-400.map"
        assert published.read_text() == "1000 10 a\n2000 10 b\n"

    def test_container_map_missing(self, reconciler, proc_root):
        make_process(proc_root, 400, ns_pid=9, exe="/usr/bin/node")
        with patch("mcp_server_vector.perfmaps._has_live_log", return_value=True):
            result = reconciler.reconcile(400, RuntimeKind.NODE)
        assert result.sentinel


class TestScanning:
    def _procs(self, *entries):
        return [SimpleNamespace(info={"pid": pid, "name": name}) for pid, name in entries]

    def test_find_processes_by_exact_name(self, reconciler):
        procs = self._procs((1, "java"), (2, "javac"), (3, "node"), (4, "java"))
        with patch(
            "mcp_server_vector.perfmaps.psutil.process_iter", return_value=procs
        ):
            assert reconciler.find_processes(RuntimeKind.JAVA) == [1, 4]
            assert reconciler.find_processes(RuntimeKind.JAVA, pids=[4, 99]) == [4]
            assert reconciler.find_processes(RuntimeKind.NODE) == [3]

    def test_reconcile_all_restricted(self, reconciler):
        procs = self._procs((1, "java"), (3, "node"), (5, "node"))
        reconcile = MagicMock(
            side_effect=lambda pid, kind, uninlined=False: SimpleNamespace(
                pid=pid, sentinel=kind is RuntimeKind.JAVA
            )
        )
        with (
            patch("mcp_server_vector.perfmaps.psutil.process_iter", return_value=procs),
            patch.object(reconciler, "reconcile", reconcile),
        ):
            maps = reconciler.reconcile_all(pids=[1, 5])
        assert [m.pid for m in maps] == [1, 5]
        reconcile.assert_any_call(1, RuntimeKind.JAVA, False)
        reconcile.assert_any_call(5, RuntimeKind.NODE)

    def test_pick_palette(self, reconciler):
        with patch(
            "mcp_server_vector.perfmaps.psutil.process_iter",
            return_value=self._procs((3, "node")),
        ):
            assert reconciler.pick_palette() == "js"
        with patch(
            "mcp_server_vector.perfmaps.psutil.process_iter",
            return_value=self._procs((1, "java")),
        ):
            assert reconciler.pick_palette() == "java"
