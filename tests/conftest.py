"""Shared pytest fixtures for vector task server tests."""

import os
import shutil
import stat
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Keep the module-level dispatcher of the server off the filesystem
os.environ.setdefault("VECTOR_STORE_BACKEND", "memory")

from mcp_server_vector.config import VectorSettings  # noqa: E402
from mcp_server_vector.in_memory_status_store import InMemoryStatusStore  # noqa: E402


FAKE_PERF = """#!/bin/sh
cmd="$1"; shift
case "$cmd" in
record)
    [ "$FAKE_PERF_FAIL" = "1" ] && { echo "perf_event_open failed" >&2; exit 1; }
    out=""
    while [ $# -gt 0 ]; do
        case "$1" in
            -o) out="$2"; shift 2 ;;
            sleep) sleep "$2"; break ;;
            *) shift ;;
        esac
    done
    echo "raw samples" > "$out"
    ;;
script)
    echo "java 4242 cycles:"
    ;;
report)
    echo "# Samples: 10 of event 'cpu-cycles'"
    echo "# Event count (approx.): 200"
    echo "# Samples: 10 of event 'instructions'"
    echo "# Event count (approx.): 300"
    ;;
esac
"""

FAKE_STACKCOLLAPSE = """#!/bin/sh
cat > /dev/null
echo "java;main;work 10"
echo "swapper;cpu_idle 5"
echo "swapper;cpuidle_enter 3"
"""

FAKE_FLAMEGRAPH = """#!/bin/sh
echo "<svg args=\\"$*\\">"
cat
echo "</svg>"
"""

FAKE_OFFCPUTIME = """#!/bin/sh
sleep "$2"
echo "bash;read 2500"
echo "java;park 1000"
"""


def _write_tool(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def temp_dir():
    """Create a temporary directory, removed after the test."""
    path = tempfile.mkdtemp()
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def fake_tools(temp_dir):
    """Fake perf, FlameGraph and bcc tools that finish quickly."""
    fg_dir = temp_dir / "FlameGraph"
    bcc_dir = temp_dir / "bcc"
    bin_dir = temp_dir / "bin"
    for d in (fg_dir, bcc_dir, bin_dir):
        d.mkdir()
    _write_tool(fg_dir / "stackcollapse-perf.pl", FAKE_STACKCOLLAPSE)
    _write_tool(fg_dir / "flamegraph.pl", FAKE_FLAMEGRAPH)
    _write_tool(bcc_dir / "offcputime", FAKE_OFFCPUTIME)
    perf = _write_tool(bin_dir / "perf", FAKE_PERF)
    return {"flamegraph_dir": fg_dir, "bcc_dir": bcc_dir, "perf": perf}


@pytest.fixture
def settings(temp_dir, fake_tools):
    """Settings pointing every directory and tool at the temp area."""
    maps = temp_dir / "maps"
    maps.mkdir()
    return VectorSettings(
        store_backend="memory",
        store_dir=temp_dir / "status",
        working_dir=temp_dir / "working",
        website_dir=temp_dir / "website",
        perf_map_dir=maps,
        perf_bin=str(fake_tools["perf"]),
        flamegraph_dir=fake_tools["flamegraph_dir"],
        bcc_dir=fake_tools["bcc_dir"],
        cgroup_root=temp_dir / "cgroup",
        pmc_events_dir=temp_dir / "events",
        kallsyms_path=temp_dir / "kallsyms",
        cpuinfo_path=temp_dir / "cpuinfo",
        tracing_dir=temp_dir / "tracing",
        poll_interval=0.05,
        progress_interval=0.5,
        sample_grace=10.0,
        processing_timeout=10.0,
    )


@pytest.fixture
def memory_store():
    """Create a fresh InMemoryStatusStore."""
    store = InMemoryStatusStore()
    yield store
    store.close()


@pytest.fixture
def fake_reconciler():
    """Symbol map reconciler that finds no JIT processes."""
    reconciler = MagicMock()
    reconciler.reconcile_all.return_value = []
    reconciler.pick_palette.return_value = "java"
    return reconciler
