"""Unit tests for the task catalogue and its prerequisite checks."""

from dataclasses import replace

import pytest

from mcp_server_vector.errors import UnknownMetric
from mcp_server_vector.tasks import (
    PROFILES,
    bcc_tool,
    bpf_stacks_available,
    flamegraph_software,
    get_profile,
    has_pebs,
    list_profiles,
    perf_installed,
    pmcs_available,
    tracepoint,
)

EXPECTED_METRICS = {
    "cpuflamegraph",
    "pnamecpuflamegraph",
    "uninlinedcpuflamegraph",
    "pagefaultflamegraph",
    "diskioflamegraph",
    "ipcflamegraph",
    "cswflamegraph",
    "offcpuflamegraph",
    "offwakeflamegraph",
}


class TestCatalogue:
    def test_all_metrics_registered(self):
        assert set(PROFILES) == EXPECTED_METRICS
        assert {p.metric for p in list_profiles()} == EXPECTED_METRICS

    def test_get_profile(self):
        profile = get_profile("cpuflamegraph")
        assert profile.default_seconds == 60
        assert profile.filter_idle
        assert profile.sampler == "perf"

    def test_unknown_metric(self):
        with pytest.raises(UnknownMetric, match="Unknown task metric: nope"):
            get_profile("nope")

    def test_bcc_profiles_are_not_container_scoped(self):
        for metric in ("offcpuflamegraph", "offwakeflamegraph"):
            profile = get_profile(metric)
            assert profile.sampler == "bcc"
            assert not profile.container_aware
            assert profile.folding == "bcc_folded"

    def test_offcpu_scales_to_ms(self):
        profile = get_profile("offcpuflamegraph")
        assert profile.scale_to_ms
        assert profile.countname == "ms"
        assert profile.default_seconds == 10

    def test_uninlined_profile(self):
        assert get_profile("uninlinedcpuflamegraph").uninlined
        assert not get_profile("cpuflamegraph").uninlined


class TestPrerequisites:
    def test_flamegraph_software(self, settings, temp_dir):
        assert flamegraph_software(settings) is None
        missing = replace(settings, flamegraph_dir=temp_dir / "nowhere")
        assert flamegraph_software(missing) == "Flame graph software missing"

    def test_flamegraph_checked_first(self, settings, temp_dir):
        missing = replace(
            settings, flamegraph_dir=temp_dir / "nowhere", perf_bin="no-such-perf"
        )
        assert (
            get_profile("cpuflamegraph").check_prerequisites(missing)
            == "Flame graph software missing"
        )

    def test_perf_installed(self, settings):
        assert perf_installed(settings) is None
        result = perf_installed(replace(settings, perf_bin="no-such-perf-binary"))
        assert "perf not installed" in result

    def test_pmcs_available(self, settings):
        assert "PMCs not available" in pmcs_available(settings)
        events = settings.pmc_events_dir
        events.mkdir(parents=True)
        (events / "cpu-cycles").write_text("event=0x3c")
        assert pmcs_available(settings) is not None
        (events / "instructions").write_text("event=0xc0")
        assert pmcs_available(settings) is None

    def test_bpf_stacks_available(self, settings):
        assert "BPF stacks not available" in bpf_stacks_available(settings)
        settings.kallsyms_path.write_text(
            "ffffffff81000000 T _stext\nffffffff81190000 T bpf_get_stackid_tp\n"
        )
        assert bpf_stacks_available(settings) is not None
        settings.kallsyms_path.write_text(
            "ffffffff81000000 T _stext\nffffffff81180000 T bpf_get_stackid\n"
        )
        assert bpf_stacks_available(settings) is None

    def test_bcc_tool(self, settings):
        assert bcc_tool("offcputime")(settings) is None
        assert "offwaketime not installed" in bcc_tool("offwaketime")(settings)

    def test_tracepoint(self, settings):
        check = tracepoint("block", "block_rq_insert")
        assert "block:block_rq_insert" in check(settings)
        (settings.tracing_dir / "events" / "block" / "block_rq_insert").mkdir(
            parents=True
        )
        assert check(settings) is None

    def test_offcpu_prerequisites(self, settings):
        profile = get_profile("offcpuflamegraph")
        assert "BPF stacks" in profile.check_prerequisites(settings)
        settings.kallsyms_path.write_text("ffffffff81180000 T bpf_get_stackid\n")
        assert profile.check_prerequisites(settings) is None


class TestEvents:
    def test_pebs_marks_events_precise(self, settings):
        profile = get_profile("ipcflamegraph")
        assert not has_pebs(settings)
        assert profile.resolve_events(settings) == ("cpu-cycles", "instructions")
        settings.cpuinfo_path.write_text("flags\t: fpu pebs bts\n")
        assert has_pebs(settings)
        assert profile.resolve_events(settings) == ("cpu-cycles:p", "instructions:p")

    def test_plain_events_unchanged(self, settings):
        settings.cpuinfo_path.write_text("flags\t: pebs\n")
        assert get_profile("cswflamegraph").resolve_events(settings) == ("cs",)
