import sys
import psutil
import logging

from .status import StoreStats

logger = logging.getLogger(__name__)


def log_system_status(
    store_name: str,
    active_sessions: int = 0,
    store_stats: StoreStats | None = None,
    include_process_rss: bool = True,
) -> None:
    """Log status store, session and system resource stats."""
    try:
        vm = psutil.virtual_memory()
        du = psutil.disk_usage("/")
        process_rss_mb: int | None = None
        if include_process_rss:
            try:
                current_process = psutil.Process()
                process_rss_mb = current_process.memory_info().rss // (1024**2)
            except psutil.Error:
                process_rss_mb = None

        msg = (
            f"StatusStore={store_name} | Active sessions={active_sessions} | "
            f"RAM used={vm.percent:.1f}% "
            f"({vm.used // (1024**2)}MB/{vm.total // (1024**2)}MB) | "
            f"Disk used={du.percent:.1f}% "
            f"({du.used // (1024**3)}GB/{du.total // (1024**3)}GB)"
            + (
                f" | Records={store_stats.total_records} "
                f"(busy={store_stats.busy_records}, done={store_stats.done_records}, "
                f"error={store_stats.error_records})"
                if store_stats is not None
                else ""
            )
            + (
                f" | MCP Process RSS={process_rss_mb}MB"
                if process_rss_mb is not None
                else ""
            )
        )
        logger.info(msg)
        print(f"[MCP-Server] {msg}", file=sys.stderr, flush=True)
    except Exception as exc:  # pragma: no cover
        logger.debug(f"Failed to log system status: {exc}")
