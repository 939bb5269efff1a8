import logging
import sys
import threading

# FastMCP 2.0 import
from fastmcp import FastMCP

# Status management
from .base_status_store import StatusStore
from .config import VectorSettings
from .diskcache_status_store import DiskCacheStatusStore
from .errors import AgainLater, BadInput
from .in_memory_status_store import InMemoryStatusStore
from .session import Session
from .status import IDLE, DONE, UNKNOWN, SessionKey, artifact_ref, done_status, error_status
from .system_utils import log_system_status
from .tasks import get_profile, list_profiles
from .utils.session_utils import parse_seconds, validate_context_id
from .worker import SessionWorker

logger = logging.getLogger(__name__)
# Ensure logs are visible in the FastMCP subprocess even if no handlers configured
if not logger.handlers:
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setLevel(logging.INFO)
    _formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    _handler.setFormatter(_formatter)
    logger.addHandler(_handler)
logger.setLevel(logging.INFO)
logger.info("Starting FastMCP 2.0 vector task server")

# Create FastMCP instance
mcp = FastMCP("Vector Task Server")

HELP_TEXT = """
Background profiling tasks. Start one with store_task(metric, context_id,
seconds), then poll fetch_task(metric, context_id) until it returns a
message beginning with DONE (the flame graph location, delivered once) or
ERROR (kept until the next store_task for the same metric and context).
set_container(context_id, name) scopes later tasks of that context to one
container; an empty name goes back to the whole host.
"""


def build_status_store(settings: VectorSettings) -> StatusStore:
    """Create the status store selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryStatusStore(ttl_seconds=settings.status_ttl_seconds)
    if settings.store_backend == "diskcache":
        return DiskCacheStatusStore(
            cache_dir=settings.store_dir,
            ttl_seconds=settings.status_ttl_seconds,
        )
    raise ValueError(f"Unknown status store backend: {settings.store_backend}")


# TaskDispatcher class with single-flight admission per session key
class TaskDispatcher:
    def __init__(
        self,
        status_store: StatusStore | None = None,
        settings: VectorSettings | None = None,
        worker_factory=SessionWorker,
    ):
        self.settings = settings or VectorSettings.from_env()
        self.status_store = status_store or build_status_store(self.settings)
        self._worker_factory = worker_factory
        # Active container name per client context: {context_id: name}
        self._containers: dict[int, str] = {}
        self._workers: dict[SessionKey, SessionWorker] = {}
        self._lock = threading.Lock()

        if self.settings.reset_on_start:
            self.reset_statuses()

        print(
            f"[MCP-DEBUG] TaskDispatcher initialized with {self.status_store.__class__.__name__}",
            file=sys.stderr,
        )

    def log_system_status(self) -> None:
        """Delegate to system utils for logging."""
        log_system_status(
            self.status_store.__class__.__name__,
            active_sessions=len(self.active_sessions()),
            store_stats=self.status_store.get_store_stats(),
        )

    def reset_statuses(self) -> None:
        """Drop records left behind by a previous run."""
        self.status_store.clear()
        logger.info("Cleared stale status records")

    def set_container(self, context_id: int, name: str | None) -> str:
        """Set or clear the container scope for later stores of a context."""
        name = (name or "").strip()
        with self._lock:
            if name:
                self._containers[context_id] = name
            else:
                self._containers.pop(context_id, None)
        if name:
            return f"Container scope for context {context_id}: {name}"
        return f"Container scope for context {context_id} cleared"

    def container_for(self, context_id: int) -> str | None:
        with self._lock:
            return self._containers.get(context_id)

    def active_sessions(self) -> list[Session]:
        with self._lock:
            return [w.session for w in self._workers.values() if w.is_alive()]

    def _worker_exited(self, worker: SessionWorker) -> None:
        with self._lock:
            if self._workers.get(worker.session.key) is worker:
                del self._workers[worker.session.key]

    def store(self, metric: str, context_id: int, arg: str | None = None) -> str:
        """Start a session for (metric, context_id) unless one is in flight."""
        profile = get_profile(metric)
        seconds = parse_seconds(arg, profile.default_seconds)
        limit = self.settings.max_duration
        if limit is not None and seconds > limit:
            raise BadInput(f"Duration {seconds}s exceeds the {limit}s limit")

        key = SessionKey(metric, context_id)
        with self._lock:
            # registered workers count from admission until their thread exits
            running = len(self._workers)
            limit = self.settings.max_sessions
            if limit is not None and running >= limit:
                raise AgainLater(f"{running} sessions running, try again later")
            if not self.status_store.admit(key):
                raise AgainLater(f"{key} is busy, try again later")

            session = Session(
                key=key, seconds=seconds, container=self._containers.get(context_id)
            )
            worker = self._worker_factory(
                session,
                profile,
                self.status_store,
                self.settings,
                on_exit=self._worker_exited,
            )
            self._workers[key] = worker

        try:
            worker.start()
        except RuntimeError as e:
            self._worker_exited(worker)
            self.status_store.set_status(key, error_status(f"worker start failed: {e}"))
            raise AgainLater(f"Could not start a worker for {key}: {e}")

        print(
            f"[MCP-DEBUG] store: admitted {key} for {seconds}s, container={session.container}",
            file=sys.stderr,
        )
        return "OK"

    def fetch(self, metric: str, context_id: int) -> str:
        """Report the status of (metric, context_id); DONE is delivered once."""
        get_profile(metric)
        key = SessionKey(metric, context_id)
        status = self.status_store.get_status(key)
        if status is None:
            return IDLE
        if not status.strip():
            return UNKNOWN
        if status != DONE:
            return status

        if self.status_store.consume(key, DONE):
            return done_status(artifact_ref(metric, context_id))
        # another caller got there first
        return self.status_store.get_status(key) or IDLE

    def statuses_for(self, context_id: int) -> dict[str, str]:
        """Raw status of every metric for a context, without consuming DONE."""
        return {
            profile.metric: self.status_store.get_status(
                SessionKey(profile.metric, context_id)
            )
            or IDLE
            for profile in list_profiles()
        }

    def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every running worker and wait for them to finish."""
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        for worker in workers:
            worker.join(timeout)
            if worker.is_alive():
                logger.warning(f"Worker for {worker.session.key} did not stop")


# Global dispatcher instance
dispatcher = TaskDispatcher()


# === TOOLS ===
@mcp.tool
def store_task(metric: str, context_id: int, seconds: str | None = None) -> str:
    """Start a background profiling task for one client context.

    Args:
        metric: Task metric name, e.g. cpuflamegraph (see vector://tasks)
        context_id: Client context id; sessions are isolated per context
        seconds: Optional duration, digits only; the task default when empty

    Returns:
        "OK" once the task is running in the background
    """
    context_id = validate_context_id(context_id)

    # Log environment at tool entry
    dispatcher.log_system_status()
    return dispatcher.store(metric, context_id, seconds)


@mcp.tool
def fetch_task(metric: str, context_id: int) -> str:
    """Poll the status of a background profiling task.

    Args:
        metric: Task metric name
        context_id: Client context id

    Returns:
        IDLE, REQUESTED, a progress message, "DONE <svg path>" (once) or "ERROR <detail>"
    """
    context_id = validate_context_id(context_id)
    return dispatcher.fetch(metric, context_id)


@mcp.tool
def set_container(context_id: int, container_name: str | None = None) -> str:
    """Scope later tasks of a client context to one container.

    Args:
        context_id: Client context id
        container_name: Container name or id; empty to profile the whole host

    Returns:
        Confirmation message
    """
    context_id = validate_context_id(context_id)
    return dispatcher.set_container(context_id, container_name)


# === RESOURCES ===
@mcp.resource("vector://tasks")
def list_tasks() -> str:
    """Available task metrics and how to use them."""
    lines = [
        f"{p.metric}: {p.description} (default {p.default_seconds}s)"
        for p in list_profiles()
    ]
    return HELP_TEXT.strip() + "\n\nTask metrics:\n" + "\n".join(lines)


@mcp.resource("vector://status/{context_id}")
def get_context_status(context_id: str) -> str:
    """Current status of every task metric for a client context."""
    try:
        ctx = validate_context_id(context_id)
    except ValueError:
        return "Invalid context_id - cannot retrieve task status"

    statuses = dispatcher.statuses_for(ctx)
    container = dispatcher.container_for(ctx)
    header = f"Context {ctx} (container: {container or 'host'})"
    return header + "\n" + "\n".join(f"{m}: {s}" for m, s in statuses.items())


# === MAIN ENTRY POINT ===
def main():
    """Main entry point for the FastMCP 2.0 server."""
    try:
        mcp.run()
    finally:
        dispatcher.shutdown()


if __name__ == "__main__":
    main()
