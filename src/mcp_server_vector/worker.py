"""
Session Worker

One background thread per admitted ``store``. The worker walks a fixed
state sequence once and leaves a terminal record behind:

    INIT -> ACQUIRE -> SAMPLE -> POSTPROCESS -> DONE | ERROR

Design notes:
- The worker is the only writer of its session key while it is alive
- ``Usage: ...`` and then the plain ``DONE`` are the last two writes, so the
  dispatcher's one-shot delivery only ever sees a finished artifact
- The cancellation token is checked at every poll and between
  post-processing steps; a tripped token stops the sampler and ends the
  session with ``ERROR cancelled``
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .base_status_store import StatusStore
from .config import VectorSettings
from .errors import (
    PrerequisiteMissing,
    SessionCancelled,
    SessionError,
    ToolFailure,
)
from .folding import FoldContext, fold, render_flamegraph
from .namespaces import NamespaceResolver
from .perfmaps import SymbolMapReconciler
from .session import ResourceUsage, Session
from .status import DONE, error_status
from .tasks import TaskProfile, has_pebs
from .utils.process_utils import terminate_process

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    INIT = "init"
    ACQUIRE = "acquire"
    SAMPLE = "sample"
    POSTPROCESS = "postprocess"
    DONE = "done"
    ERROR = "error"


class SessionWorker(threading.Thread):
    """Runs one profiling session end to end."""

    def __init__(
        self,
        session: Session,
        profile: TaskProfile,
        store: StatusStore,
        settings: VectorSettings,
        resolver: Optional[NamespaceResolver] = None,
        reconciler: Optional[SymbolMapReconciler] = None,
        on_exit: Optional[Callable[["SessionWorker"], None]] = None,
    ) -> None:
        super().__init__(name=f"vector-{session.key}", daemon=True)
        self.session = session
        self.profile = profile
        self.state = WorkerState.INIT
        self.cancel_token = threading.Event()
        self._store = store
        self._settings = settings
        self._resolver = resolver or NamespaceResolver(
            engine=settings.container_engine, cgroup_root=settings.cgroup_root
        )
        self._reconciler = reconciler or SymbolMapReconciler(settings)
        self._on_exit = on_exit
        self._events: tuple[str, ...] = ()

    # Paths

    @property
    def working_dir(self) -> Path:
        return self._settings.metric_working_dir(self.profile.metric)

    @property
    def website_dir(self) -> Path:
        return self._settings.metric_website_dir(self.profile.metric)

    @property
    def svg_path(self) -> Path:
        return self.website_dir / f"{self.session.key}.svg"

    @property
    def folded_path(self) -> Path:
        return self.working_dir / f"{self.session.key}.folded"

    @property
    def raw_path(self) -> Path:
        # shared per metric directory, so suffix with our thread id
        prefix = "perf.data" if self.profile.sampler == "perf" else "bcc.folded"
        return self.working_dir / f"{prefix}.{self.session.worker_id}"

    @property
    def sampler_log_path(self) -> Path:
        return self.working_dir / f"sampler.{self.session.worker_id}.log"

    def cancel(self) -> None:
        self.cancel_token.set()

    def _status(self, message: str) -> None:
        self._store.set_status(self.session.key, message)
        logger.debug(f"[{self.session.key}] {message}")

    def _check_cancelled(self) -> None:
        if self.cancel_token.is_set():
            raise SessionCancelled("cancelled")

    def _enter(self, state: WorkerState) -> None:
        self._check_cancelled()
        self.state = state
        logger.debug(f"[{self.session.key}] -> {state.name}")

    # Thread body

    def run(self) -> None:
        self.session.worker_id = threading.get_native_id()
        logger.info(
            f"Session {self.session.key} start, {self.session.seconds}s, "
            f"container={self.session.container or ''}"
        )
        try:
            self._init()
            self._enter(WorkerState.ACQUIRE)
            self._acquire()
            self._enter(WorkerState.SAMPLE)
            self._sample()
            self._enter(WorkerState.POSTPROCESS)
            self._postprocess()
            self._finish()
        except SessionError as e:
            self._fail(str(e))
        except Exception as e:
            logger.exception(f"Session {self.session.key} crashed")
            self._fail(f"{type(e).__name__}: {e}")
        finally:
            if self._on_exit is not None:
                self._on_exit(self)

    def _fail(self, detail: str) -> None:
        self.state = WorkerState.ERROR
        try:
            self._status(error_status(detail))
        except Exception as e:
            logger.error(f"Could not record failure of {self.session.key}: {e}")
        logger.warning(f"Session {self.session.key} failed: {detail}")

    # States

    def _init(self) -> None:
        self.working_dir.mkdir(parents=True, exist_ok=True)
        self.website_dir.mkdir(parents=True, exist_ok=True)
        self.svg_path.unlink(missing_ok=True)

        missing = self.profile.check_prerequisites(self._settings)
        if missing:
            raise PrerequisiteMissing(missing)
        self._status(f"{self.profile.verb} for {self.session.seconds} seconds")

    def _acquire(self) -> None:
        name = self.session.container
        if not name:
            return
        if not self._settings.container_aware:
            logger.info(f"Container {name} ignored, container support disabled")
            return
        self.session.scope = self._resolver.resolve_container(name)

    def _sampler_argv(self) -> list[str]:
        seconds = str(self.session.seconds)
        if self.profile.sampler == "bcc":
            tool = self._settings.bcc_tool(self.profile.bcc_tool or "")
            return [str(tool), *self.profile.bcc_args, seconds]

        argv = [self._settings.perf_bin, "record", "-o", str(self.raw_path)]
        for event in self._events:
            argv.extend(["-e", event])
        argv.extend(self.profile.perf_args)
        argv.append("-a")
        scope = self.session.scope
        if scope is not None and self.profile.container_aware:
            if not self._events:
                # perf applies cgroups to the preceding events
                argv.extend(["-e", "cpu-clock"])
            count = max(len(self._events), 1)
            argv.append("--cgroup=" + ",".join([scope.cgroup] * count))
        argv.extend(["sleep", seconds])
        return argv

    def _sample(self) -> None:
        profile = self.profile
        seconds = self.session.seconds
        self._events = profile.resolve_events(self._settings)
        if profile.precise_events:
            self._status(
                "Using perf events: " + " ".join(f"-e {e}" for e in self._events)
            )

        argv = self._sampler_argv()
        logger.info(f"[{self.session.key}] {' '.join(argv)}")
        env = dict(os.environ, **self._settings.extra_env)

        with open(self.sampler_log_path, "wb") as log:
            out = open(self.raw_path, "wb") if profile.sampler == "bcc" else None
            try:
                try:
                    proc = subprocess.Popen(
                        argv,
                        stdout=out if out is not None else subprocess.DEVNULL,
                        stderr=log,
                        env=env,
                    )
                except OSError as e:
                    raise ToolFailure(f"{profile.failure_hint} ({e})")
                try:
                    returncode = self._wait_sampler(proc, seconds)
                finally:
                    terminate_process(proc)
            finally:
                if out is not None:
                    out.close()

        if returncode != 0:
            logger.warning(
                f"[{self.session.key}] sampler exited with {returncode}, "
                f"see {self.sampler_log_path}"
            )
            raise ToolFailure(profile.failure_hint)

    def _wait_sampler(self, proc: subprocess.Popen, seconds: int) -> int:
        """Poll the sampler until it exits, reporting progress on the way."""
        settings = self._settings
        started = time.monotonic()
        next_report = settings.progress_interval
        deadline = seconds + settings.sample_grace

        while True:
            if self.cancel_token.wait(settings.poll_interval):
                raise SessionCancelled("cancelled")
            returncode = proc.poll()
            if returncode is not None:
                return returncode

            elapsed = time.monotonic() - started
            if elapsed > deadline:
                raise ToolFailure(
                    f"{self.profile.failure_hint} (no exit after {elapsed:.0f}s)"
                )
            if next_report <= seconds and elapsed >= next_report:
                self._status(
                    f"{self.profile.verb} for {seconds} seconds "
                    f"({next_report:g}/{seconds})"
                )
                next_report += settings.progress_interval

    def _lower_priority(self) -> None:
        try:
            os.setpriority(
                os.PRIO_PROCESS, self.session.worker_id, self._settings.worker_nice
            )
        except OSError as e:
            logger.debug(f"Could not renice worker {self.session.worker_id}: {e}")

    def _title(self) -> str:
        where = self.session.container or socket.gethostname()
        stamp = time.strftime("%Y-%m-%d_%H:%M:%S")
        return f"{self.profile.title}: {where}, {stamp}"

    def _postprocess(self) -> None:
        profile = self.profile
        self._lower_priority()

        self._status("Collecting symbol maps")
        self._reconciler.reconcile_all(self.session.target_pids, profile.uninlined)
        color = profile.color or self._reconciler.pick_palette()
        self._check_cancelled()

        self._status("Processing profile")
        plan = fold(
            FoldContext(
                settings=self._settings,
                profile=profile,
                raw=self.raw_path,
                folded=self.folded_path,
                events=self._events,
                pebs=profile.precise_events and has_pebs(self._settings),
            )
        )
        self._check_cancelled()

        self._status("Flame Graph generation")
        render_flamegraph(
            self._settings,
            plan,
            self.svg_path,
            title=self._title(),
            color=color,
            countname=profile.countname,
        )

    def _finish(self) -> None:
        self.session.usage = ResourceUsage.for_current_thread()
        self._status(f"Usage: {self.session.usage}")
        self.state = WorkerState.DONE
        self._status(DONE)
        logger.info(f"Session {self.session.key} done")
