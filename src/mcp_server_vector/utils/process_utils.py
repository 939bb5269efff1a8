"""Helpers for running external instrumentation and post-processing tools."""

from __future__ import annotations

import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO, List, Optional, Sequence


class PipelineError(RuntimeError):
    pass


def terminate_process(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    """Stop a child politely, then forcefully."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _stderr_tail(handle: IO[bytes], limit: int = 300) -> str:
    handle.seek(0)
    text = handle.read().decode("utf-8", errors="replace").strip()
    return text[-limit:]


def run_pipeline(
    commands: Sequence[Sequence[str]],
    timeout: float,
    stdin: Optional[IO] = None,
    stdout: Optional[IO] = None,
) -> str:
    """Run ``cmd1 | cmd2 | ...`` with one overall timeout.

    Output of the last command is returned as text, unless ``stdout`` is
    given, in which case it is written there and "" is returned. Any
    nonzero exit, a missing executable or the timeout raise PipelineError.
    """
    if not commands:
        raise ValueError("empty pipeline")

    procs: List[subprocess.Popen] = []
    with tempfile.TemporaryFile() as errors:
        try:
            upstream = stdin
            for i, argv in enumerate(commands):
                last = i == len(commands) - 1
                proc = subprocess.Popen(
                    list(argv),
                    stdin=upstream,
                    stdout=(stdout if last and stdout is not None else subprocess.PIPE),
                    stderr=errors,
                )
                if procs and procs[-1].stdout is not None:
                    # let the upstream command see SIGPIPE if we exit early
                    procs[-1].stdout.close()
                procs.append(proc)
                upstream = proc.stdout
        except OSError as e:
            for proc in procs:
                terminate_process(proc)
            raise PipelineError(f"{argv[0]}: {e}")

        deadline = time.monotonic() + timeout
        try:
            out, _ = procs[-1].communicate(timeout=timeout)
            for proc in procs[:-1]:
                proc.wait(timeout=max(deadline - time.monotonic(), 0.1))
        except subprocess.TimeoutExpired:
            for proc in procs:
                terminate_process(proc, timeout=1.0)
            raise PipelineError(f"{commands[0][0]} pipeline timed out after {timeout:.0f}s")

        for argv, proc in zip(commands, procs):
            if proc.returncode != 0:
                raise PipelineError(
                    f"{Path(argv[0]).name} exited with {proc.returncode}: "
                    f"{_stderr_tail(errors)}"
                )

    if out is None:
        return ""
    return out.decode("utf-8", errors="replace")
