"""
Task Errors

This module contains the exception taxonomy shared by the dispatcher and the
session workers.

Synchronous errors (raised straight back to the caller of ``store``):
- BadInput: malformed duration argument
- AgainLater: a session for the same key is still in flight
- UnknownMetric: the metric has no task profile

Session errors (only observable through ``fetch`` as an ``ERROR`` record):
- PrerequisiteMissing, ContainerNotFound, ToolFailure, RenderFailure,
  SessionCancelled
"""


class VectorError(Exception):
    """Base class for every error raised by the task server."""


class BadInput(VectorError, ValueError):
    """The request argument failed validation; no session was created."""


class AgainLater(VectorError):
    """The session key is busy; the caller should retry later."""


class UnknownMetric(VectorError, KeyError):
    """No task profile is registered under the requested metric name."""

    def __str__(self) -> str:
        # KeyError quotes its argument, keep the plain message instead
        return str(self.args[0]) if self.args else "unknown metric"


class SessionError(VectorError):
    """
    Terminal failure of a session worker.

    The message becomes the detail of the ``ERROR <detail>`` status record.
    """


class PrerequisiteMissing(SessionError):
    """A required tool or kernel capability is not available."""


class ContainerNotFound(SessionError):
    """The container scope could not be resolved to a cgroup."""


class ToolFailure(SessionError):
    """The instrumentation tool exited early or with a nonzero status."""


class RenderFailure(SessionError):
    """Folding or flame graph rendering failed or timed out."""


class SessionCancelled(SessionError):
    """The worker's cancellation token was tripped."""


class SymbolMapDegraded(VectorError):
    """
    A symbol map could not be produced and a sentinel map was written.

    Never reaches the session status; reconcilers log it as a warning.
    """
