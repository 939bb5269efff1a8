"""
Status Types and Helpers

This module contains the status record vocabulary used between the
dispatcher and the session workers.

A status record is a single short line of text stored per session key:
- absent: the key is idle
- "REQUESTED": the request was admitted
- "DONE[ <artifact-ref>]": the session finished
- "ERROR[ <detail>]": the session failed
- anything else: a free-form progress message
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

IDLE = "IDLE"
REQUESTED = "REQUESTED"
DONE = "DONE"
ERROR = "ERROR"
UNKNOWN = "UNKNOWN"


class StatusKind(Enum):
    """Classification of a status record."""

    IDLE = "idle"
    REQUESTED = "requested"
    PROGRESS = "progress"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class SessionKey:
    """(metric, client-context id) pair identifying one schedulable unit of work."""

    metric: str
    context_id: int

    def __str__(self) -> str:
        return f"{self.metric}.{self.context_id}"


def first_line(text: str) -> str:
    """Return the significant part of a status record (its first line)."""
    return text.split("\n", 1)[0].rstrip("\r")


def classify_status(text: str | None) -> StatusKind:
    """Classify a raw status record."""
    if text is None:
        return StatusKind.IDLE
    if text == DONE or text.startswith(DONE + " "):
        return StatusKind.DONE
    if text.startswith(ERROR):
        return StatusKind.ERROR
    if text == REQUESTED:
        return StatusKind.REQUESTED
    return StatusKind.PROGRESS


def is_terminal(text: str | None) -> bool:
    """True for records a new ``store`` may replace (DONE or ERROR)."""
    return classify_status(text) in (StatusKind.DONE, StatusKind.ERROR)


def artifact_ref(metric: str, context_id: int) -> str:
    """Artifact reference reported with DONE, relative to the website dir."""
    return f"{metric}/{metric}.{context_id}.svg"


def done_status(ref: str | None = None) -> str:
    return f"{DONE} {ref}" if ref else DONE


def error_status(detail: str | None = None) -> str:
    detail = first_line(detail or "").strip()
    return f"{ERROR} {detail}" if detail else ERROR


@dataclass
class StoreStats:
    """Status store statistics for monitoring."""

    total_records: int
    busy_records: int
    done_records: int
    error_records: int
    backend: str


def summarize_records(records: dict[str, str], backend: str) -> StoreStats:
    """Count records by kind."""
    kinds = [classify_status(text) for text in records.values()]
    return StoreStats(
        total_records=len(kinds),
        busy_records=sum(
            1 for k in kinds if k in (StatusKind.REQUESTED, StatusKind.PROGRESS)
        ),
        done_records=kinds.count(StatusKind.DONE),
        error_records=kinds.count(StatusKind.ERROR),
        backend=backend,
    )
