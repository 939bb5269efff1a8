from __future__ import annotations

import bisect
from typing import Iterable

import pandas as pd

_HEX = r"[0-9a-fA-F]+"


def parse_perf_map(lines: Iterable[str]) -> pd.DataFrame:
    """Parse ``START SIZE symbol`` lines into a frame, dropping malformed rows.

    Columns: start, size (ints), symbol, line (original text), order (input position).
    """
    rows = [line.rstrip("\n") for line in lines]
    columns = ["start", "size", "symbol", "line", "order"]
    if not rows:
        return pd.DataFrame(columns=columns)

    raw = pd.Series(rows, dtype="object")
    parts = (
        raw.str.split(" ", n=2, expand=True)
        .reindex(columns=[0, 1, 2])
        .fillna("")
        .astype(str)
    )
    valid = (
        parts[0].str.fullmatch(_HEX)
        & parts[1].str.fullmatch(_HEX)
        & parts[2].str.strip().ne("")
    )
    frame = pd.DataFrame(
        {
            "start": parts[0],
            "size": parts[1],
            "symbol": parts[2],
            "line": raw,
            "order": range(len(raw)),
        }
    )[valid]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    frame = frame.assign(
        start=frame["start"].map(lambda h: int(h, 16)),
        size=frame["size"].map(lambda h: int(h, 16)),
    )
    return frame[frame["size"] > 0].reset_index(drop=True)


def tidy_perf_map(lines: Iterable[str]) -> list[str]:
    """Compact a live JIT symbol log into a clean perf map.

    Runtimes append to their log as code is compiled and moved, so the same
    address range can be described many times. The newest entry for any
    range wins, overlapping older entries are dropped, and the result is
    sorted by start address.
    """
    frame = parse_perf_map(lines)
    if frame.empty:
        return []

    # exact re-registrations first, then resolve partial overlaps newest-first
    frame = frame.drop_duplicates(subset=["start"], keep="last")
    newest_first = frame.sort_values("order", ascending=False)

    starts: list[int] = []
    ends: list[int] = []
    kept: dict[int, str] = {}
    for start, size, line in zip(
        newest_first["start"], newest_first["size"], newest_first["line"]
    ):
        end = start + size
        idx = bisect.bisect_left(starts, start)
        if idx > 0 and ends[idx - 1] > start:
            continue
        if idx < len(starts) and starts[idx] < end:
            continue
        starts.insert(idx, start)
        ends.insert(idx, end)
        kept[start] = line

    return [kept[start] for start in starts]
