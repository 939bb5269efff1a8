from __future__ import annotations

import re

from ..errors import BadInput

_DIGITS = re.compile(r"[0-9]*")


def validate_context_id(context_id: int | str | None) -> int:
    """Validate a client-context id and return it as a non-negative int.

    None and blank strings raise "context_id is required for session isolation",
    anything else that is not a non-negative integer raises
    "context_id must be a non-negative integer".
    """
    if context_id is None or (isinstance(context_id, str) and not context_id.strip()):
        raise ValueError("context_id is required for session isolation")
    if isinstance(context_id, bool):
        raise ValueError("context_id must be a non-negative integer")
    if isinstance(context_id, str):
        cleaned = context_id.strip()
        if not _DIGITS.fullmatch(cleaned):
            raise ValueError("context_id must be a non-negative integer")
        return int(cleaned)
    if not isinstance(context_id, int) or context_id < 0:
        raise ValueError("context_id must be a non-negative integer")
    return context_id


def parse_seconds(arg: str | int | None, default: int) -> int:
    """Parse the optional duration argument of ``store``.

    Only digit characters are accepted; an empty or missing argument
    falls back to ``default``.
    """
    if arg is None:
        return default
    text = str(arg)
    if not _DIGITS.fullmatch(text):
        raise BadInput(f"Bad duration argument: {text!r}")
    if text == "":
        return default
    return int(text)
