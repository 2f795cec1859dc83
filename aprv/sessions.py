"""Rebuild access sessions from start/end event pairs.

An app's access to a resource is logged as separate events sharing one
identifier: an interval start and an interval end, or a single point event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from aprv.normalize import AccessRecord


@dataclass(frozen=True)
class AccessSession:
    session_id: str
    date: str
    stream: str
    bundle_id: str
    start: str
    end: str | None = None
    # True when only the end event was seen and its time stands in for the start
    start_estimated: bool = False


@dataclass
class _Fold:
    first: AccessRecord
    start: str | None = None
    end: str | None = None


def reconstruct_sessions(records: Iterable[AccessRecord]) -> list[AccessSession]:
    """Fold access records into one session per session id.

    Records are scanned in line order. The first record of a session supplies
    its stream and bundle id, the first end event its end, and the first
    non-end event its start. Sessions come back in first-seen order.
    """
    folds: dict[str, _Fold] = {}
    for record in sorted(records, key=lambda r: r.line_number):
        fold = folds.get(record.session_id)
        if fold is None:
            fold = folds[record.session_id] = _Fold(first=record)
        if record.is_end:
            if fold.end is None:
                fold.end = record.timestamp
        elif fold.start is None:
            fold.start = record.timestamp

    sessions = []
    for session_id, fold in folds.items():
        # A fold always holds at least one record, so start or end is set.
        start = fold.start if fold.start is not None else fold.end
        sessions.append(AccessSession(
            session_id=session_id,
            date=start[:10],
            stream=fold.first.stream_or_category,
            bundle_id=fold.first.accessor_id,
            start=start,
            end=fold.end,
            start_estimated=fold.start is None,
        ))
    return sessions
