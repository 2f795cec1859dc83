"""Merged, date-bucketed timelines of access sessions and domain contacts.

Reconstruction and filtering happen in memory: session pairing is not a
grouped aggregate the store can compute. Canonical UTC timestamps sort
lexicographically in time order, so plain string comparison orders entries.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace

from aprv.db import Database
from aprv.normalize import DomainRecord
from aprv.sessions import AccessSession, reconstruct_sessions

TYPE_ACCESS = "access"
TYPE_DOMAIN = "domain"


def access_type(stream: str) -> str:
    return f"{TYPE_ACCESS}/{stream}"


@dataclass(frozen=True)
class TimelineEntry:
    """Either an access session or a domain contact, placed in time."""
    timestamp: str
    session: AccessSession | None = None
    domain: DomainRecord | None = None
    count: int = 1

    @classmethod
    def for_session(cls, session: AccessSession) -> TimelineEntry:
        return cls(timestamp=session.start, session=session)

    @classmethod
    def for_domain(cls, record: DomainRecord) -> TimelineEntry:
        return cls(timestamp=record.timestamp, domain=record)

    @property
    def kind(self) -> str:
        return TYPE_ACCESS if self.session is not None else TYPE_DOMAIN

    @property
    def bundle_id(self) -> str:
        if self.session is not None:
            return self.session.bundle_id
        return self.domain.bundle_id


def _session_type_matches(entry_type: str | None, session: AccessSession) -> bool:
    return entry_type in (None, TYPE_ACCESS, access_type(session.stream))


def _domain_type_matches(entry_type: str | None) -> bool:
    return entry_type in (None, TYPE_DOMAIN)


def get_access_summaries_by_date(db: Database, source_file: str, date: str | None = None,
                                 entry_type: str | None = None,
                                 bundle_id: str | None = None) -> dict[str, list[AccessSession]]:
    by_date: dict[str, list[AccessSession]] = defaultdict(list)
    for session in reconstruct_sessions(db.scan_access(source_file)):
        if date and session.date != date:
            continue
        if not _session_type_matches(entry_type, session):
            continue
        if bundle_id and session.bundle_id != bundle_id:
            continue
        by_date[session.date].append(session)
    return dict(by_date)


def get_domain_summaries_by_date(db: Database, source_file: str, date: str | None = None,
                                 entry_type: str | None = None,
                                 bundle_id: str | None = None) -> dict[str, list[DomainRecord]]:
    by_date: dict[str, list[DomainRecord]] = defaultdict(list)
    if not _domain_type_matches(entry_type):
        return {}
    for record in db.scan_domain(source_file):
        if date and record.date != date:
            continue
        if bundle_id and record.bundle_id != bundle_id:
            continue
        by_date[record.date].append(record)
    return dict(by_date)


def get_merged_summaries(db: Database, source_file: str, date: str | None = None,
                         entry_type: str | None = None,
                         bundle_id: str | None = None) -> dict[str, list[TimelineEntry]]:
    """Access sessions and domain contacts for a file, merged per UTC day.

    Days are ordered most recent first, and entries within a day by
    descending timestamp. Ties keep sessions before domains, each in
    scan order.

    entry_type is one of None (everything), "access" (all sessions),
    "access/<stream>" (sessions of one stream) or "domain".
    """
    access = get_access_summaries_by_date(db, source_file, date, entry_type, bundle_id)
    domains = get_domain_summaries_by_date(db, source_file, date, entry_type, bundle_id)

    merged: dict[str, list[TimelineEntry]] = {}
    for day in sorted(access.keys() | domains.keys(), reverse=True):
        entries = [TimelineEntry.for_session(s) for s in access.get(day, [])]
        entries += [TimelineEntry.for_domain(d) for d in domains.get(day, [])]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        merged[day] = entries
    return merged


def coalesce(entries: list[TimelineEntry]) -> list[TimelineEntry]:
    """Collapse runs of open-ended accesses within the same second.

    An address book can be read many times in one second; a run of adjacent
    sessions with the same stream and bundle id whose starts fall in the same
    second, headed by a session without an end, becomes one entry counting
    the run. The head entry is kept, so order and timestamps are unchanged.
    """
    out: list[TimelineEntry] = []
    for entry in entries:
        head = out[-1] if out else None
        if (head is not None and head.session is not None and entry.session is not None
                and head.session.end is None
                and head.session.stream == entry.session.stream
                and head.session.bundle_id == entry.session.bundle_id
                and head.timestamp[:19] == entry.timestamp[:19]):
            out[-1] = replace(head, count=head.count + 1)
        else:
            out.append(entry)
    return out


def list_types(db: Database, source_file: str) -> list[str]:
    """Values accepted as entry_type for this file."""
    streams = db.list_access_types(source_file)
    types = [TYPE_ACCESS] + [access_type(s) for s in streams] if streams else []
    if db.count("domain", source_file):
        types.append(TYPE_DOMAIN)
    return types
