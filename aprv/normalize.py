"""Normalize detected records into the canonical persisted shape.

All timestamps are stored as UTC with millisecond precision
("2021-06-08T23:48:49.573Z") so that plain string comparison orders them
chronologically and the first ten characters are the UTC calendar day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from aprv.config import END_OF_INTERVAL, STREAM_PREFIX
from aprv.schema import DetectedRecord, RecordFormat, ReportFormatError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessRecord:
    """One access event from a report file."""
    source_file: str
    line_number: int
    stream_or_category: str
    accessor_id: str
    accessor_id_type: str
    kind: str
    session_id: str
    timestamp: str
    stream: str | None = None
    tcc_service: str | None = None
    category: str | None = None
    format_version: int | None = None
    out_of_process: bool | None = None

    @property
    def is_end(self) -> bool:
        return self.kind == END_OF_INTERVAL


@dataclass(frozen=True)
class DomainRecord:
    """Aggregate network contact of one app with one domain."""
    source_file: str
    bundle_id: str
    domain: str
    context: str
    initiated_type: str
    domain_type: int
    timestamp: str
    first_timestamp: str
    hits: int
    domain_owner: str = ""
    effective_user_id: int | None = None
    has_app_bundle_name: str | None = None
    domain_classification: int | None = None
    format_version: int | None = None

    @property
    def date(self) -> str:
        return self.timestamp[:10]


def to_utc(zoned: str) -> str:
    """Convert an offset-qualified ISO-8601 timestamp to canonical UTC.

    "2021-06-08T18:48:49.573-05:00" -> "2021-06-08T23:48:49.573Z"
    """
    text = zoned[:-1] + "+00:00" if zoned.endswith("Z") else zoned
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise ReportFormatError(f"bad timestamp {zoned!r}") from None
    if dt.tzinfo is None:
        raise ReportFormatError(f"timestamp without utc offset {zoned!r}")
    try:
        dt = dt.astimezone(timezone.utc)
    except OverflowError:
        raise ReportFormatError(f"timestamp out of range {zoned!r}") from None
    return f"{dt:%Y-%m-%dT%H:%M:%S}.{dt.microsecond // 1000:03d}Z"


def display_stream(category: str | None, stream: str | None, tcc_service: str | None) -> str:
    """Human-facing access type: the category, else the short stream name.

    >>> display_stream(None, "com.apple.privacy.accounting.stream.tcc", "kTCCServicePhotos")
    'tcc/kTCCServicePhotos'
    """
    if category is not None:
        return category
    rt = stream or ""
    if rt.startswith(STREAM_PREFIX):
        rt = rt[len(STREAM_PREFIX):]
    if tcc_service:
        rt += "/" + tcc_service
    return rt


def normalize_access(detected: DetectedRecord, source_file: str, line_number: int) -> AccessRecord:
    fmt = detected.format
    if not fmt.is_access:
        raise ValueError(f"not an access record: {fmt.label}")
    f = detected.fields
    # v3 renamed timestamp -> timeStamp
    raw_ts = f["timeStamp"] if fmt is RecordFormat.ACCESS_V3 else f["timestamp"]
    stream = f.get("stream")
    tcc_service = f.get("tccService")
    category = f.get("category")
    return AccessRecord(
        source_file=source_file,
        line_number=line_number,
        stream_or_category=display_stream(category, stream, tcc_service),
        accessor_id=f["accessor"]["identifier"],
        accessor_id_type=f["accessor"]["identifierType"],
        kind=f["kind"],
        session_id=f["identifier"],
        timestamp=to_utc(raw_ts),
        stream=stream,
        tcc_service=tcc_service,
        category=category,
        format_version=fmt.generation,
        out_of_process=f.get("outOfProcess"),
    )


def normalize_domain(detected: DetectedRecord, source_file: str,
                     bundle_id: str | None = None) -> DomainRecord:
    """Build a DomainRecord; bundle_id is required for the legacy format,
    where it is the key of the enclosing object rather than a field."""
    fmt = detected.format
    if fmt.is_access:
        raise ValueError(f"not a domain record: {fmt.label}")
    f = detected.fields
    if bundle_id is None:
        bundle_id = f.get("bundleID")
    if bundle_id is None:
        raise ReportFormatError(f"{fmt.label} record without bundle id")
    return DomainRecord(
        source_file=source_file,
        bundle_id=bundle_id,
        domain=f["domain"],
        context=f["context"],
        initiated_type=f["initiatedType"],
        domain_type=f["domainType"],
        timestamp=to_utc(f["timeStamp"]),
        first_timestamp=to_utc(f["firstTimeStamp"]),
        hits=f["hits"],
        domain_owner=f["domainOwner"],
        effective_user_id=f.get("effectiveUserId"),
        has_app_bundle_name=f.get("hasApp.bundleName"),
        domain_classification=f.get("domainClassification"),
        format_version=fmt.generation,
    )
