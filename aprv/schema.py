"""Record schema detection for App Privacy Report exports.

The export format changed between iOS releases. Generations handled here:

  access v1   after {"_marker":"<metadata>","recordType":"access","version":2}
              lines carry "version":3, a raw "stream" id and optional "tccService"
  access v2   after {"_marker":"<metadata>","recordType":"access","version":3}
              lines carry a "category" instead of a stream
  access v3   self-describing lines with "type":"access" and "timeStamp"
  domain v1   a pretty-printed object following {"_marker":"<end-of-section>"},
              keyed by bundle id, values are arrays of domain records
  domain v2   after {"_marker":"<metadata>","recordType":"networkActivity","version":1}
              lines carry a "bundleID"
  domain v3   self-describing lines with "type":"networkActivity"

Detection never coerces: a record with a missing, extra or mistyped field is
rejected so that schema drift surfaces as an import error instead of a
corrupted row.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator, NamedTuple

from aprv.config import MARKER_END_OF_SECTION, MARKER_METADATA

log = logging.getLogger(__name__)


class ReportFormatError(ValueError):
    """Input that does not parse as a record of any known generation."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.line_number: int | None = None
        self.line: str | None = None

    def locate(self, line_number: int, line: str) -> None:
        """Attach the offending line, keeping the first location recorded."""
        if self.line_number is None:
            self.line_number = line_number
            self.line = line

    def __str__(self) -> str:
        if self.line_number is None:
            return self.message
        return f"line {self.line_number}: {self.message}: {self.line}"


class RecordFormat(enum.Enum):
    ACCESS_V1 = ("access", 1)
    ACCESS_V2 = ("access", 2)
    ACCESS_V3 = ("access", 3)
    DOMAIN_V1 = ("networkActivity", 1)
    DOMAIN_V2 = ("networkActivity", 2)
    DOMAIN_V3 = ("networkActivity", 3)

    def __init__(self, record_type: str, generation: int):
        self.record_type = record_type
        self.generation = generation

    @property
    def is_access(self) -> bool:
        return self.record_type == "access"

    @property
    def label(self) -> str:
        kind = "access" if self.is_access else "domain"
        return f"{kind} v{self.generation}"


@dataclass(frozen=True)
class ParseState:
    """Ambient state declared by control lines, threaded through the line loop."""
    record_type: str | None = None
    version: int | None = None
    end_of_section: bool = False


@dataclass(frozen=True)
class DetectedRecord:
    format: RecordFormat
    fields: dict[str, Any]


# ── field checks ───────────────────────────────────────────────────────

Check = Callable[[Any], bool]


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_int(value: Any) -> bool:
    # JSON true/false decode to bool, which is an int subclass; 3.0 counts as 3
    if isinstance(value, bool):
        return False
    return isinstance(value, int) or (isinstance(value, float) and value.is_integer())


def _as_int(value: Any) -> Any:
    return int(value) if isinstance(value, float) and value.is_integer() else value


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _is_hits(value: Any) -> bool:
    return _is_int(value) and value >= 1


def _equals(expected: Any) -> Check:
    def check(value: Any) -> bool:
        return _is_int(value) and value == expected
    return check


def _is_accessor(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and set(value) == {"identifier", "identifierType"}
        and _is_str(value["identifier"])
        and _is_str(value["identifierType"])
    )


class _Shape(NamedTuple):
    required: dict[str, Check]
    optional: dict[str, Check]


_DOMAIN_V2_FIELDS: dict[str, Check] = {
    "domain": _is_str,
    "firstTimeStamp": _is_str,
    "domainType": _is_int,
    "timeStamp": _is_str,
    "context": _is_str,
    "initiatedType": _is_str,
    "hits": _is_hits,
    "domainOwner": _is_str,
    "bundleID": _is_str,
}

_SHAPES: dict[RecordFormat, _Shape] = {
    RecordFormat.ACCESS_V1: _Shape(
        required={
            "stream": _is_str,
            "accessor": _is_accessor,
            "identifier": _is_str,
            "kind": _is_str,
            "timestamp": _is_str,
            "version": _equals(3),
        },
        optional={"tccService": _is_str},
    ),
    RecordFormat.ACCESS_V2: _Shape(
        required={
            "accessor": _is_accessor,
            "category": _is_str,
            "identifier": _is_str,
            "kind": _is_str,
            "timestamp": _is_str,
        },
        optional={},
    ),
    RecordFormat.ACCESS_V3: _Shape(
        required={
            "accessor": _is_accessor,
            "category": _is_str,
            "identifier": _is_str,
            "kind": _is_str,
            "timeStamp": _is_str,
            "type": _is_str,
        },
        optional={"outOfProcess": _is_bool},
    ),
    RecordFormat.DOMAIN_V1: _Shape(
        required={
            "domain": _is_str,
            "effectiveUserId": _is_int,
            "domainType": _is_int,
            "timeStamp": _is_str,
            "hasApp.bundleName": _is_str,
            "context": _is_str,
            "hits": _is_hits,
            "domainOwner": _is_str,
            "initiatedType": _is_str,
            "firstTimeStamp": _is_str,
        },
        optional={},
    ),
    RecordFormat.DOMAIN_V2: _Shape(required=_DOMAIN_V2_FIELDS, optional={}),
    RecordFormat.DOMAIN_V3: _Shape(
        required={**_DOMAIN_V2_FIELDS, "type": _is_str},
        optional={"domainClassification": _is_int},
    ),
}

# Self-describing lines: value of "type"
_SELF_DESCRIBING = {
    "access": RecordFormat.ACCESS_V3,
    "networkActivity": RecordFormat.DOMAIN_V3,
}

# Older lines: (declared recordType, declared metadata version)
_DECLARED = {
    ("access", 2): RecordFormat.ACCESS_V1,
    ("access", 3): RecordFormat.ACCESS_V2,
    ("networkActivity", 1): RecordFormat.DOMAIN_V2,
}


def field_problems(fmt: RecordFormat, obj: Any) -> list[str]:
    """Return what is wrong with obj as a record of fmt (empty when valid)."""
    if not isinstance(obj, dict):
        return [f"expected object, found {type(obj).__name__}"]
    shape = _SHAPES[fmt]
    problems = []
    for name in shape.required:
        if name not in obj:
            problems.append(f"missing {name!r}")
    for name, value in obj.items():
        check = shape.required.get(name) or shape.optional.get(name)
        if check is None:
            problems.append(f"unexpected field {name!r}")
        elif not check(value):
            problems.append(f"bad {name!r}: {value!r}")
    return problems


def validate(fmt: RecordFormat, obj: Any) -> DetectedRecord:
    problems = field_problems(fmt, obj)
    if problems:
        raise ReportFormatError(f"expected {fmt.label} record ({', '.join(problems)})")
    return DetectedRecord(fmt, {name: _as_int(value) for name, value in obj.items()})


def decode_line(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        raise ReportFormatError("bad line, expected json") from None


# ── detection ──────────────────────────────────────────────────────────


def advance(state: ParseState, obj: Any) -> tuple[ParseState, DetectedRecord | None]:
    """Classify one decoded line given the ambient state.

    Returns the next state and the detected record, or None for control lines.
    Raises ReportFormatError for anything that is not a known record shape.
    """
    if not isinstance(obj, dict):
        raise ReportFormatError(f"bad line, expected object, found {type(obj).__name__}")

    marker = obj.get("_marker")
    if isinstance(marker, str):
        return _apply_marker(state, marker, obj), None

    type_ = obj.get("type")
    if isinstance(type_, str):
        fmt = _SELF_DESCRIBING.get(type_)
        if fmt is None:
            raise ReportFormatError(f"unexpected type {type_!r}")
        return state, validate(fmt, obj)

    if (_is_int(obj.get("version")) or isinstance(obj.get("category"), str)
            or isinstance(obj.get("bundleID"), str)):
        if state.record_type is None:
            raise ReportFormatError("record found before any metadata line declared its type")
        fmt = _DECLARED.get((state.record_type, state.version))
        if fmt is None:
            raise ReportFormatError(
                f"unsupported {state.record_type} version {state.version}"
            )
        return state, validate(fmt, obj)

    raise ReportFormatError("bad line, expected access or network activity record")


def _apply_marker(state: ParseState, marker: str, obj: dict) -> ParseState:
    if marker == MARKER_END_OF_SECTION:
        return replace(state, end_of_section=True)
    if marker == MARKER_METADATA:
        record_type = obj.get("recordType")
        version = obj.get("version")
        if record_type not in ("access", "networkActivity"):
            raise ReportFormatError(
                "bad metadata line, expected recordType=access or networkActivity"
            )
        if not _is_int(version):
            raise ReportFormatError("bad metadata line, expected numeric version")
        version = int(version)
        log.info("%s records, version %d", record_type, version)
        return replace(state, record_type=record_type, version=version, end_of_section=False)
    raise ReportFormatError(f"unknown marker {marker!r}")


def detect_legacy_domains(obj: Any) -> Iterator[tuple[str, DetectedRecord]]:
    """Yield (bundle_id, record) pairs from the legacy nested domain object."""
    if not isinstance(obj, dict):
        raise ReportFormatError(
            f"legacy domain section: expected object, found {type(obj).__name__}"
        )
    for bundle_id, records in obj.items():
        if not isinstance(records, list):
            raise ReportFormatError(
                f"legacy domain section: expected records array for {bundle_id!r}, "
                f"found {type(records).__name__}"
            )
        for record in records:
            try:
                yield bundle_id, validate(RecordFormat.DOMAIN_V1, record)
            except ReportFormatError as e:
                raise ReportFormatError(
                    f"legacy domain section: {e.message}: {json.dumps(record)}"
                ) from None
