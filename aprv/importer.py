"""Import an App Privacy Report export into the store.

Re-importing a file replaces everything previously imported under the same
name. The whole import runs in one transaction: any malformed line aborts it
and leaves the earlier contents of that file untouched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from aprv.config import FILENAME_RE
from aprv.db import Database, StoreError
from aprv.normalize import normalize_access, normalize_domain
from aprv.schema import (
    DetectedRecord,
    ParseState,
    RecordFormat,
    ReportFormatError,
    advance,
    decode_line,
    detect_legacy_domains,
)

log = logging.getLogger(__name__)


@dataclass
class ImportResult:
    source_file: str
    access_count: int = 0
    domain_count: int = 0
    formats: set[RecordFormat] = field(default_factory=set)


def source_file_for(path: Path) -> str:
    """Report identifier for a file name: the stem of "<name>.json" or "<name>.ndjson"."""
    m = FILENAME_RE.match(path.name)
    if not m:
        raise ValueError(f"bad filename: {path.name}")
    return m.group(1)


def import_report_path(path: Path, db: Database) -> ImportResult:
    return import_report_file(path.read_text(encoding="utf-8"), source_file_for(path), db)


def import_report_file(text: str, source_file: str, db: Database) -> ImportResult:
    lines = text.split("\n")
    log.info("importing %s: %d lines", source_file, len(lines))
    result = ImportResult(source_file)

    with db.transaction():
        cleared = db.clear_access(source_file) + db.clear_domain(source_file)
        if cleared:
            log.info("replacing %d rows previously imported from %s", cleared, source_file)

        state = ParseState()
        for index, raw in enumerate(lines):
            number = index + 1
            line = raw.rstrip("\r")
            if not line.strip():
                continue
            try:
                if state.end_of_section and line.strip() == "{":
                    # Legacy tail: the rest of the file is one nested object
                    _import_legacy_domains("\n".join(lines[index:]), source_file, db, result)
                    break
                state, detected = advance(state, decode_line(line))
                if detected is not None:
                    _store(detected, source_file, number, db, result)
            except ReportFormatError as e:
                e.locate(number, line)
                raise
            except StoreError as e:
                raise StoreError(f"line {number}: {e}: {line}") from e

    log.info("imported %s: %d access records, %d domain records (%s)",
             source_file, result.access_count, result.domain_count,
             ", ".join(sorted(f.label for f in result.formats)) or "no records")
    return result


def _store(detected: DetectedRecord, source_file: str, line_number: int,
           db: Database, result: ImportResult) -> None:
    result.formats.add(detected.format)
    if detected.format.is_access:
        db.insert_access(normalize_access(detected, source_file, line_number))
        result.access_count += 1
    else:
        db.insert_domain(normalize_domain(detected, source_file))
        result.domain_count += 1


def _import_legacy_domains(text: str, source_file: str, db: Database,
                           result: ImportResult) -> None:
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ReportFormatError(f"legacy domain section: bad json ({e.msg})") from None
    for bundle_id, detected in detect_legacy_domains(obj):
        result.formats.add(detected.format)
        db.insert_domain(normalize_domain(detected, source_file, bundle_id))
        result.domain_count += 1
