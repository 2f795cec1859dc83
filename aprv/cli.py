"""aprv CLI — import App Privacy Report exports and browse the merged timeline."""

import argparse
import logging
import sys
from pathlib import Path

from aprv.config import DB_PATH, LOG_PATH
from aprv.db import Database, StoreError
from aprv.icons import IconResolver
from aprv.importer import import_report_path
from aprv.summary import TimelineEntry, access_type, coalesce, get_merged_summaries, list_types

log = logging.getLogger("aprv")


def _setup_logging(verbose: bool) -> None:
    LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    stderr = logging.StreamHandler(sys.stderr)
    stderr.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.FileHandler(str(LOG_PATH)), stderr],
    )


# ── Rendering ─────────────────────────────────────────────────────────────


def _format_time(timestamp: str | None) -> str:
    # "2021-06-08T23:48:49.573Z" -> "23:48:49"
    return timestamp[11:19] if timestamp else ""


def render_entry(entry: TimelineEntry) -> str:
    if entry.session is not None:
        s = entry.session
        start = ("~" if s.start_estimated else " ") + _format_time(s.start)
        label = access_type(s.stream)
        if entry.count > 1:
            label += f" x{entry.count}"
        return f"  {start}  {_format_time(s.end):8s}  {s.bundle_id:40s} {'':>6s}  {label}"
    d = entry.domain
    return f"   {_format_time(d.timestamp)}  {'':8s}  {d.bundle_id:40s} {d.hits:>6d}  {d.domain}"


def render_timeline(merged: dict[str, list[TimelineEntry]]) -> list[str]:
    lines = []
    for date, entries in merged.items():
        lines.append(f"\n  {date}")
        lines.append(f"  {'─' * 10}")
        lines.extend(render_entry(e) for e in coalesce(entries))
    return lines


# ── Subcommands ──────────────────────────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    failures = 0
    with Database(path=args.db) as db:
        for path in args.files:
            try:
                result = import_report_path(path, db)
            except (ValueError, StoreError, OSError) as e:
                log.debug("import of %s failed", path, exc_info=True)
                print(f"  [!] {path}: {e}")
                failures += 1
                continue
            print(f"  [+] {result.source_file}: {result.access_count} access, "
                  f"{result.domain_count} domain records")
    return 1 if failures else 0


def cmd_files(args: argparse.Namespace) -> int:
    with Database(path=args.db) as db:
        for name in db.list_files():
            print(f"  {name:40s} {db.count('access', name):>8,} access "
                  f"{db.count('domain', name):>8,} domain")
    return 0


def _print_list(values: list[str]) -> None:
    for value in values:
        print(f"  {value}")


def cmd_dates(args: argparse.Namespace) -> int:
    with Database(path=args.db) as db:
        _print_list(db.list_dates(args.name))
    return 0


def cmd_bundles(args: argparse.Namespace) -> int:
    with Database(path=args.db) as db:
        _print_list(db.list_bundle_ids(args.name))
    return 0


def cmd_types(args: argparse.Namespace) -> int:
    with Database(path=args.db) as db:
        _print_list(list_types(db, args.name))
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    with Database(path=args.db) as db:
        if args.name not in db.list_files():
            print(f"no report named {args.name!r}, run: aprv files")
            return 1
        merged = get_merged_summaries(db, args.name, date=args.date,
                                      entry_type=args.type, bundle_id=args.bundle_id)
    print("\n  All dates and times in utc (~ marks an estimated start)")
    for line in render_timeline(merged):
        print(line)
    print()
    return 0


def cmd_icon(args: argparse.Namespace) -> int:
    response = IconResolver().resolve(args.bundle_id)
    args.output.write_bytes(response.body)
    print(f"  [+] {response.content_type}, {len(response.body):,} bytes -> {args.output}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    path = args.db
    print("\n  aprv status")
    print("  ──────────────────\n")
    if not path.exists():
        print(f"  Database     not created yet ({path})\n")
        return 0
    size_mb = path.stat().st_size / (1024 * 1024)
    print(f"  Database     {path} ({size_mb:.1f} MB)")
    with Database(path=args.db) as db:
        print(f"  Reports      {len(db.list_files())}")
        print(f"  Access       {db.count('access'):,} records")
        print(f"  Domain       {db.count('domain'):,} records")
    print(f"  Logs         {LOG_PATH}\n")
    return 0


# ── Main ─────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aprv",
        description="App Privacy Report importer and viewer",
    )
    parser.add_argument("--db", type=Path, default=DB_PATH,
                        help=f"sqlite database (default: {DB_PATH})")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")

    p_import = sub.add_parser("import", help="import report files (<name>.ndjson or <name>.json)")
    p_import.add_argument("files", nargs="+", type=Path)

    sub.add_parser("files", help="list imported reports")

    for name, help_text in [("dates", "list utc days with activity"),
                            ("bundles", "list app bundle ids"),
                            ("types", "list entry types usable with show --type")]:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("name", help="report name")

    p_show = sub.add_parser("show", help="print the merged timeline of a report")
    p_show.add_argument("name", help="report name")
    p_show.add_argument("--date", help="only this utc day (YYYY-MM-DD)")
    p_show.add_argument("--type", help="access, access/<stream> or domain")
    p_show.add_argument("--bundle-id", help="only this app")

    p_icon = sub.add_parser("icon", help="download an app icon")
    p_icon.add_argument("bundle_id")
    p_icon.add_argument("-o", "--output", type=Path, required=True)

    sub.add_parser("status", help="show database location and stats")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "import": cmd_import,
        "files": cmd_files,
        "dates": cmd_dates,
        "bundles": cmd_bundles,
        "types": cmd_types,
        "show": cmd_show,
        "icon": cmd_icon,
        "status": cmd_status,
    }

    if args.command not in commands:
        parser.print_help()
        return 0
    _setup_logging(args.verbose)
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
