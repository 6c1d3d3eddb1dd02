import argparse
from datetime import date
import logging
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from importledger.config import Settings, get_settings
from importledger.database import build_session_factory
from importledger.definitions import IMPORT_DEFINITIONS, RECONCILIATION_SOURCES, get_definition
from importledger.errors import ImportPipelineError
from importledger.reconciliation import flag_exception, ignore_record, match_record, summarize
from importledger.schemas import ColumnMapping
from importledger.session import ImportSession
from importledger.templates import build_template, template_file_name


def _mapping_pair(value: str) -> tuple[str, str]:
    name, sep, column = value.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected field=column, got '{value}'")
    return name.strip(), column.strip()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bulk-import tabular files and triage statement lines")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="import one delimited file")
    import_parser.add_argument("--type", dest="import_type", required=True, choices=sorted(IMPORT_DEFINITIONS))
    import_parser.add_argument("--institution", required=True, help="Tenant the rows belong to")
    import_parser.add_argument("--file", required=True, help="Path to the CSV file")
    import_parser.add_argument(
        "--map",
        action="append",
        type=_mapping_pair,
        default=[],
        help="Explicit field=column mapping; repeat per field. Omit to accept the suggested mapping",
    )
    import_parser.add_argument("--source", default="bank", choices=RECONCILIATION_SOURCES)
    import_parser.add_argument("--no-header", action="store_true", help="First line is data, columns are column_N")

    template_parser = subparsers.add_parser("template", help="write the sample CSV for an import type")
    template_parser.add_argument("--type", dest="import_type", required=True, choices=sorted(IMPORT_DEFINITIONS))
    template_parser.add_argument("--output", required=False, help="Target path; defaults to OUTPUT_DIR")

    summary_parser = subparsers.add_parser("summary", help="reconciliation summary for a tenant")
    summary_parser.add_argument("--institution", required=True)
    summary_parser.add_argument("--date", required=False, help="Limit to one date in YYYY-MM-DD format")

    match_parser = subparsers.add_parser("match", help="match a statement line to a payment")
    match_parser.add_argument("--record", type=int, required=True)
    match_parser.add_argument("--payment", type=int, required=True)
    match_parser.add_argument("--by", required=False)

    ignore_parser = subparsers.add_parser("ignore", help="ignore a statement line")
    ignore_parser.add_argument("--record", type=int, required=True)
    ignore_parser.add_argument("--by", required=False)

    exception_parser = subparsers.add_parser("exception", help="flag a statement line as an exception")
    exception_parser.add_argument("--record", type=int, required=True)
    exception_parser.add_argument("--kind", required=True, help="Exception type, e.g. amount_mismatch")
    exception_parser.add_argument("--notes", required=False)
    exception_parser.add_argument("--by", required=False)

    return parser.parse_args()


def _run_import(args: argparse.Namespace, settings: Settings, session_factory: sessionmaker[Session]) -> int:
    mapping: ColumnMapping | None = dict(args.map) if args.map else None
    session = ImportSession(
        settings,
        session_factory,
        import_type=args.import_type,
        institution_id=args.institution,
        source=args.source,
    )
    file_path = Path(args.file)
    result = session.run(
        file_path.name,
        file_path.read_bytes(),
        mapping=mapping,
        has_header=not args.no_header,
    )

    print(
        "run_id={run_id} type={type} status={status} total={total} valid={valid} invalid={invalid} duplicates={duplicates} imported={imported} failed={failed} skipped={skipped} report={report}".format(
            run_id=result.run_id,
            type=result.import_type,
            status=result.status,
            total=result.total_rows,
            valid=result.valid_rows,
            invalid=result.invalid_rows,
            duplicates=result.duplicate_rows,
            imported=result.imported_rows,
            failed=result.failed_rows,
            skipped=result.skipped_rows,
            report=result.report_path,
        )
    )
    for line in result.error_summary.lines():
        print(f"error={line}")
    return 1 if result.status == "failed" else 0


def _write_template(args: argparse.Namespace, settings: Settings) -> int:
    definition = get_definition(args.import_type)
    target = Path(args.output) if args.output else Path(settings.output_dir) / "templates" / template_file_name(definition)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(build_template(definition), encoding="utf-8")
    print(f"type={definition.import_type} template={target}")
    return 0


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "template":
        raise SystemExit(_write_template(args, settings))

    session_factory = build_session_factory(settings.database_url, settings.statement_timeout_seconds)
    try:
        if args.command == "import":
            raise SystemExit(_run_import(args, settings, session_factory))

        with session_factory() as db:
            if args.command == "summary":
                on_date = date.fromisoformat(args.date) if args.date else None
                summary = summarize(db, args.institution, on_date)
                print(
                    "total={total} matched={matched} unmatched={unmatched} exceptions={exceptions} duplicates={duplicates} ignored={ignored} external_amount={external} matched_amount={matched_amount} variance={variance} match_rate={rate}".format(
                        total=summary.total,
                        matched=summary.matched,
                        unmatched=summary.unmatched,
                        exceptions=summary.exceptions,
                        duplicates=summary.duplicates,
                        ignored=summary.ignored,
                        external=summary.total_external_amount,
                        matched_amount=summary.total_matched_amount,
                        variance=summary.variance,
                        rate=summary.match_rate,
                    )
                )
                return

            if args.command == "match":
                record = match_record(db, args.record, args.payment, reconciled_by=args.by)
            elif args.command == "ignore":
                record = ignore_record(db, args.record, reconciled_by=args.by)
            else:
                record = flag_exception(db, args.record, args.kind, notes=args.notes, reconciled_by=args.by)
            print(f"record_id={record.id} status={record.status}")
    except (ImportPipelineError, OSError, ValueError) as exc:
        print(f"status=failed error={exc}")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
