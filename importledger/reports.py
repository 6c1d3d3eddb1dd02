import json
from pathlib import Path

from importledger.schemas import ImportResult, RowIssue


def write_jsonl(path: Path, rows: list[dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row, sort_keys=True, default=str))
            outfile.write("\n")


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, default=str)
        outfile.write("\n")


def report_paths(output_dir: str, run_name: str) -> tuple[Path, Path]:
    root = Path(output_dir)
    return root / "reports" / f"{run_name}.json", root / "rejected" / f"{run_name}.jsonl"


def publish_run_report(output_dir: str, run_name: str, result: ImportResult, issues: list[RowIssue]) -> Path:
    report_path, rejected_path = report_paths(output_dir, run_name)
    write_jsonl(
        rejected_path,
        [
            {"row": issue.row, "kind": issue.kind, "field": issue.field, "message": issue.message, "value": issue.value}
            for issue in sorted(issues, key=lambda issue: issue.row)
        ],
    )
    write_json(
        report_path,
        {
            "run_id": result.run_id,
            "import_type": result.import_type,
            "file_name": result.file_name,
            "status": result.status,
            "total_rows": result.total_rows,
            "valid_rows": result.valid_rows,
            "invalid_rows": result.invalid_rows,
            "duplicate_rows": result.duplicate_rows,
            "imported_rows": result.imported_rows,
            "failed_rows": result.failed_rows,
            "skipped_rows": result.skipped_rows,
            "errors": result.error_summary.lines(),
            "rejected_output": str(rejected_path),
        },
    )
    return report_path
