#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from hrledger.logging_utils import setup_json_logging
from hrledger.models import ReconciliationRunStatus, ReconciliationTriggerSource
from hrledger.schemas import ReconciliationRunRead
from hrledger.services.reconciliation_trigger import ReconciliationInProgressError, reconciliation_trigger
from hrledger.settings import get_settings


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the daily attendance reconciliation once.")
    parser.add_argument(
        "--date",
        dest="day",
        type=_parse_day,
        default=None,
        help="Organizational day to reconcile (YYYY-MM-DD). Defaults to today.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_json_logging(get_settings().log_level)

    try:
        run = reconciliation_trigger.run(day=args.day, trigger=ReconciliationTriggerSource.CLI, actor_id="cli")
    except ReconciliationInProgressError as exc:
        print(json.dumps({"ok": False, "code": exc.code, "message": exc.message}), file=sys.stderr)
        return 2
    except Exception as exc:
        print(json.dumps({"ok": False, "code": "RECONCILIATION_FAILED", "message": str(exc)}), file=sys.stderr)
        return 1
    payload = ReconciliationRunRead.model_validate(run).model_dump(mode="json")
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0 if run.status == ReconciliationRunStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
