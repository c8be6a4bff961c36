from __future__ import annotations

import argparse
import logging

from app.core.db import SessionLocal
from app.core.ledger import reconcile_all
from app.core.metrics import record_job_run


logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check referrer balances against the commission ledger.")
    parser.add_argument(
        "--fail-on-mismatch",
        action="store_true",
        help="Exit non-zero when any referrer does not reconcile.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    success = True
    mismatches = 0
    try:
        with SessionLocal() as db:
            results = reconcile_all(db)
        mismatches = sum(1 for result in results if not result.ok)
        logger.info("Ledger reconcile complete. checked=%s mismatches=%s", len(results), mismatches)
    except Exception:
        success = False
        logger.exception("Ledger reconcile failed")
        raise
    finally:
        record_job_run(job_name="ledger_reconcile", success=success and not mismatches)
    if mismatches and args.fail_on_mismatch:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
