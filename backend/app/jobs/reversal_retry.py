from __future__ import annotations

import argparse
import logging

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.ledger import retry_pending_reversals
from app.core.metrics import record_job_run
from app.core.program_policy import load_policy_snapshot


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


def run_reversal_retry(
    db: Session,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_attempts: int | None = None,
) -> dict[str, int]:
    policy = load_policy_snapshot(db)
    return retry_pending_reversals(
        db,
        policy=policy,
        max_attempts=max_attempts or settings.PENDING_REVERSAL_MAX_ATTEMPTS,
        limit=batch_size,
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply reversals that arrived before their commission.")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--max-attempts", type=int, default=None)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    success = True
    try:
        with SessionLocal() as db:
            counts = run_reversal_retry(db, batch_size=args.batch_size, max_attempts=args.max_attempts)
        logger.info(
            "Reversal retry complete. applied=%s waiting=%s expired=%s",
            counts["applied"],
            counts["waiting"],
            counts["expired"],
        )
    except Exception:
        success = False
        logger.exception("Reversal retry failed")
        raise
    finally:
        record_job_run(job_name="reversal_retry", success=success)


if __name__ == "__main__":
    main()
