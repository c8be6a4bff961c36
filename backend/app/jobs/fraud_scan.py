from __future__ import annotations

import argparse
import logging

from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.fraud import FraudReview, evaluate_referrer
from app.core.metrics import record_job_run
from app.core.program_policy import load_policy_snapshot
from app.models.enums import ATTRIBUTABLE_STATUSES
from app.models.referrers import Referrer


logger = logging.getLogger(__name__)


def run_fraud_scan(db: Session, *, period: str | None = None) -> list[FraudReview]:
    policy = load_policy_snapshot(db)
    referrer_ids = [
        row.id
        for row in db.query(Referrer.id)
        .filter(Referrer.status.in_(sorted(ATTRIBUTABLE_STATUSES)))
        .order_by(Referrer.id.asc())
        .all()
    ]
    reviews = []
    for referrer_id in referrer_ids:
        reviews.append(evaluate_referrer(db, referrer_id=referrer_id, policy=policy, period=period))
    return reviews


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Score referrers against the fraud rules.")
    parser.add_argument("--period", default=None, help="Month to evaluate (YYYY-MM). Defaults to the current month.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    success = True
    try:
        with SessionLocal() as db:
            reviews = run_fraud_scan(db, period=args.period)
        flagged = sum(1 for review in reviews if review.flagged)
        logger.info("Fraud scan complete. evaluated=%s flagged=%s", len(reviews), flagged)
    except Exception:
        success = False
        logger.exception("Fraud scan failed")
        raise
    finally:
        record_job_run(job_name="fraud_scan", success=success)


if __name__ == "__main__":
    main()
