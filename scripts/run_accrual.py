"""
Cron entry point for periodic leave accrual.

    python scripts/run_accrual.py                  # accrue as of today
    python scripts/run_accrual.py --as-of 2025-04-01 --expire
    python scripts/run_accrual.py --year-end 2024
"""
import argparse
import logging
import sys
from datetime import date

from leaveflow.core.logging import setup_logging
from leaveflow.database import SessionLocal, init_db
from leaveflow.services.accrual import AccrualEngine

logger = logging.getLogger("leaveflow.scripts.run_accrual")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run leave accrual for all staff balances.")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Accrual date (YYYY-MM-DD)")
    parser.add_argument("--staff", action="append", dest="staff_ids", help="Limit to a staff id (repeatable)")
    parser.add_argument("--leave-type", action="append", dest="leave_types", help="Limit to a leave type (repeatable)")
    parser.add_argument("--expire", action="store_true", help="Run the carry-forward expiry sweep first")
    parser.add_argument("--year-end", type=int, default=None, help="Close the given year instead of accruing")
    return parser.parse_args(argv)


def run(argv=None) -> int:
    args = parse_args(argv)
    setup_logging()
    init_db()

    db = SessionLocal()
    try:
        engine = AccrualEngine(db)
        results = []
        if args.year_end is not None:
            results.append(engine.run_year_end(args.year_end, staff_ids=args.staff_ids, leave_types=args.leave_types))
        else:
            if args.expire:
                results.append(engine.process_expiration(as_of=args.as_of, staff_ids=args.staff_ids))
            results.append(engine.run_batch(as_of=args.as_of, staff_ids=args.staff_ids, leave_types=args.leave_types))

        for result in results:
            for error in result.errors:
                logger.error(f"{error.staff_id}/{error.leave_type}: {error.error}")
        print(f"Processed {sum(r.processed for r in results)} balance changes, "
              f"{sum(len(r.errors) for r in results)} errors")
        return 0 if all(r.success for r in results) else 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(run())
