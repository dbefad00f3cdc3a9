#!/usr/bin/env python3
"""
Daily Overdue Sweep Entry Point

Runs the penalty sweep against the configured storage. Meant to be triggered
once a day by cron or any other scheduler.
"""

import argparse
import json
import sys
from datetime import date

from microloan.audit import AuditTrail
from microloan.config import get_config
from microloan.logging_config import get_logger, setup_logging
from microloan.overdue import OverdueProcessor
from microloan.penalties import PenaltyConfigRegistry
from microloan.storage import create_storage
from microloan.tokens import TokenManager
from microloan.accounts import AccountLedger
from microloan.currency import Currency


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply penalties to overdue schedule entries")
    parser.add_argument("--date", help="Processing date (YYYY-MM-DD), defaults to today")
    args = parser.parse_args(argv)

    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger = get_logger("microloan.run")

    as_of = date.fromisoformat(args.date) if args.date else date.today()

    storage = create_storage(config.database_url)
    try:
        audit_trail = AuditTrail(storage)
        registry = PenaltyConfigRegistry(storage, audit_trail, config)
        ledger = AccountLedger(storage, audit_trail, Currency[config.currency])
        token_manager = TokenManager(storage, audit_trail, registry, ledger, config)

        result = OverdueProcessor(token_manager, registry).process(as_of)
    except Exception:
        logger.exception("Overdue sweep failed")
        return 1
    finally:
        storage.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
