"""
mahber.worker.__main__ — Entry point for ``python -m mahber.worker``
====================================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (or built-in defaults with ``--defaults``).
3. Create the SQLAlchemy engine; ``--init-db`` creates tables and seeds
   the badge catalogue.
4. Check the queue and ledger tables exist.
5. Build the service context (rebuilds security-monitor windows).
6. Run the selected job(s), forever or once with ``--once``.

Any failure in steps 2–5 is fatal: the process logs it and exits 1.

Run with::

    python -m mahber.worker updates
    python -m mahber.worker archiver --once
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from mahber.config import MahberConfig, load_config
from mahber.context import build_context
from mahber.database.engine import create_db_engine, init_db, missing_tables
from mahber.worker.tasks import JOB_NAMES, build_jobs, run_jobs

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("mahber")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m mahber.worker",
        description="Run Mahber background jobs",
    )
    parser.add_argument("job", choices=(*JOB_NAMES, "all"), help="Job to run")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument(
        "--defaults", action="store_true", help="Ignore config.yaml and use built-in defaults"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Create tables and seed badges before starting"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run the selected job.  Returns the process exit code."""
    args = build_parser().parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = MahberConfig() if args.defaults else load_config(args.config)
    except (FileNotFoundError, ValueError, TypeError) as exc:
        logger.critical("Configuration error: %s", exc)
        return 1

    # 3–5. Database and services.
    try:
        engine = create_db_engine()
        if args.init_db:
            init_db(engine)
        missing = missing_tables(engine)
        if missing:
            logger.critical(
                "Required tables are missing: %s.  Run with --init-db first.",
                ", ".join(missing),
            )
            engine.dispose()
            return 1
        ctx = build_context(engine, cfg)
    except (RuntimeError, SQLAlchemyError) as exc:
        logger.critical("Initialization failed: %s", exc)
        return 1

    # 6. Run.
    jobs = build_jobs(args.job, ctx)
    logger.info("Mahber worker ready — job=%s once=%s", args.job, args.once)
    try:
        ok = asyncio.run(run_jobs(jobs, ctx, once=args.once))
    except KeyboardInterrupt:
        logger.info("Worker stopped")
        return 0
    finally:
        engine.dispose()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
