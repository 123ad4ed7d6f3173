"""
Deadline Sweeper: fires reply deadlines of waiting conversations.

Conversations waiting for an owner's answer hold no timer in memory; their
deadline is a column. This job finds the ones whose deadline has passed and
hands them to the engine, which denies silent ones and closes the rest.
Running it twice, or concurrently with a reply, is harmless.

Typical cron schedule: */5 * * * * (or run inside the worker loop)
"""

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from ..core.config import get_settings
from ..services.conversation_engine import ConversationEngine
from .alerts import JobAlerter


logger = logging.getLogger(__name__)


async def run_deadline_job(
    engine: ConversationEngine,
    now: datetime | None = None,
    batch_size: int = 100,
    alerter: JobAlerter | None = None,
) -> dict[str, Any]:
    """
    Process every expired reply deadline once.

    Alerts go to ``alerter``, or to one built from the current settings.

    Returns:
        Job result summary
    """
    start_time = datetime.now(timezone.utc)
    now = now or start_time
    logger.info(f"Starting deadline job at {start_time.isoformat()}")
    if alerter is None:
        alerter = JobAlerter.from_settings(get_settings())

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "denied_count": 0,
        "timed_out_count": 0,
        "skipped_count": 0,
        "errors": [],
    }

    try:
        sweep = await engine.process_due_deadlines(now=now, batch_size=batch_size)
    except Exception as e:
        error_msg = f"Deadline job failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await alerter.sweep_crashed(e, results["started_at"], traceback.format_exc()[-500:])
        raise

    results["denied_count"] = sweep.denied
    results["timed_out_count"] = sweep.timed_out
    results["skipped_count"] = sweep.skipped
    results["errors"].extend(sweep.errors)

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Deadline job completed in {results['duration_seconds']:.2f}s: "
        f"{sweep.denied} denied, {sweep.timed_out} timed out, {sweep.skipped} skipped"
    )

    if sweep.errors:
        await alerter.sweep_incomplete(sweep.errors)

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the deadline job."""
    import argparse

    from ..core import close_db
    from ..core.dependencies import build_conversation_engine

    parser = argparse.ArgumentParser(description="Fire expired reply deadlines")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=100,
        help="Maximum conversations to process in one run",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    async def run() -> dict[str, Any]:
        try:
            engine = build_conversation_engine(get_settings())
            return await run_deadline_job(engine, batch_size=args.batch_size)
        finally:
            await close_db()

    try:
        results = asyncio.run(run())
        print(f"Job completed: {results}")
    except Exception as e:
        print(f"Job failed: {e}")
        exit(1)


if __name__ == "__main__":
    main()
