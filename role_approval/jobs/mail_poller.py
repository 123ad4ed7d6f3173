"""
Mail Poller: the long-running worker.

On start it recovers conversations a previous process left mid-step. Then it
alternates between polling the mailbox (new requests and replies) and
sweeping expired deadlines, until cancelled.
"""

import asyncio
import logging
from datetime import datetime, timezone

import httpx

from ..core.config import get_settings
from ..services.conversation_engine import ConversationEngine
from ..services.dispatcher import ConversationDispatcher, DispatchSummary
from ..services.errors import TransportError
from ..services.interfaces import Mailbox
from .alerts import JobAlerter
from .deadline_sweeper import run_deadline_job


logger = logging.getLogger(__name__)


async def run_poll_cycle(mailbox: Mailbox, dispatcher: ConversationDispatcher) -> DispatchSummary:
    """Fetch unseen mail once and dispatch it."""
    try:
        messages = await mailbox.fetch_unseen()
    except TransportError as e:
        logger.error(f"Mailbox poll failed: {e}")
        summary = DispatchSummary(mailbox_error=str(e))
        summary.errors.append(str(e))
        return summary

    if not messages:
        logger.debug("No new mail")
        return DispatchSummary()

    summary = await dispatcher.dispatch_all(messages)
    logger.info(
        f"Dispatched {len(messages)} messages: {summary.started} new requests, "
        f"{summary.replies} replies, {summary.ignored} ignored, {len(summary.errors)} errors"
    )
    return summary


async def run_worker(
    engine: ConversationEngine,
    mailbox: Mailbox,
    poll_interval_seconds: float = 60.0,
    sweep_interval_seconds: float = 300.0,
    stop: asyncio.Event | None = None,
    alerter: JobAlerter | None = None,
    failures_before_alert: int = 3,
) -> None:
    """
    Poll and sweep until ``stop`` is set or the task is cancelled.

    One alert is raised when the mailbox has failed ``failures_before_alert``
    polls in a row; the count starts over after a successful poll.
    """
    stop = stop or asyncio.Event()
    alerter = alerter or JobAlerter.from_settings(get_settings())
    dispatcher = ConversationDispatcher(engine)
    mailbox_failures = 0

    recovered = await engine.recover()
    if recovered:
        logger.info(f"Recovered {recovered} interrupted conversations")

    last_sweep: datetime | None = None
    logger.info("Started")

    while not stop.is_set():
        try:
            summary = await run_poll_cycle(mailbox, dispatcher)
            if summary.mailbox_error is None:
                mailbox_failures = 0
            else:
                mailbox_failures += 1
                if mailbox_failures == failures_before_alert:
                    await alerter.mailbox_unreachable(mailbox_failures, summary.mailbox_error)

            now = datetime.now(timezone.utc)
            if last_sweep is None or (now - last_sweep).total_seconds() >= sweep_interval_seconds:
                await run_deadline_job(engine, now=now, alerter=alerter)
                last_sweep = now

        except asyncio.CancelledError:
            logger.info("Worker cancelled")
            raise

        except Exception as e:
            logger.error(f"Error in worker loop: {e}", exc_info=True)

        try:
            await asyncio.wait_for(stop.wait(), timeout=poll_interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Worker stopped")


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the worker."""
    import argparse

    from ..clients import ImapConfig, ImapMailbox
    from ..core import close_db, init_db
    from ..core.dependencies import build_conversation_engine

    parser = argparse.ArgumentParser(
        description="Wait for role request e-mails and follow up with project owners"
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create tables before starting",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = get_settings()
    if not settings.imap_enabled:
        print("Error: IMAP_HOST, IMAP_USER and IMAP_PASSWORD are required")
        exit(1)

    async def run() -> None:
        if args.init_db:
            await init_db()
        async with httpx.AsyncClient(
            timeout=settings.policy_timeout_seconds,
            follow_redirects=True,
        ) as http_client:
            engine = build_conversation_engine(settings, http_client=http_client)
            mailbox = ImapMailbox(
                ImapConfig.from_settings(settings),
                poll_interval_seconds=settings.poll_interval_seconds,
            )
            try:
                await run_worker(
                    engine,
                    mailbox,
                    poll_interval_seconds=settings.poll_interval_seconds,
                    sweep_interval_seconds=settings.sweep_interval_seconds,
                    alerter=JobAlerter.from_settings(settings),
                    failures_before_alert=settings.mailbox_failures_before_alert,
                )
            finally:
                await close_db()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("Worker interrupted")


if __name__ == "__main__":
    main()
