# worker_main.py
"""
Background worker for the fragment lifecycle.

Runs three loops in one asyncio process, all sharing a stop event:

  - ChainReconciler.run_forever: backfills Soul.agent_id from mint receipts
    (every reconcile_interval_seconds).
  - CurationGuard: reviews pending fragments whose lease/backoff expired.
    In CURATION_MODE=queue this is the only reviewer; in inline mode it only
    picks up fragments whose judge call failed after submission.
  - Housekeeping: expired wallet sessions and the stale-pending report.

Blocking DB / LLM / RPC work always runs in asyncio.to_thread. SIGINT and
SIGTERM set the stop event; each loop finishes its current pass and exits.
"""

import asyncio
import logging
import signal

from ensoul import settings
from ensoul.backend import Backend


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("ensoul_worker")

HOUSEKEEPING_INTERVAL = 3600.0


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class CurationGuard:
    def __init__(
        self,
        backend: Backend,
        poll_interval: float = 5.0,
        max_per_pass: int = 20,
    ):
        self.backend = backend
        self.poll_interval = poll_interval
        self.max_per_pass = max_per_pass

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(
            "CurationGuard running (mode=%s, poll=%.1fs, max_per_pass=%d)",
            settings.CURATION_MODE, self.poll_interval, self.max_per_pass,
        )
        while not stop_event.is_set():
            reviewed = 0
            try:
                outcomes = await asyncio.to_thread(self.backend.curation.review_pending, self.max_per_pass)
                reviewed = len(outcomes)
                if reviewed:
                    logger.debug("CurationGuard reviewed %d fragment(s)", reviewed)
            except Exception:
                logger.exception("CurationGuard pass failed")
            # a full pass means there is a backlog: go again right away
            if reviewed < self.max_per_pass:
                await _sleep_or_stop(stop_event, self.poll_interval)


async def housekeeping(backend: Backend, stop_event: asyncio.Event, interval: float = HOUSEKEEPING_INTERVAL) -> None:
    while not stop_event.is_set():
        try:
            await asyncio.to_thread(backend.identity.cleanup_expired_sessions)
            report = await asyncio.to_thread(backend.stale_pending_report)
            if report["count"]:
                logger.warning("%d fragment(s) are stale pending (review attempts exhausted)", report["count"])
        except Exception:
            logger.exception("Housekeeping pass failed")
        await _sleep_or_stop(stop_event, interval)


async def run_worker(backend: Backend, stop_event: asyncio.Event) -> None:
    await asyncio.gather(
        backend.reconciler.run_forever(stop_event),
        CurationGuard(backend).run(stop_event),
        housekeeping(backend, stop_event),
    )


async def _main() -> None:
    backend = Backend()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await run_worker(backend, stop_event)
    logger.info("Worker stopped")


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
