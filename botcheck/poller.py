"""Queue poller: discovers queued requests and hands them to the orchestrator."""

import asyncio

import structlog

from botcheck.storage import RequestStore

logger = structlog.get_logger()


class QueuePoller:
    """Polls the request table at a fixed interval.

    Requests in one cycle are processed sequentially, oldest first. A failing
    cycle is logged and the loop continues.

    Args:
        store: Request store to list queued ids from
        orchestrator: Object with ``async process_request(request_id)``
        interval_seconds: Sleep between cycles
        batch_size: Maximum requests taken per cycle
    """

    def __init__(
        self,
        store: RequestStore,
        orchestrator,
        interval_seconds: float = 5.0,
        batch_size: int = 5,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stopped = asyncio.Event()

    async def run_once(self) -> int:
        """Run one polling cycle and return the number of requests handed off."""
        handed_off = 0
        request_ids = self.store.list_queued(self.batch_size)
        if request_ids:
            logger.info("queued_requests_found", count=len(request_ids))

        for request_id in request_ids:
            if self._stopped.is_set():
                break
            outcome = await self.orchestrator.process_request(request_id)
            handed_off += 1
            logger.debug("request_processed", request_id=request_id, outcome=str(getattr(outcome, "value", outcome)))
        return handed_off

    async def run_forever(self) -> None:
        """Poll until stop() is called."""
        logger.info("poller_started", interval_seconds=self.interval_seconds, batch_size=self.batch_size)

        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(
                    "poll_cycle_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("poller_stopped")

    def stop(self) -> None:
        """End the loop after the request in progress; the rest of the cycle stays queued."""
        self._stopped.set()
