import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Optional

if TYPE_CHECKING:
    from keygate.storage.key_store import KeyStore

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    Periodically deletes keys that expired without being consumed.

    Consumed keys are never touched. Sweeps are bulk hygiene and write no
    audit entries. run_once() can be called directly (or concurrently with
    the background loop); the purge is a single conditional statement.
    """

    def __init__(
        self,
        store: "KeyStore",
        interval_seconds: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._interval = interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> List[str]:
        removed = await self._store.purge_expired_unconsumed(self._clock())
        if removed:
            logger.info("Swept %d expired key(s)", len(removed))
        return removed

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Expiry sweeper started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in expiry sweep: %s", e)
