import asyncio
import logging

from init import Session
from ledger_system.services.bonus_pool_service import BonusPoolService
import config

logger = logging.getLogger(__name__)


class SettlementRunner:
    """Periodically settles bonus pool cycles whose end has passed."""

    def __init__(self, check_interval: float = None, session_factory=None):
        self.check_interval = check_interval or config.SETTLEMENT_CHECK_INTERVAL
        self.session_factory = session_factory or Session
        self._running = False

    async def process_due_cycles(self) -> dict:
        """
        Один проход: закрывает все истекшие циклы.
        Safe to call as often as needed, an unexpired cycle is left alone.
        """
        with self.session_factory() as session:
            service = BonusPoolService(session)
            result = await service.settleDueCycles()

        for settled in result["settled"]:
            logger.info(
                f"Scheduled settlement closed cycle {settled['cycleNumber']}: "
                f"distributed {settled['distributed']}, unallocated {settled['unallocated']}"
            )
        return result

    async def run(self):
        """
        Запускает процесс проверки циклов
        """
        logger.info(f"Settlement runner started, checking every {self.check_interval}s")
        self._running = True

        while self._running:
            try:
                await self.process_due_cycles()
            except Exception as e:
                logger.error(f"Error in settlement runner main loop: {e}", exc_info=True)
            await asyncio.sleep(self.check_interval)

    async def stop(self):
        """
        Останавливает процесс проверки циклов
        """
        self._running = False
        logger.info("Settlement runner stopped")
