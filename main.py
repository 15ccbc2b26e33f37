import asyncio
import logging

from init import get_session, init_tables
from payment_system.webhook_handler import start_webhook_server
from settlement_runner import SettlementRunner
from ledger_system.events.event_bus import eventBus, LedgerEvents
import config

logger = logging.getLogger(__name__)


def log_settlement(data):
    logger.info(
        f"Cycle {data['cycleNumber']} settled: pool {data['poolAmount']}, "
        f"distributed {data['distributed']}, unallocated {data['unallocated']}"
    )


async def setup():
    logger.info("Starting application setup...")

    _, engine = get_session()
    init_tables(engine)
    logger.info("Database initialized")

    eventBus.subscribe(LedgerEvents.CYCLE_SETTLED, log_settlement)


async def start_services():
    """Запуск вспомогательных сервисов"""
    services = []

    settlement_runner = SettlementRunner(check_interval=config.SETTLEMENT_CHECK_INTERVAL)
    services.append(asyncio.create_task(
        settlement_runner.run(),
        name="settlement_runner"
    ))

    return services, settlement_runner


async def main():
    """Основная асинхронная функция"""
    services = []
    settlement_runner = None
    runner = None
    try:
        await setup()
        runner = await start_webhook_server()
        services, settlement_runner = await start_services()
        logger.info("Application setup completed")

        # Serve until cancelled
        await asyncio.Event().wait()

    except Exception as e:
        logger.error(f"Critical error in main: {e}")
        raise
    finally:
        if settlement_runner:
            await settlement_runner.stop()
        for task in services:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if runner:
            await runner.cleanup()


if __name__ == '__main__':
    try:
        logging.basicConfig(
            level=config.LOG_LEVEL,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Сервис остановлен.")
    except Exception as e:
        logger.critical(f"Unexpected error: {e}")
        raise
