import asyncio

from async_campaign_queue.cli import run_service
from async_campaign_queue.config import load_settings
from async_campaign_queue.logger import configure_logging, get_logger


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    logger = get_logger()
    if not settings.smtp_host:
        logger.error("No SMTP host configured; set [smtp] host or ACQ_SMTP_HOST")
        raise SystemExit(1)
    logger.info("Starting campaign queue on %s", settings.db_path)
    asyncio.run(run_service(settings))
