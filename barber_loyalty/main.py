"""Main entry point for the loyalty engine API server"""
import logging
import uvicorn
from barber_loyalty.config import API_HOST, API_PORT, LOG_LEVEL, validate_config

logger = logging.getLogger(__name__)


def main() -> None:
    """Validate configuration and serve barber_loyalty.api.server:app"""
    logger.info("Validating configuration...")
    validate_config()

    uvicorn.run(
        "barber_loyalty.api.server:app",
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
