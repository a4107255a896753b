import structlog
import uvicorn

from rama_api.config import get_settings
from rama_api.logging_config import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("api_starting", host=settings.host, port=settings.port)
    uvicorn.run("rama_api.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
