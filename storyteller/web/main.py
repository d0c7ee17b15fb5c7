from __future__ import annotations

import uvicorn

from storyteller.config import get_settings
from storyteller.utils.logging import configure_logging, get_logger
from storyteller.web.app import create_app


logger = get_logger("main")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("web_starting", site_url=settings.get_site_url())
    app = create_app()
    uvicorn.run(
        app,
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
