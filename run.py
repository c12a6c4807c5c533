import asyncio
import logging
import sys

import uvicorn

from wa_gateway.core.config import load_settings
from wa_gateway.core.errors import ConfigError
from wa_gateway.core.logging_config import setup_logging


def main():
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging()
        logging.getLogger("wa_gateway").critical("❌ %s", e)
        sys.exit(1)

    setup_logging(settings.log_level)

    # Enforce ProactorEventLoopPolicy on Windows for Playwright
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    from wa_gateway.main import create_app

    app = create_app(settings)

    # uvicorn turns SIGTERM/SIGINT into the app's shutdown hook
    logging.getLogger("wa_gateway").info("🚀 Starting server on port %s...", settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
