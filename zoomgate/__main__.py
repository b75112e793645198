# zoomgate/__main__.py
#
# python -m zoomgate
#
# Loads settings from the environment (fails fast if incomplete), configures
# logging and serves the app with uvicorn.

import logging

import uvicorn

from .config import get_settings
from .main import create_app


def main() -> None:
    settings = get_settings()

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        create_app(settings),
        host=settings.ZOOM_APP_HOST,
        port=settings.ZOOM_APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
