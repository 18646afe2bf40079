from __future__ import annotations

import logging

from fastapi import FastAPI

from .api import router
from .config import get_settings, settings_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    for issue in settings_issues(settings):
        logger.warning("configuration warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.include_router(router)
    return app


app = create_app()
