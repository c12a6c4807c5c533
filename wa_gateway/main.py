import asyncio
import logging
import sys
from functools import partial
from typing import Optional

# Windows Helper: Enforce ProactorEventLoopPolicy for Playwright/Subprocesses
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from fastapi import FastAPI

from wa_gateway.api.routes import router
from wa_gateway.core.config import Settings, load_settings
from wa_gateway.core.errors import StoreConnectionError
from wa_gateway.services.controller import SessionController
from wa_gateway.services.credential_store import create_store
from wa_gateway.services.keepalive import keepalive_loop
from wa_gateway.services.relay import RelayClient
from wa_gateway.services.whatsapp import create_session

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, controller: Optional[SessionController] = None) -> FastAPI:
    """Build the gateway app around one SessionController.

    Startup opens the credential store (failure aborts the process), then
    launches the controller and the optional keepalive and relay tasks in the
    background. Shutdown runs the controller's bounded backup-and-close.
    """
    if settings is None:
        settings = load_settings()
    if controller is None:
        controller = SessionController.from_settings(
            settings,
            create_store(settings.store_url),
            partial(create_session, settings),
        )

    app = FastAPI(title="WhatsApp Gateway (Playwright)")
    app.state.settings = settings
    app.state.controller = controller
    app.state.relay = None
    app.state.background = []
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        try:
            controller.store.connect()
        except StoreConnectionError as e:
            logger.critical("❌ %s", e)
            raise

        if not settings.api_password:
            logger.warning("⚠️ WHATSAPP_API_PASSWORD is not set, every send request will be rejected")

        tasks = app.state.background
        tasks.append(asyncio.create_task(controller.run(settings.startup_delay)))

        if settings.external_url:
            tasks.append(asyncio.create_task(keepalive_loop(settings.external_url, settings.keepalive_interval)))

        if settings.relay_url:
            app.state.relay = RelayClient(controller, settings.relay_url, settings.client_id)
            tasks.append(asyncio.create_task(app.state.relay.connect()))

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.relay is not None:
            await app.state.relay.disconnect()

        tasks = app.state.background
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        tasks.clear()

        await controller.shutdown(settings.shutdown_timeout)

    return app
