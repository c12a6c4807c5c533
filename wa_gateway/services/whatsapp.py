import asyncio
import base64
import logging
import os
from typing import Any, Callable, Optional
from urllib.parse import quote

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from wa_gateway.core import config
from wa_gateway.core.errors import GatewayError, LaunchError, SendError
from wa_gateway.services.events import (
    AuthFailed,
    Authenticated,
    ChallengeIssued,
    Disconnected,
    Ready,
    SessionEvent,
)
from wa_gateway.services.launch import LaunchConfig, LaunchMode, build_launch_config

logger = logging.getLogger(__name__)

CHAT_LIST_SELECTOR = "#pane-side"
QR_SELECTOR = "div[data-ref]"
MESSAGE_BOX_SELECTOR = 'div[contenteditable="true"][data-tab="10"]'


class WhatsAppSession:
    """One Playwright browser running WhatsApp Web.

    The session watches the page and reports what it sees through `on_event`:
    a QR on screen, the chat list appearing, stored credentials being rejected,
    or the browser going away. After reporting AuthFailed or Disconnected it
    stops watching; the owner is expected to close it and start a new one.
    """

    def __init__(
        self,
        launch: LaunchConfig,
        on_event: Callable[[SessionEvent], None],
        credential: Any = None,
        url: str = config.WHATSAPP_URL,
        poll_interval: float = 2.0,
    ):
        self.launch = launch
        self.on_event = on_event
        self.credential = credential
        self.url = url
        self.poll_interval = poll_interval

        self.playwright = None
        self.browser = None
        self.context = None
        self.page = None
        self.ready = False

        self._closed = False
        self._finished = False
        self._last_token: Optional[str] = None
        self._page_lock = asyncio.Lock()
        self._watch_task: Optional[asyncio.Task] = None

    async def initialize(self):
        logger.info("Starting Playwright (%s mode)...", self.launch.mode.value)
        try:
            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(**self.launch.browser_kwargs())

            context_args = self.launch.context_kwargs()
            if self.credential:
                context_args["storage_state"] = self.credential
            self.context = await self.browser.new_context(**context_args)
            # Monitor Browser Closure
            self.context.on("close", lambda _: self._on_browser_gone("browser context closed"))
            self.browser.on("disconnected", lambda _: self._on_browser_gone("browser process exited"))

            self.page = await self.context.new_page()
            logger.info("Navigating to %s", self.url)
            await self.page.goto(self.url, timeout=60000)
        except PlaywrightError as e:
            await self.close()
            raise LaunchError(f"Could not launch WhatsApp Web: {e}") from e

        self._watch_task = asyncio.create_task(self._watch_loop())

    def _emit(self, event: SessionEvent):
        if self._closed or self._finished:
            return
        if isinstance(event, (AuthFailed, Disconnected)):
            self._finished = True
        self.on_event(event)

    def _on_browser_gone(self, reason: str):
        if not self._closed:
            logger.warning("⚠️ %s", reason)
            self.page = None
            self._emit(Disconnected(reason))

    async def _watch_loop(self):
        while not (self._closed or self._finished):
            try:
                async with self._page_lock:
                    await self._poll_page()
            except PlaywrightError as e:
                if self.page is None or self.page.is_closed():
                    self._emit(Disconnected(f"page closed: {e}"))
                else:
                    # Navigation in progress, try again on the next tick
                    logger.debug("Page poll failed: %s", e)
            await asyncio.sleep(self.poll_interval)

    async def _poll_page(self):
        page = self.page
        if page is None or page.is_closed():
            self._emit(Disconnected("page closed"))
            return

        if await page.locator(CHAT_LIST_SELECTOR).count() > 0:
            if not self.ready:
                self.ready = True
                self._emit(Authenticated())
                self._emit(Ready())
            return

        qr = page.locator(QR_SELECTOR).first
        if await page.locator(QR_SELECTOR).count() == 0:
            return  # still loading

        if self.ready:
            self._emit(Disconnected("logged out from the phone"))
            return
        if self.launch.mode is LaunchMode.RESUME:
            self._emit(AuthFailed("stored credentials were rejected"))
            return

        token = await qr.get_attribute("data-ref")
        if token and token != self._last_token:
            self._last_token = token
            self._emit(ChallengeIssued(token=token, image_base64=await self._capture_qr(qr)))

    async def _capture_qr(self, qr) -> Optional[str]:
        try:
            png_bytes = await qr.locator("canvas").first.screenshot(timeout=5000)
            return base64.b64encode(png_bytes).decode('utf-8')
        except PlaywrightError as e:
            logger.warning("Error getting QR: %s", e)
            return None

    async def snapshot_credentials(self):
        """Current browser storage (cookies, localStorage, IndexedDB) as a plain dict."""
        if self.context is None:
            raise GatewayError("No browser context to snapshot")
        try:
            return await self.context.storage_state(indexed_db=True)
        except PlaywrightError as e:
            raise GatewayError(f"Could not read browser storage: {e}") from e

    async def send_message(self, phone, message, image_path=None):
        if self.page is None:
            raise SendError("WhatsApp page is not open")
        if image_path and not os.path.exists(image_path):
            raise SendError(f"Image not found: {image_path}")

        async with self._page_lock:
            try:
                # Navigate to the chat
                url = f"{self.url}/send?phone={quote(str(phone))}&text={quote(message)}"
                logger.info("Opening chat with %s", phone)
                await self.page.goto(url)

                message_box = self.page.locator(MESSAGE_BOX_SELECTOR)
                await message_box.wait_for(state="visible", timeout=45000)

                if image_path:
                    logger.info("Attaching image: %s", image_path)
                    await self.page.locator('span[data-icon="plus"]').click()

                    file_input = self.page.locator('input[type="file"]').first
                    await file_input.set_input_files(image_path)

                    send_btn = self.page.locator('span[data-icon="send"]')
                    await send_btn.wait_for(state="visible", timeout=15000)
                    await send_btn.click()
                    await asyncio.sleep(3)  # upload
                    return

                await message_box.click()
                await asyncio.sleep(0.5)
                await message_box.press("Enter")
                await asyncio.sleep(2)
            except PlaywrightError as e:
                raise SendError(f"Could not send message to {phone}: {e}") from e

    async def close(self):
        self._closed = True
        if self._watch_task and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
        self._watch_task = None

        try:
            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
        except PlaywrightError as e:
            logger.warning("Error closing browser: %s", e)
        finally:
            if self.playwright:
                await self.playwright.stop()
            self.page = None
            self.context = None
            self.browser = None
            self.playwright = None
        logger.info("Playwright session closed")


def create_session(settings, mode: LaunchMode, credential, on_event) -> WhatsAppSession:
    """Session factory used by the controller."""
    return WhatsAppSession(build_launch_config(mode, settings), on_event, credential=credential)
