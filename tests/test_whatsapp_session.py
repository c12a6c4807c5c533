"""Tests for WhatsApp Web page detection, against a fake Playwright page."""

import base64

import pytest

from wa_gateway.core.errors import SendError
from wa_gateway.services.events import AuthFailed, Authenticated, ChallengeIssued, Disconnected, Ready
from wa_gateway.services.launch import LaunchConfig, LaunchMode
from wa_gateway.services.whatsapp import CHAT_LIST_SELECTOR, QR_SELECTOR, WhatsAppSession


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    @property
    def first(self):
        return self

    def locator(self, selector):
        return self

    async def count(self):
        return 1 if self.selector in self.page.visible else 0

    async def get_attribute(self, name):
        return self.page.qr_token

    async def screenshot(self, timeout=None):
        return b"qr-png"


class FakePage:
    def __init__(self):
        self.visible = set()
        self.qr_token = None
        self.closed = False

    def is_closed(self):
        return self.closed

    def locator(self, selector):
        return FakeLocator(self, selector)

    def show_qr(self, token):
        self.visible = {QR_SELECTOR}
        self.qr_token = token

    def show_chats(self):
        self.visible = {CHAT_LIST_SELECTOR}


def make_session(mode=LaunchMode.FRESH):
    events = []
    session = WhatsAppSession(LaunchConfig(mode=mode), events.append)
    session.page = FakePage()
    return session, events


class TestPagePolling:
    async def test_loading_page_emits_nothing(self):
        session, events = make_session()
        await session._poll_page()
        assert events == []

    async def test_qr_is_reported_once_per_token(self):
        """Each new QR token produces one ChallengeIssued with a PNG of it."""
        session, events = make_session()
        session.page.show_qr("2@first")

        await session._poll_page()
        await session._poll_page()
        session.page.show_qr("2@second")
        await session._poll_page()

        assert [e.token for e in events] == ["2@first", "2@second"]
        assert all(isinstance(e, ChallengeIssued) for e in events)
        assert events[0].image_base64 == base64.b64encode(b"qr-png").decode()

    async def test_chat_list_means_ready_once(self):
        session, events = make_session()
        session.page.show_chats()

        await session._poll_page()
        await session._poll_page()

        assert events == [Authenticated(), Ready()]
        assert session.ready is True

    async def test_qr_after_ready_is_a_disconnect(self):
        """Logging out from the phone brings the QR back."""
        session, events = make_session()
        session.page.show_chats()
        await session._poll_page()

        session.page.show_qr("2@again")
        await session._poll_page()
        await session._poll_page()

        assert isinstance(events[-1], Disconnected)
        assert len(events) == 3

    async def test_qr_in_resume_mode_is_auth_failure(self):
        """Stored credentials that still land on the QR screen were rejected."""
        session, events = make_session(LaunchMode.RESUME)
        session.page.show_qr("2@token")

        await session._poll_page()
        assert events == [AuthFailed("stored credentials were rejected")]

    async def test_closed_page_is_a_disconnect(self):
        session, events = make_session()
        session.page.closed = True

        await session._poll_page()
        assert events == [Disconnected("page closed")]

    async def test_nothing_is_emitted_after_close(self):
        session, events = make_session()
        session.page.show_chats()
        await session.close()

        await session._poll_page()
        assert events == []


class TestBrowserGone:
    async def test_context_close_reports_disconnect(self):
        session, events = make_session()
        session._on_browser_gone("browser context closed")
        session._on_browser_gone("browser process exited")

        assert events == [Disconnected("browser context closed")]
        assert session.page is None


class TestSendMessage:
    async def test_send_without_page(self):
        session, _ = make_session()
        session.page = None
        with pytest.raises(SendError):
            await session.send_message("1", "hi")

    async def test_send_with_missing_image(self, tmp_path):
        session, _ = make_session()
        with pytest.raises(SendError, match="Image not found"):
            await session.send_message("1", "hi", image_path=str(tmp_path / "nope.png"))
