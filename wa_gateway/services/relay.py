import logging

import socketio
from socketio.exceptions import ConnectionError as RelayConnectionError

from wa_gateway.core.errors import GatewayError, NotReadyError

logger = logging.getLogger(__name__)


class RelayClient:
    """Socket.IO link to a relay server that pushes send requests to this gateway.

    On connect the gateway registers its client id; the server then emits
    `send_message` events, each answered with a `send_result`.
    """

    def __init__(self, controller, url: str, client_id: str):
        self.controller = controller
        self.url = url
        self.client_id = client_id
        self.sio = socketio.AsyncClient()

        self.sio.on("connect", self.on_connect)
        self.sio.on("connect_error", self.on_connect_error)
        self.sio.on("disconnect", self.on_disconnect)
        self.sio.on("send_message", self.on_send_message)

    async def on_connect(self):
        logger.info("Connected to relay %s, registering %s", self.url, self.client_id)
        await self.sio.emit("register", {"client_id": self.client_id})

    async def on_connect_error(self, data):
        logger.warning("⚠️ Relay connection error: %s", data)

    async def on_disconnect(self, *args):
        logger.info("Disconnected from relay")

    async def on_send_message(self, data):
        """Data: {"phone": "...", "message": "...", "image_path": "..."}"""
        data = data or {}
        phone = data.get("phone")
        message = data.get("message")
        request_id = data.get("request_id")

        if not phone or not message:
            result = {"ok": False, "error": "Missing phone or message"}
        else:
            try:
                await self.controller.send_message(phone, message, data.get("image_path"))
                result = {"ok": True, "message": "Message sent"}
                logger.info("✅ Relayed message sent to %s", phone)
            except NotReadyError as e:
                result = {"ok": False, "error": str(e)}
            except GatewayError as e:
                logger.error("❌ Relayed message to %s failed: %s", phone, e)
                result = {"ok": False, "error": str(e)}

        if request_id is not None:
            result["request_id"] = request_id
        await self.sio.emit("send_result", result)
        return result

    async def connect(self) -> bool:
        try:
            logger.info("Connecting to relay %s...", self.url)
            await self.sio.connect(self.url, transports=["websocket", "polling"], wait_timeout=20)
        except RelayConnectionError as e:
            logger.warning("⚠️ Could not connect to relay: %s", e)
            return False
        return True

    async def disconnect(self):
        if self.sio.connected:
            await self.sio.disconnect()
