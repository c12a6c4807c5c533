import logging
import secrets

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import ValidationError

from wa_gateway.api.models import MessageSend, SendResult, SessionStatus
from wa_gateway.core.errors import GatewayError, NotReadyError

logger = logging.getLogger(__name__)

router = APIRouter()

QR_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>WhatsApp login</title>
    <meta http-equiv="refresh" content="20">
    <style>
        body {{ font-family: sans-serif; text-align: center; padding: 20px; background: #f0f2f5; }}
        .container {{ background: white; max-width: 600px; margin: 0 auto; padding: 30px; border-radius: 10px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
        h1 {{ color: #128C7E; }}
        img {{ border: 1px solid #ccc; padding: 10px; border-radius: 8px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Scan to log in</h1>
        <img src="data:image/png;base64,{image}" alt="WhatsApp QR code">
        <p><small>WhatsApp &gt; Linked devices &gt; Link a device. The code refreshes automatically.</small></p>
    </div>
</body>
</html>
"""


def get_controller(request: Request):
    return request.app.state.controller


def _reply(status_code: int, error: str) -> JSONResponse:
    body = SendResult(ok=False, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@router.get("/", response_class=PlainTextResponse)
async def home():
    return "✅ WhatsApp gateway is running"


@router.get("/whatsapp/login", response_class=HTMLResponse)
async def login(request: Request):
    controller = get_controller(request)
    if controller.ready:
        return HTMLResponse("✅ Already logged in")

    challenge = controller.challenge
    if challenge is not None and not challenge.image_base64:
        return HTMLResponse("⚠️ QR capture failed, retrying. Refresh in a few seconds...")
    if challenge is None:
        return HTMLResponse("⏳ No QR currently, please wait a few seconds and refresh...")
    return HTMLResponse(QR_PAGE.format(image=challenge.image_base64))


@router.get("/qr")
async def get_qr(request: Request):
    controller = get_controller(request)
    if controller.ready:
        return {"status": "connected", "qr_base64": None}

    challenge = controller.challenge
    if challenge is None or not challenge.image_base64:
        raise HTTPException(status_code=404, detail="QR Code not found (yet)")
    return {"status": "waiting_qr", "qr_base64": challenge.image_base64}


@router.get("/status", response_model=SessionStatus)
@router.get("/debug/session", response_model=SessionStatus)
async def get_status(request: Request):
    return get_controller(request).status()


@router.post("/whatsapp/sendmessage", response_model=SendResult, response_model_exclude_none=True)
@router.post("/whatsapp/send", response_model=SendResult, response_model_exclude_none=True)
async def send_message(request: Request):
    settings = request.app.state.settings
    password = request.headers.get("x-password", "")
    if not settings.api_password or not secrets.compare_digest(password.encode(), settings.api_password.encode()):
        return _reply(401, "Invalid password")

    try:
        data = await request.json()
    except ValueError:
        data = {}
    try:
        payload = MessageSend.model_validate(data if isinstance(data, dict) else {})
    except ValidationError:
        return _reply(400, "Invalid request body")
    if not payload.phone or not payload.message:
        return _reply(400, "Missing phone or message")

    controller = get_controller(request)
    try:
        await controller.send_message(payload.phone, payload.message, payload.image_path)
    except NotReadyError:
        return _reply(503, "Client not ready")
    except GatewayError as e:
        logger.error("❌ sendmessage error: %s", e)
        return _reply(500, str(e))

    logger.info("✅ Message sent to %s", payload.phone)
    return SendResult(ok=True, message="Message sent")
