from pydantic import BaseModel, ConfigDict
from typing import Optional


class MessageSend(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    # Optional so a missing field maps to 400, not FastAPI's 422
    phone: Optional[str] = None
    message: Optional[str] = None
    image_path: Optional[str] = None


class SendResult(BaseModel):
    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None


class SessionStatus(BaseModel):
    ok: bool = True
    state: str
    ready: bool
    qr: bool
    attempts: int
    mode: Optional[str] = None
    persisted_records: Optional[int] = None
