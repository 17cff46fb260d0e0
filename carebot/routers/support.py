import hmac
import logging
from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from carebot.config import get_settings
from carebot.database import get_db
from carebot.dependencies import get_messenger
from carebot.exceptions import ConflictError
from carebot.models.session import SessionState
from carebot.services import messages
from carebot.services.session_store import SessionStore
from carebot.services.support_flow import close_from_desk
from carebot.utils.validators import normalize_phone

router = APIRouter(prefix="/support", tags=["support"])
settings = get_settings()
logger = logging.getLogger(__name__)

class AgentMessage(BaseModel):
    phone: str
    message: str

class CloseRequest(BaseModel):
    phone: str

async def require_support_key(x_support_key: str = Header("")):
    expected = settings.SUPPORT_API_KEY
    if not expected or not hmac.compare_digest(x_support_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid support key")

async def _active_handoff(store: SessionStore, phone: str):
    identity = normalize_phone(phone)
    session = await store.load(identity)
    if session is None or session.state != SessionState.SUPPORT_CHAT:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active support chat for this number")
    return identity, session

@router.post("/messages", dependencies=[Depends(require_support_key)])
async def agent_message(
    payload: AgentMessage,
    db: AsyncSession = Depends(get_db),
    messenger=Depends(get_messenger),
):
    identity, _ = await _active_handoff(SessionStore(db), payload.phone)
    delivered = await messenger.send(identity, f"🧑‍💼 Support: {payload.message}")
    if not delivered:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Message could not be delivered")
    return {"delivered": True}

@router.post("/close", dependencies=[Depends(require_support_key)])
async def close_chat(
    payload: CloseRequest,
    db: AsyncSession = Depends(get_db),
    messenger=Depends(get_messenger),
):
    store = SessionStore(db)
    identity, session = await _active_handoff(store, payload.phone)
    try:
        state = await close_from_desk(store, session)
    except ConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Session changed, retry")

    logger.info(f"Support desk closed the chat for {identity}")
    await messenger.send(
        identity,
        messages.with_menu("✅ Our support team has closed this chat.", state == SessionState.LOGGED_IN),
    )
    return {"state": state.value}
