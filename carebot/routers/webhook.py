from typing import Optional
from fastapi import APIRouter, Request, Depends, Form, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.request_validator import RequestValidator
from twilio.twiml.messaging_response import MessagingResponse
from carebot.config import get_settings
from carebot.database import get_db
from carebot.dependencies import get_classifier, get_domain_client, get_mailer
from carebot.services.flow_dispatcher import FlowDispatcher
import logging

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)

async def validate_twilio_request(request: Request):
    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
    form = await request.form()
    # Twilio sends data as form-encoded
    params = dict(form)
    url = str(request.url)

    # Render or proxies might change protocol to http, ensuring https matches Twilio's request
    if settings.ENVIRONMENT == "production":
        url = url.replace("http://", "https://")

    signature = request.headers.get("X-Twilio-Signature", "")

    if not validator.validate(url, params, signature):
        if settings.ENVIRONMENT == "production":
            logger.warning(f"Invalid Twilio signature: {signature}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
        logger.debug("Unsigned webhook accepted outside production")

@router.post("/webhook")
async def whatsapp_webhook(
    request: Request,
    From: str = Form(...),
    Body: str = Form(""),
    NumMedia: int = Form(0),
    MediaUrl0: Optional[str] = Form(None),
    MediaContentType0: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
    domain=Depends(get_domain_client),
    mailer=Depends(get_mailer),
    classifier=Depends(get_classifier),
):
    await validate_twilio_request(request)

    dispatcher = FlowDispatcher(db, domain, mailer, classifier)
    if NumMedia > 0 and MediaUrl0:
        replies = await dispatcher.handle_media(From, MediaUrl0, MediaContentType0, Body)
    else:
        replies = await dispatcher.handle_message(From, Body)

    response = MessagingResponse()
    for reply in replies:
        response.message(reply)
    return Response(content=str(response), media_type="application/xml")
