import asyncio
import logging
from twilio.rest import Client
from twilio.base.exceptions import TwilioException
from carebot.config import get_settings

logger = logging.getLogger(__name__)

class Messenger:
    """Out-of-band WhatsApp delivery (replies that are not the answer to an inbound webhook)."""

    def __init__(self, client: Client = None):
        settings = get_settings()
        self.from_number = settings.TWILIO_PHONE_NUMBER
        self._client = client or Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)

    async def send(self, identity: str, text: str) -> bool:
        to = identity if identity.startswith("whatsapp:") else f"whatsapp:{identity}"
        try:
            # twilio's REST client is blocking
            await asyncio.to_thread(
                self._client.messages.create, from_=self.from_number, to=to, body=text
            )
        except TwilioException as e:
            # Never retried: a failed error notice must not loop
            logger.error(f"Failed to deliver message to {identity}: {e}")
            return False
        return True
