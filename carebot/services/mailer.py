import logging
import httpx
from carebot.config import get_settings
from carebot.exceptions import RejectedError, TransientError

logger = logging.getLogger(__name__)

class Mailer:
    """Delivers one-time codes through the transactional e-mail API."""

    def __init__(self, api_url: str = None, api_key: str = None, sender: str = None, timeout: float = None):
        settings = get_settings()
        self.api_url = api_url if api_url is not None else settings.EMAIL_API_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_SENDER
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.validity_minutes = settings.OTP_VALIDITY_MINUTES

    async def send_code(self, email: str, code: str, name: str = "") -> None:
        if not self.api_url:
            raise RejectedError("E-mail delivery is not configured")

        payload = {
            "sender": {"email": self.sender},
            "to": [{"email": email, "name": name or email}],
            "subject": "Your verification code",
            "textContent": (
                f"Hello {name or 'there'},\n\n"
                f"Your verification code is {code}. It is valid for {self.validity_minutes} minutes.\n"
                "If you did not request this, you can ignore this message."
            ),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload, headers={"api-key": self.api_key})
        except httpx.TransportError as e:
            raise TransientError("E-mail service unreachable") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"E-mail service unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise RejectedError(f"E-mail service rejected the message ({response.status_code})")
        logger.info(f"Verification code e-mailed to {email}")
