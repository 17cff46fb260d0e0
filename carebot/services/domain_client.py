"""
HTTP client for the catalog / order / appointment / support-desk API.

Every method makes exactly one request and raises a classified error on
failure; retrying is the caller's decision (see ``services.retry``).
"""
import logging
from typing import Any, Dict, Optional

import httpx

from carebot.config import get_settings
from carebot.exceptions import NotFoundError, RejectedError, TransientError
from carebot.schemas.domain import AuthResult, Page, RegistrationPayload
from carebot.schemas.session import ListKind

logger = logging.getLogger(__name__)

LIST_PATHS = {
    ListKind.PRODUCTS: "/products",
    ListKind.HEALTHCARE_PRODUCTS: "/healthcare-products",
    ListKind.DOCTORS: "/doctors",
    ListKind.DIAGNOSTIC_TESTS: "/diagnostic-tests",
    ListKind.APPOINTMENTS: "/appointments",
}


class DomainClient:
    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        settings = get_settings()
        self.base_url = (base_url or settings.DOMAIN_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.DOMAIN_API_KEY
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    async def _request(self, method: str, path: str, *, token: str = None, **kwargs) -> Any:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"Timed out calling {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Could not reach domain API for {method} {path}") from e

        if response.status_code == 404:
            raise NotFoundError(self._error_message(response) or "Not found")
        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"Domain API {method} {path} -> {response.status_code}")
            raise TransientError(f"Domain API unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise RejectedError(self._error_message(response) or "Request was rejected")

        if not response.content:
            return {}
        body = response.json()
        # Accept both {"data": ...} envelopes and bare payloads
        if isinstance(body, dict) and "data" in body and set(body) <= {"data", "success", "message"}:
            return body["data"]
        return body

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if isinstance(body, dict):
            return body.get("message") or body.get("error") or body.get("detail")
        return None

    # --- accounts ---

    async def find_user_by_email(self, email: str) -> Dict[str, Any]:
        return await self._request("GET", "/users", params={"email": email})

    async def register_user(self, payload: RegistrationPayload) -> AuthResult:
        body = await self._request("POST", "/users/register", json=payload.model_dump())
        return AuthResult.model_validate(body)

    async def login_user(self, email: str, password: str) -> AuthResult:
        body = await self._request("POST", "/users/login", json={"email": email, "password": password})
        return AuthResult.model_validate(body)

    async def refresh_token(self, token: str) -> str:
        body = await self._request("POST", "/auth/refresh", token=token)
        return body["token"]

    # --- paginated lists ---

    async def list_page(self, kind: ListKind, filters: Dict[str, Any], page: int, page_size: int, token: str = None) -> Page:
        params = {k: v for k, v in (filters or {}).items() if v not in (None, "")}
        params.update({"page": page, "pageSize": page_size})
        body = await self._request("GET", LIST_PATHS[kind], params=params, token=token)
        return Page.model_validate(body)

    # --- cart, orders, payments ---

    async def add_to_cart(self, token: str, user_id: str, product_id: Any, quantity: int) -> Dict[str, Any]:
        return await self._request(
            "POST", "/cart/items", token=token,
            json={"userId": user_id, "productId": product_id, "quantity": quantity},
        )

    async def place_order(self, token: str, user_id: str, address: str, payment_method: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/orders", token=token,
            json={"userId": user_id, "address": address, "paymentMethod": payment_method},
        )

    async def get_order(self, token: str, order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/orders/{order_id}", token=token)

    async def create_payment_link(self, token: str, order_id: str, provider: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/payments", token=token, json={"orderId": order_id, "provider": provider}
        )

    async def attach_prescription(self, token: str, order_id: str, file_url: str) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/orders/{order_id}/prescriptions", token=token, json={"fileUrl": file_url}
        )

    # --- appointments ---

    async def book_appointment(self, token: str, user_id: str, doctor_id: Any, scheduled_at: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/appointments", token=token,
            json={"userId": user_id, "doctorId": doctor_id, "scheduledAt": scheduled_at},
        )

    # --- support desk ---

    async def start_support_chat(self, phone: str, role: str) -> Dict[str, Any]:
        return await self._request("POST", "/support/chats", json={"phone": phone, "role": role})

    async def forward_support_message(self, phone: str, text: str) -> Dict[str, Any]:
        return await self._request("POST", "/support/messages", json={"phone": phone, "message": text})

    async def end_support_chat(self, phone: str) -> Dict[str, Any]:
        return await self._request("POST", "/support/chats/close", json={"phone": phone})
