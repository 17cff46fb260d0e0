"""
Intent classification: free text -> {intent, parameters}.

The NLP service is an external collaborator. When it is not configured, or
fails, the deterministic keyword/regex rules below answer instead.
"""
import logging
import re
from typing import Any, Dict, Optional

import httpx

from carebot.config import get_settings
from carebot.schemas.intent import IntentResult
from carebot.schemas.session import SessionData

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
PAYMENT_METHOD_RE = re.compile(r"\b(flutterwave|paystack|cash on delivery|cash)\s*$", re.IGNORECASE)
SPECIALTY_RE = re.compile(r"\b([a-z]+(?:ologist|iatrician|iatrist|geon|dentist)|gp|general practitioner)\b", re.IGNORECASE)

MENU_SHORTCUTS = {
    "1": "search_products",
    "2": "search_doctors",
    "3": "track_order",
    "4": "book_appointment",
    "5": "place_order",
    "6": "support",
    "7": "help",
}

SUPPORT_TYPES = ("orders", "medical", "technical", "billing")


def _result(intent: str, confidence: float = 0.9, **parameters) -> IntentResult:
    params = {k: v.strip() for k, v in parameters.items() if v and v.strip()}
    return IntentResult(intent=intent, parameters=params, confidence=confidence, source="rules")


def _parse_registration(rest: str) -> Dict[str, str]:
    tokens = rest.split()
    email_index = next((i for i, t in enumerate(tokens) if EMAIL_RE.fullmatch(t)), None)
    if email_index is None:
        return {"name": " ".join(tokens)} if tokens else {}
    params = {"email": tokens[email_index]}
    if email_index > 0:
        params["name"] = " ".join(tokens[:email_index])
    if email_index + 1 < len(tokens):
        params["password"] = tokens[email_index + 1]
    return params


def parse_login(rest: str) -> Dict[str, str]:
    tokens = rest.split()
    email_index = next((i for i, t in enumerate(tokens) if EMAIL_RE.fullmatch(t)), None)
    if email_index is None:
        return {}
    params = {"email": tokens[email_index]}
    if email_index + 1 < len(tokens):
        params["password"] = tokens[email_index + 1]
    return params


class RuleBasedClassifier:
    """Deterministic classifier for the bot's documented command shapes."""

    async def classify(self, text: str, identity: str = "", session: Optional[SessionData] = None) -> IntentResult:
        return self.classify_text(text, session)

    def classify_text(self, text: str, session: Optional[SessionData] = None) -> IntentResult:
        raw = (text or "").strip()
        lower = raw.lower()
        if not lower:
            return IntentResult(intent="unknown", source="rules")

        if lower in MENU_SHORTCUTS and (session is None or session.active_cursor() is None):
            return _result(MENU_SHORTCUTS[lower], 0.8)

        match = re.match(r"^(?:register|sign\s?up)\b(.*)$", raw, re.IGNORECASE)
        if match:
            return _result("register", **_parse_registration(match.group(1)))

        match = re.match(r"^(?:login|log\s?in|sign\s?in)\b(.*)$", raw, re.IGNORECASE)
        if match:
            return _result("login", **parse_login(match.group(1)))

        if re.match(r"^(?:logout|log\s?out|sign\s?out)$", lower):
            return _result("logout")

        match = re.match(r"^add\s+#?(\d+)(?:\s+(\d+))?", lower)
        if match:
            return _result("add_to_cart", productIndex=match.group(1), quantity=match.group(2) or "1")

        match = re.match(r"^book\b\s*(?:#?(\d+))?\s*(\d{4}-\d{2}-\d{2})?\s*(\d{1,2}:\d{2})?", lower)
        if match:
            return _result("book_appointment", doctorIndex=match.group(1) or "", date=match.group(2) or "", time=match.group(3) or "")

        match = re.match(r"^pay\b\s*#?(\S+)?\s*(\w+)?", lower)
        if match:
            return _result("payment", orderId=match.group(1) or "", provider=match.group(2) or "")

        match = re.match(r"^(?:track|status)\b(.*)$", raw, re.IGNORECASE)
        if match:
            return _result("track_order", orderId=match.group(1))

        match = re.match(r"^(?:place order|checkout|order)\b(.*)$", raw, re.IGNORECASE)
        if match:
            rest = match.group(1).strip()
            method = PAYMENT_METHOD_RE.search(rest)
            if method:
                return _result(
                    "place_order",
                    address=rest[: method.start()].strip(" ,"),
                    paymentMethod=method.group(1),
                )
            return _result("place_order", address=rest)

        if re.search(r"\b(?:support|agent|human|customer care)\b", lower):
            support_type = next((t for t in SUPPORT_TYPES if t in lower), "")
            return _result("support", supportType=support_type)

        if re.search(r"\bmy appointments?\b|^appointments?$", lower):
            return _result("list_appointments")

        if re.search(r"\b(?:doctors?|physicians?)\b", lower) or SPECIALTY_RE.search(lower):
            specialty = SPECIALTY_RE.search(lower)
            location = re.search(r"\bin\s+([a-z][a-z\s]+)$", lower)
            return _result(
                "search_doctors",
                specialty=specialty.group(1) if specialty else "",
                location=location.group(1).title() if location else "",
            )

        match = re.search(r"\b(?:diagnostic|lab|tests?)\b(.*)$", lower)
        if match:
            return _result("diagnostic_tests", testType=re.sub(r"^\s*(?:tests?|for)\b", "", match.group(1)))

        match = re.search(r"\bhealth(?:care)?\s+products?\b(.*)$", lower)
        if match:
            return _result("healthcare_products", category=re.sub(r"^\s*(?:in|for)\b", "", match.group(1)))

        match = re.match(r"^(?:search|find|buy|medicines?|drugs?)\b(.*)$", lower)
        if match:
            return _result("search_products", product=re.sub(r"^\s*(?:for)\b", "", match.group(1)))

        if re.match(r"^(?:hi|hello|hey|good (?:morning|afternoon|evening)|start)\b", lower):
            return _result("greeting")

        if re.match(r"^(?:help|menu|options|\?)$", lower):
            return _result("help")

        return IntentResult(intent="unknown", confidence=0.0, source="rules")


def classifier_context(session: Optional[SessionData]) -> Dict[str, Any]:
    """Navigation hints for the NLP service. Tokens, snapshots and ids never leave."""
    if session is None:
        return {}
    context = {
        "logged_in": session.local_token is not None,
        "awaiting_code": session.registration is not None,
        "in_support": session.support is not None,
    }
    cursor = session.active_cursor()
    if cursor is not None:
        context.update(
            active_list=session.active_list.value,
            page=cursor.current_page,
            total_pages=cursor.total_pages,
        )
    return context


class HttpIntentClassifier:
    """Calls the external NLP service; falls back to rules on any failure."""

    def __init__(self, url: str = None, timeout: float = None, fallback: RuleBasedClassifier = None):
        settings = get_settings()
        self.url = url if url is not None else settings.NLP_SERVICE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.fallback = fallback or RuleBasedClassifier()

    async def classify(self, text: str, identity: str = "", session: Optional[SessionData] = None) -> IntentResult:
        if not self.url:
            return await self.fallback.classify(text, identity, session)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    json={"text": text, "identity": identity, "context": classifier_context(session)},
                )
                response.raise_for_status()
            result = IntentResult.model_validate(response.json())
            result.source = result.source or "nlp"
            return result
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"NLP service failed, using rules: {e}")
            return await self.fallback.classify(text, identity, session)
