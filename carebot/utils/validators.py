import re
from typing import Optional

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ORDER_CAPTION_RE = re.compile(r"(?:\brx\b|\border\b|\bprescription\b)\s*#?([A-Za-z0-9_-]*\d[A-Za-z0-9_-]*)", re.IGNORECASE)
TX_REF_RE = re.compile(r"(?:drugsng[-_])([0-9]+)(?:[-_][0-9]+)?", re.IGNORECASE)

def sanitize_input(value: Optional[str]) -> str:
    if not value:
        return ""
    # Drop control characters and angle brackets, collapse whitespace
    clean = re.sub(r"[\x00-\x1f<>]", "", value)
    return re.sub(r"\s+", " ", clean).strip()

def normalize_phone(phone: str) -> str:
    # Twilio delivers "whatsapp:+234..." - the identity is the bare E.164 number
    phone = phone.replace("whatsapp:", "")
    clean = re.sub(r'[^0-9+]', '', phone)
    if not clean.startswith('+'):
        clean = "+" + clean
    return clean

def validate_email(email: str) -> str:
    email = sanitize_input(email).lower()
    if not EMAIL_RE.match(email):
        raise ValueError("Please provide a valid email address.")
    return email

def validate_registration(name: str, email: str, password: str) -> None:
    if len(sanitize_input(name)) < 2:
        raise ValueError("Name must be at least 2 characters.")
    validate_email(email)
    if len(password or "") < 6:
        raise ValueError("Password must be at least 6 characters.")

def validate_login(email: str, password: str) -> None:
    validate_email(email)
    if not password:
        raise ValueError("Password is required.")

def parse_order_id(text: Optional[str]) -> Optional[str]:
    """Pull an order id out of free text ("rx 123", "drugsng-123-1590000000", "my order is 12345")."""
    if not text:
        return None
    s = text.strip()

    match = ORDER_CAPTION_RE.search(s)
    if match:
        return match.group(1)

    match = TX_REF_RE.search(s)
    if match:
        return match.group(1)

    # Prefer the longest run of 3+ digits
    numbers = re.findall(r"\d{3,}", s)
    if numbers:
        return max(numbers, key=len)

    tokens = re.findall(r"[A-Za-z0-9_-]{3,50}", s)
    return tokens[0] if tokens else None

def is_valid_order_id(order_id: Optional[str]) -> bool:
    if not order_id:
        return False
    clean = sanitize_input(order_id)
    return bool(re.fullmatch(r"[0-9]{1,12}", clean) or re.fullmatch(r"[A-Za-z0-9_-]{3,50}", clean))
