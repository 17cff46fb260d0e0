from carebot.exceptions import (
    CodeRejected,
    CodeRejection,
    ConflictError,
    NotFoundError,
    RejectedError,
    TokenExpiredError,
    TransientError,
)

MAIN_MENU = (
    "What would you like to do?\n"
    "1. Search medicines\n"
    "2. Find a doctor\n"
    "3. Track an order\n"
    "4. Book an appointment\n"
    "5. Place an order\n"
    "6. Talk to support\n"
    "7. Help"
)

WELCOME = (
    "👋 Welcome to CareBot, your healthcare assistant.\n\n"
    "To get started, register with:\n"
    "register <full name> <email> <password>\n\n"
    "Already have an account? Send:\n"
    "login <email> <password>"
)

HELP = (
    "Here is what I understand:\n"
    "• search <medicine> - browse medicines\n"
    "• health products <category>\n"
    "• lab tests <type>\n"
    "• doctors <specialty> in <city>\n"
    "• add <item number> <quantity>\n"
    "• order <address> <flutterwave|paystack|cash>\n"
    "• track <order id>\n"
    "• pay <order id> <flutterwave|paystack>\n"
    "• book <doctor number> <YYYY-MM-DD> <HH:MM>\n"
    "• my appointments\n"
    "• support - talk to a person\n"
    "• logout\n\n"
    "Send a photo or PDF of your prescription with the caption \"rx <order id>\"."
)

AUTH_REQUIRED = "🔒 Please log in first.\nSend: login <email> <password>\nNew here? Send: register <full name> <email> <password>"
IDLE_LOGOUT = "You were logged out due to inactivity. Send: login <email> <password> to continue."
SESSION_EXPIRED = "Your session has expired. Please log in again: login <email> <password>"
RESEND_LAST = "Something changed while we were processing that. Please resend your last message."
TRY_LATER = "⚠️ That service is temporarily unavailable. Please try again later."
PLEASE_WAIT = "⏳ That took longer than expected. Please wait a moment and send your message again."
GENERIC_APOLOGY = "Sorry, something went wrong on our side. Please try again."
NOT_FOUND = "We couldn't find what you were looking for."
NOT_UNDERSTOOD = "Sorry, I didn't understand that."

ENTER_CODE = "Please enter the 4-digit code we e-mailed you, or reply \"resend\" for a new one."
CODE_SENT = "✅ We sent a 4-digit verification code to {email}. Reply with the code to finish registering."
CODE_RESENT = "📧 A new code is on its way to {email}. Any earlier code no longer works."
CODE_ALREADY_SENT = "We already sent a code to {email}. Enter it here, or reply \"resend\" for a new one."
CODE_DELIVERY_FAILED = "We couldn't e-mail your code to {email} right now. Reply \"resend\" to try again."
NO_PENDING_REGISTRATION = "There's no registration in progress. Send: register <full name> <email> <password>"
REGISTRATION_CANCELLED = "Registration cancelled."
TOO_MANY_CODE_ATTEMPTS = (
    "🚫 Too many incorrect codes, so this registration was cancelled.\n"
    "Send: register <full name> <email> <password> to start again."
)

CODE_GUIDANCE = {
    CodeRejection.INVALID_FORMAT: "That doesn't look like a 4-digit code. " + ENTER_CODE,
    CodeRejection.NOT_FOUND: "That code is not correct. Check the e-mail and try again, or reply \"resend\".",
    CodeRejection.EXPIRED: "That code has expired. Reply \"resend\" to get a new one.",
    CodeRejection.ALREADY_USED: "That code was already used. If you're stuck, reply \"support\" to contact us.",
    CodeRejection.SUPERSEDED: "That code was replaced by a newer one. Use the latest code we e-mailed you.",
}

LIST_TITLES = {
    "products": "💊 *Medicines*",
    "healthcare_products": "🩺 *Healthcare Products*",
    "doctors": "👩‍⚕️ *Doctors*",
    "diagnostic_tests": "🧪 *Diagnostic Tests*",
    "appointments": "📅 *Your Appointments*",
}

LIST_EMPTY = {
    "products": "No medicines matched your search.",
    "healthcare_products": "No healthcare products found.",
    "doctors": "No doctors found for that search.",
    "diagnostic_tests": "No diagnostic tests found.",
    "appointments": "You have no appointments yet.",
}


def with_menu(text: str, logged_in: bool) -> str:
    if logged_in:
        return f"{text}\n\n{MAIN_MENU}"
    return text


def missing_fields(action: str, fields) -> str:
    return f"To {action}, please also send: {', '.join(fields)}."


def for_code_rejection(exc: CodeRejected) -> str:
    return CODE_GUIDANCE.get(exc.reason, ENTER_CODE)


def for_error(exc: BaseException, logged_in: bool = False) -> str:
    """Map a failure to the single message the user sees."""
    if isinstance(exc, CodeRejected):
        return for_code_rejection(exc)
    if isinstance(exc, TokenExpiredError):
        return SESSION_EXPIRED
    if isinstance(exc, ConflictError):
        return RESEND_LAST
    if isinstance(exc, TransientError):
        # attempts > 1 means the executor already retried
        return TRY_LATER if exc.attempts > 1 else PLEASE_WAIT
    if isinstance(exc, NotFoundError):
        return NOT_FOUND
    if isinstance(exc, RejectedError):
        return with_menu(exc.message or GENERIC_APOLOGY, logged_in)
    return GENERIC_APOLOGY
