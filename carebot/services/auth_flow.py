"""
Registration gated by an e-mailed one-time code, login and logout.

Registration is the only flow where a code protects an external side effect
(creating the account). The code is reserved with ``gate.verify``, the
account call runs through the retry executor, and ``gate.settle`` is told the
outcome, so a failed account call leaves the same code usable again.
"""
import logging
import re
from typing import Any, Dict, Optional

from carebot.config import get_settings
from carebot.exceptions import CodeRejected, ConflictError, NotFoundError
from carebot.models.session import SessionState
from carebot.schemas.domain import RegistrationPayload
from carebot.schemas.session import PendingRegistration, SessionData
from carebot.services import messages
from carebot.services.flow_context import FlowContext
from carebot.services.retry import RetryPolicy, call_with_retry, execute_with_retry
from carebot.utils.security import decrypt_payload, encrypt_payload
from carebot.utils.timeutils import utcnow
from carebot.utils.validators import sanitize_input, validate_login, validate_registration

logger = logging.getLogger(__name__)

REGISTRATION = "registration"
REGISTRATION_FIELDS = ("name", "email", "password")

RESEND_RE = re.compile(r"^(?:resend|retry|send again)$", re.IGNORECASE)
CANCEL_RE = re.compile(r"^cancel$", re.IGNORECASE)
# Commands that leave the code prompt and go through normal classification
PASSTHROUGH_RE = re.compile(r"^(?:register|sign\s?up|login|log\s?in|sign\s?in|support|help)\b", re.IGNORECASE)


class AuthFlow:
    def __init__(self, domain, mailer, gate, tokens, policy: RetryPolicy = None, max_code_attempts: int = None):
        self.domain = domain
        self.mailer = mailer
        self.gate = gate
        self.tokens = tokens
        self.policy = policy
        self.max_code_attempts = max_code_attempts or get_settings().OTP_MAX_ATTEMPTS

    # --- greeting / help ---

    async def greeting(self, ctx: FlowContext, params: Dict[str, str]):
        if ctx.logged_in:
            ctx.reply(messages.with_menu("👋 Welcome back!", True))
        else:
            ctx.reply(messages.WELCOME)

    async def help(self, ctx: FlowContext, params: Dict[str, str]):
        ctx.reply(messages.HELP if ctx.logged_in else f"{messages.HELP}\n\n{messages.AUTH_REQUIRED}")

    # --- one-time code prompt ---

    async def handle_pending_code(self, ctx: FlowContext, text: str) -> bool:
        """Handle input while a registration code is outstanding.

        Returns False when the input should fall through to intent classification.
        """
        text = text.strip()
        if text.isdigit():
            await self.verify_code(ctx, text)
            return True
        if RESEND_RE.match(text):
            await self.resend(ctx)
            return True
        if CANCEL_RE.match(text):
            if ctx.state == SessionState.REGISTERING:
                ctx.transition(SessionState.NEW)
            else:
                ctx.data.registration = None
            ctx.reply(messages.REGISTRATION_CANCELLED)
            return True
        if PASSTHROUGH_RE.match(text):
            return False
        pending = ctx.data.registration
        if pending is not None and pending.delivery_failed:
            ctx.reply(messages.CODE_DELIVERY_FAILED.format(email=pending.address))
        else:
            ctx.reply(messages.ENTER_CODE)
        return True

    async def verify_code(self, ctx: FlowContext, code: str):
        pending = ctx.data.registration
        if pending is not None:
            address, purpose = pending.address, pending.purpose
        else:
            # The breadcrumb can be lost if the session write raced the code issue
            recovered = await self.gate.recover_payload(REGISTRATION, code)
            if recovered is None or recovered[1].get("phone") != ctx.identity:
                ctx.reply(messages.NO_PENDING_REGISTRATION)
                return
            address, purpose = recovered[0], REGISTRATION
            logger.info(f"Recovered registration breadcrumb for {ctx.identity} from the code store")

        try:
            reservation = await self.gate.verify(address, purpose, code)
        except CodeRejected as e:
            logger.info(f"Registration code for {address} rejected: {e.reason.value}")
            if pending is not None:
                pending.attempts += 1
                if pending.attempts >= self.max_code_attempts:
                    await self.gate.revoke(address, purpose)
                    logger.info(f"Registration for {ctx.identity} abandoned after {pending.attempts} wrong codes")
                    if ctx.state == SessionState.REGISTERING:
                        ctx.transition(SessionState.NEW)
                    else:
                        ctx.data.registration = None
                    ctx.reply(messages.TOO_MANY_CODE_ATTEMPTS)
                    return
            ctx.reply(messages.for_code_rejection(e))
            return

        payload = reservation.payload or self._snapshot(pending)
        if not payload or not all(payload.get(f) for f in REGISTRATION_FIELDS):
            await self.gate.settle(reservation, False)
            ctx.transition(SessionState.NEW)
            ctx.reply(messages.NO_PENDING_REGISTRATION)
            return

        registration = RegistrationPayload(
            name=payload["name"],
            email=payload["email"],
            password=payload["password"],
            phone=payload.get("phone") or ctx.identity,
        )
        outcome = await execute_with_retry(
            lambda: self.domain.register_user(registration), self.policy, label="register_user"
        )
        await self.gate.settle(reservation, outcome.ok)
        auth = outcome.unwrap()

        data = SessionData(user_id=auth.user_id)
        self.tokens.issue_local(data)
        if auth.token:
            self.tokens.store_external(data, auth.token)
        ctx.transition(SessionState.LOGGED_IN, data)
        # The account exists and the code is spent: the login has to land
        try:
            await ctx.commit()
        except ConflictError:
            logger.warning(f"Session {ctx.identity} changed during registration, re-applying the login")
            await ctx.reload()
            ctx.transition(SessionState.LOGGED_IN, data)
            await ctx.commit()
        logger.info(f"Registered user {auth.user_id} for {ctx.identity}")
        ctx.reply(messages.with_menu(f"🎉 Welcome, {registration.name}! Your account is ready.", True))

    async def resend(self, ctx: FlowContext):
        pending = ctx.data.registration
        payload = self._snapshot(pending)
        if payload is None:
            if ctx.state == SessionState.REGISTERING:
                ctx.transition(SessionState.NEW)
            ctx.reply(messages.NO_PENDING_REGISTRATION)
            return

        sent = await self._issue_and_send(ctx, payload)
        template = messages.CODE_RESENT if sent else messages.CODE_DELIVERY_FAILED
        ctx.reply(template.format(email=payload["email"]))

    # --- register / login / logout ---

    async def register(self, ctx: FlowContext, params: Dict[str, str]):
        if ctx.logged_in:
            ctx.reply(messages.with_menu("You're already registered and logged in.", True))
            return

        missing = [f for f in REGISTRATION_FIELDS if not params.get(f)]
        if missing:
            ctx.reply(
                messages.missing_fields("register", missing)
                + "\nExample: register Ada Obi ada@example.com secret123"
            )
            return

        try:
            validate_registration(params["name"], params["email"], params["password"])
        except ValueError as e:
            ctx.reply(str(e))
            return

        email = params["email"].strip().lower()
        payload = {
            "name": sanitize_input(params["name"]),
            "email": email,
            "password": params["password"],
            "phone": ctx.identity,
        }

        pending = ctx.data.registration
        if pending is not None and pending.address == email and self._snapshot(pending) == payload:
            # Same details again while the code is still good: don't spam a new code
            if await self.gate.latest_pending(email, REGISTRATION):
                ctx.reply(messages.CODE_ALREADY_SENT.format(email=email))
                return

        lookup = await execute_with_retry(
            lambda: self.domain.find_user_by_email(email), self.policy, label="find_user_by_email"
        )
        if lookup.ok and lookup.value:
            ctx.reply(f"An account with {email} already exists. Send: login {email} <password>")
            return
        if not lookup.ok and not isinstance(lookup.error, NotFoundError):
            lookup.unwrap()

        sent = await self._issue_and_send(ctx, payload)
        template = messages.CODE_SENT if sent else messages.CODE_DELIVERY_FAILED
        ctx.reply(template.format(email=email))

    async def login(self, ctx: FlowContext, params: Dict[str, str]):
        if ctx.logged_in:
            ctx.reply(messages.with_menu("You're already logged in.", True))
            return

        email, password = params.get("email"), params.get("password")
        if not email or not password:
            ctx.transition(SessionState.LOGGING_IN, SessionData())
            ctx.reply("Please send your e-mail and password, e.g.\nlogin ada@example.com secret123")
            return

        try:
            validate_login(email, password)
        except ValueError as e:
            ctx.reply(str(e))
            return

        email = email.strip().lower()
        auth = await call_with_retry(
            lambda: self.domain.login_user(email, password), self.policy, label="login_user"
        )

        data = SessionData(user_id=auth.user_id)
        self.tokens.issue_local(data)
        if auth.token:
            self.tokens.store_external(data, auth.token)
        ctx.transition(SessionState.LOGGED_IN, data)
        logger.info(f"User {auth.user_id} logged in from {ctx.identity}")
        ctx.reply(messages.with_menu("✅ You're logged in.", True))

    async def logout(self, ctx: FlowContext, params: Dict[str, str]):
        if not ctx.logged_in:
            ctx.reply("You're not logged in.")
            return
        ctx.transition(SessionState.NEW)
        ctx.reply("👋 You have been logged out. Send \"hi\" any time to start again.")

    # --- helpers ---

    async def _issue_and_send(self, ctx: FlowContext, payload: Dict[str, Any]) -> bool:
        email = payload["email"]
        code = await self.gate.issue(email, REGISTRATION, payload)
        outcome = await execute_with_retry(
            lambda: self.mailer.send_code(email, code, payload.get("name", "")),
            self.policy,
            label="send_code",
        )
        if not outcome.ok:
            logger.warning(f"Could not deliver registration code to {email}: {outcome.error}")

        ctx.data.registration = PendingRegistration(
            address=email,
            purpose=REGISTRATION,
            snapshot=encrypt_payload(payload),
            issued_at=utcnow(),
            delivery_failed=not outcome.ok,
        )
        if ctx.state != SessionState.REGISTERING:
            ctx.transition(SessionState.REGISTERING, ctx.data)
        return outcome.ok

    @staticmethod
    def _snapshot(pending: Optional[PendingRegistration]) -> Optional[Dict[str, Any]]:
        if pending is None:
            return None
        try:
            return decrypt_payload(pending.snapshot)
        except ValueError:
            logger.warning(f"Unreadable registration snapshot for {pending.address}")
            return None
