"""
Per-identity conversation state machine.

Each inbound event is handled in isolation: the session row is re-read,
idle expiry is applied, the input is routed by a fixed priority order, and
the resulting state and data are written back under an optimistic version
check. Structured inputs (an outstanding code, an attachment command, page
navigation) are matched before free-text classification so a 4-digit code or
a bare page number is never taken for something else.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from carebot.config import get_settings
from carebot.exceptions import ConflictError, FatalError, TokenExpiredError
from carebot.models.session import ChatSession, SessionState
from carebot.schemas.intent import IntentResult
from carebot.schemas.session import SessionData, TokenSource
from carebot.services import messages, pagination
from carebot.services.auth_flow import AuthFlow
from carebot.services.catalog_flow import QUICK_ATTACH_RE, CatalogFlow
from carebot.services.flow_context import FlowContext
from carebot.services.intent_classifier import EMAIL_RE, RuleBasedClassifier, parse_login
from carebot.services.otp_gate import OneTimeCodeGate
from carebot.services.retry import RetryPolicy, execute_with_retry
from carebot.services.session_store import SessionStore
from carebot.services.support_flow import SupportFlow
from carebot.services.token_lifecycle import TokenLifecycle
from carebot.utils.security import generate_token
from carebot.utils.validators import normalize_phone, sanitize_input

logger = logging.getLogger(__name__)

NAVIGATION_WORDS = ("next", "previous")

# Intents that need a logged-in session
AUTHENTICATED_INTENTS = {
    "search_products",
    "healthcare_products",
    "diagnostic_tests",
    "search_doctors",
    "list_appointments",
    "add_to_cart",
    "place_order",
    "track_order",
    "book_appointment",
    "payment",
}

Handler = Callable[[FlowContext, Dict[str, str]], Awaitable[None]]


class FlowDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        domain,
        mailer,
        classifier=None,
        policy: RetryPolicy = None,
        tokens: TokenLifecycle = None,
        gate: OneTimeCodeGate = None,
    ):
        settings = get_settings()
        self.store = SessionStore(db)
        self.gate = gate or OneTimeCodeGate(db)
        self.tokens = tokens or TokenLifecycle()
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.classifier = classifier or RuleBasedClassifier()

        self.auth = AuthFlow(domain, mailer, self.gate, self.tokens, self.policy)
        self.catalog = CatalogFlow(
            domain,
            self.tokens,
            self.policy,
            page_size=settings.PAGE_SIZE_DEFAULT,
            default_location=settings.DEFAULT_DOCTOR_LOCATION,
        )
        self.support = SupportFlow(domain, self.policy)

        self.handlers: Dict[str, Handler] = {
            "greeting": self.auth.greeting,
            "help": self.auth.help,
            "register": self.auth.register,
            "login": self.auth.login,
            "logout": self.auth.logout,
            "support": self.support.start,
            "search_products": self.catalog.search_products,
            "healthcare_products": self.catalog.healthcare_products,
            "diagnostic_tests": self.catalog.diagnostic_tests,
            "search_doctors": self.catalog.search_doctors,
            "list_appointments": self.catalog.list_appointments,
            "add_to_cart": self.catalog.add_to_cart,
            "place_order": self.catalog.place_order,
            "track_order": self.catalog.track_order,
            "book_appointment": self.catalog.book_appointment,
            "payment": self.catalog.payment,
        }

    async def handle_message(self, identity: str, body: str) -> List[str]:
        text = sanitize_input(body)
        return await self._handle(identity, lambda ctx: self._route(ctx, text), label=text[:40])

    async def handle_media(self, identity: str, url: str, content_type: Optional[str], caption: str = "") -> List[str]:
        return await self._handle(
            identity,
            lambda ctx: self._route_media(ctx, url, content_type, sanitize_input(caption)),
            label=f"<media {content_type}>",
        )

    async def _handle(self, identity: str, route: Callable[[FlowContext], Awaitable[None]], label: str) -> List[str]:
        identity = normalize_phone(identity)
        try:
            session = await self.store.create_if_absent(identity)
        except FatalError:
            logger.exception(f"Session store unavailable for {identity}")
            return [messages.GENERIC_APOLOGY]

        state = session.state
        data = SessionData.load(session.data)
        logger.info(f"Inbound from {identity} in state {state.value}: {label!r}")

        idle = self.tokens.check_idle_expiry(state, data)
        if idle.expired:
            logger.info(f"Session {identity} idle for {idle.idle_for}, logging out")
            return await self._reset(session, [messages.IDLE_LOGOUT])

        ctx = FlowContext(identity=identity, session=session, state=state, data=data, store=self.store)
        try:
            if ctx.logged_in:
                self.tokens.touch(ctx.data)
                await self.tokens.get_or_refresh(ctx.data, TokenSource.LOCAL, self._mint_local_token)
                ctx.mark_checkpoint()
            await route(ctx)
        except TokenExpiredError:
            logger.info(f"Token for {identity} expired beyond refresh, logging out")
            return await self._reset(session, [messages.SESSION_EXPIRED])
        except ConflictError:
            return [messages.RESEND_LAST]
        except SQLAlchemyError:
            logger.exception(f"Database error while handling {identity}")
            try:
                await self.store.discard_changes(session)
            except SQLAlchemyError:
                return [messages.GENERIC_APOLOGY]
            ctx.rollback_to_checkpoint()
            ctx.replies = [messages.GENERIC_APOLOGY]
        except Exception as e:
            logger.exception(f"Handler failed for {identity} in state {ctx.state.value}")
            ctx.rollback_to_checkpoint()
            ctx.replies = [messages.for_error(e, ctx.logged_in)]

        try:
            await self.store.save(ctx.session, ctx.state, ctx.data)
        except ConflictError:
            return [messages.RESEND_LAST]
        except FatalError:
            logger.exception(f"Could not persist session for {identity}")
            return [messages.GENERIC_APOLOGY]
        return ctx.replies

    async def _reset(self, session: ChatSession, replies: List[str]) -> List[str]:
        try:
            await self.store.reset(session)
        except ConflictError:
            return [messages.RESEND_LAST]
        except FatalError:
            logger.exception("Could not reset session")
            return [messages.GENERIC_APOLOGY]
        return replies

    async def _mint_local_token(self):
        async def mint():
            return generate_token()

        return await execute_with_retry(mint, self.policy, label="refresh_local_token")

    async def _route(self, ctx: FlowContext, text: str):
        # 1. live support handoff
        if ctx.state == SessionState.SUPPORT_CHAT:
            await self.support.relay(ctx, text)
            return

        # 2. outstanding one-time code
        if ctx.state == SessionState.REGISTERING or ctx.data.registration is not None:
            if await self.auth.handle_pending_code(ctx, text):
                return
        elif ctx.state == SessionState.NEW and self.gate.is_code_format(text):
            # Code issued but the breadcrumb never reached the session row
            await self.auth.verify_code(ctx, text)
            return

        # 3. uploaded prescription waiting for an order id
        if ctx.data.pending_attachment is not None and ctx.logged_in:
            match = QUICK_ATTACH_RE.match(text)
            if match:
                await self.catalog.quick_attach(ctx, match.group(2))
                return

        # 4. page navigation on the list the user last saw
        cursor = ctx.data.active_cursor()
        if cursor is not None and ctx.logged_in:
            target = pagination.resolve_target(text, cursor.current_page, cursor.total_pages)
            if target is not None:
                await self.catalog.navigate(ctx, target)
                return
            if text.lower() in NAVIGATION_WORDS:
                ctx.reply(f"There is no {text.lower()} page. You're on page {cursor.current_page} of {cursor.total_pages}.")
                return

        # 5. free text
        if ctx.state == SessionState.LOGGING_IN and EMAIL_RE.search(text):
            result = IntentResult(intent="login", parameters=parse_login(text), source="rules")
        else:
            result = await self.classifier.classify(text, ctx.identity, ctx.data)
        logger.debug(f"Classified {text!r} as {result.intent} ({result.source}, {result.confidence:.2f})")
        await self.dispatch(ctx, result)

    async def dispatch(self, ctx: FlowContext, result: IntentResult):
        if result.intent in AUTHENTICATED_INTENTS and not ctx.logged_in:
            ctx.reply(messages.AUTH_REQUIRED)
            return

        handler = self.handlers.get(result.intent)
        if handler is not None:
            await handler(ctx, result.parameters)
        elif result.fulfillment_text:
            ctx.reply(result.fulfillment_text)
        elif ctx.logged_in:
            ctx.reply(messages.with_menu(messages.NOT_UNDERSTOOD, True))
        else:
            ctx.reply(f"{messages.NOT_UNDERSTOOD}\n\n{messages.WELCOME}")

    async def _route_media(self, ctx: FlowContext, url: str, content_type: Optional[str], caption: str):
        if ctx.state == SessionState.SUPPORT_CHAT:
            await self.support.relay(ctx, f"[attachment] {url}")
            return
        if not ctx.logged_in:
            ctx.reply(messages.AUTH_REQUIRED)
            return
        await self.catalog.receive_media(ctx, url, content_type, caption)
