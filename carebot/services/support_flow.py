import logging
import re
from typing import Dict, Optional

from carebot.models.session import ChatSession, SessionState
from carebot.schemas.session import SessionData, SupportHandoff
from carebot.services import messages
from carebot.services.flow_context import FlowContext
from carebot.services.retry import RetryPolicy, call_with_retry, execute_with_retry
from carebot.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

EXIT_SUPPORT_RE = re.compile(r"^(?:close|exit|end chat|stop support)$", re.IGNORECASE)
SUPPORT_ROLES = ("general", "orders", "medical", "technical", "billing")


class SupportFlow:
    """Human-agent handoff. While active, every message is relayed to the support desk."""

    def __init__(self, domain, policy: RetryPolicy = None):
        self.domain = domain
        self.policy = policy

    async def start(self, ctx: FlowContext, params: Dict[str, str]):
        role = (params.get("supportType") or "general").lower()
        if role not in SUPPORT_ROLES:
            role = "general"

        # State only changes once the desk has accepted the chat
        await call_with_retry(
            lambda: self.domain.start_support_chat(ctx.identity, role), self.policy, label="start_support_chat"
        )
        ctx.data.support = SupportHandoff(role=role, previous_state=ctx.state, started_at=utcnow())
        ctx.transition(SessionState.SUPPORT_CHAT, ctx.data)
        logger.info(f"Support handoff ({role}) started for {ctx.identity}")
        ctx.reply(
            f"🧑‍💼 You're now connected to our {role} support team. "
            "An agent will reply here shortly.\nSend \"close\" to end the chat."
        )

    async def relay(self, ctx: FlowContext, text: str):
        if EXIT_SUPPORT_RE.match(text.strip()):
            await self.end(ctx)
            return
        await call_with_retry(
            lambda: self.domain.forward_support_message(ctx.identity, text),
            self.policy,
            label="forward_support_message",
        )

    async def end(self, ctx: FlowContext):
        outcome = await execute_with_retry(
            lambda: self.domain.end_support_chat(ctx.identity), self.policy, label="end_support_chat"
        )
        if not outcome.ok:
            # Released locally regardless of the desk
            logger.warning(f"Could not close support chat for {ctx.identity} on the desk: {outcome.error}")
        state, data = restore_after_support(ctx.data)
        ctx.transition(state, data)
        ctx.reply(messages.with_menu("✅ Support chat ended. Thanks for reaching out!", ctx.logged_in))


def restore_after_support(data: SessionData):
    """State and data to return to when a handoff ends."""
    previous: Optional[SessionState] = data.support.previous_state if data.support else None
    if previous in (None, SessionState.SUPPORT_CHAT):
        previous = SessionState.LOGGED_IN if data.local_token else SessionState.NEW
    if previous == SessionState.NEW:
        return SessionState.NEW, SessionData()
    restored = data.model_copy(deep=True)
    restored.support = None
    if restored.local_token is not None:
        # Time spent with an agent counts as activity
        restored.local_token.last_used = utcnow()
    return previous, restored


async def close_from_desk(store, session: ChatSession) -> Optional[SessionState]:
    """Agent-side close. Returns the restored state, or None if no handoff was active."""
    if session.state != SessionState.SUPPORT_CHAT:
        return None
    state, data = restore_after_support(SessionData.load(session.data))
    await store.save(session, state, data)
    return state
