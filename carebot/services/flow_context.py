import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from carebot.exceptions import FatalError
from carebot.models.session import ChatSession, SessionState
from carebot.schemas.session import SessionData
from carebot.services.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class FlowContext:
    """One inbound event as seen by a flow handler.

    Handlers change ``state`` and ``data`` (a working copy) and append to
    ``replies``. Nothing reaches the session row until the dispatcher saves,
    or the handler calls ``commit()`` to make a transition durable early.
    """

    identity: str
    session: ChatSession
    state: SessionState
    data: SessionData
    store: SessionStore
    replies: List[str] = field(default_factory=list)
    checkpoint: Optional[Tuple[SessionState, SessionData]] = None

    def __post_init__(self):
        self.mark_checkpoint()

    @property
    def logged_in(self) -> bool:
        return self.state == SessionState.LOGGED_IN

    def reply(self, text: str):
        if text:
            self.replies.append(text)

    def transition(self, state: SessionState, data: SessionData = None):
        if state != self.state:
            logger.info(f"{self.identity}: {self.state.value} -> {state.value}")
        self.state = state
        if data is not None:
            self.data = data
        elif state == SessionState.NEW:
            self.data = SessionData()

    def mark_checkpoint(self):
        self.checkpoint = (self.state, self.data.model_copy(deep=True))

    def rollback_to_checkpoint(self):
        state, data = self.checkpoint
        self.state = state
        self.data = data.model_copy(deep=True)

    async def commit(self):
        await self.store.save(self.session, self.state, self.data)
        self.mark_checkpoint()

    async def reload(self):
        """Re-read the row after losing a write race. The working copy is kept."""
        fresh = await self.store.load(self.identity)
        if fresh is None:
            raise FatalError(f"Session row for {self.identity} disappeared")
        self.session = fresh
