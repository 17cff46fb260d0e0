import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from carebot.models.session import ChatSession, SessionState
from carebot.schemas.session import SessionData
from carebot.exceptions import ConflictError, FatalError
from carebot.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class SessionStore:
    """Durable per-identity session rows with optimistic-concurrency writes.

    Nothing is cached between events: every inbound message re-reads its row,
    and every write is checked against the version it was read at.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load(self, identity: str) -> Optional[ChatSession]:
        try:
            result = await self.db.execute(
                select(ChatSession)
                .filter(ChatSession.phone == identity)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise FatalError("Session store unavailable") from e
        return result.scalars().first()

    async def create_if_absent(self, identity: str) -> ChatSession:
        session = await self.load(identity)
        if session:
            return session

        session = ChatSession(phone=identity, state=SessionState.NEW, data={}, last_activity=utcnow())
        self.db.add(session)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another event for the same identity inserted first
            await self.db.rollback()
            logger.info(f"Concurrent session creation for {identity}, re-loading")
            session = await self.load(identity)
            if session is None:
                raise FatalError("Session row vanished after concurrent insert")
            return session
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise FatalError("Session store unavailable") from e

        await self.db.refresh(session)
        logger.info(f"Created new session for {identity}")
        return session

    async def save(self, session: ChatSession, state: SessionState, data: SessionData) -> ChatSession:
        if state == SessionState.NEW:
            # NEW sessions carry no data at all
            payload = {}
        else:
            payload = data.dump()

        phone = session.phone
        version = session.version
        previous = session.state
        session.state = state
        session.data = payload
        session.last_activity = utcnow()
        try:
            await self.db.commit()
        except StaleDataError as e:
            logger.warning(f"Conflicting write on session {phone} (version {version})")
            await self.db.rollback()
            raise ConflictError("Session was modified by a concurrent event") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise FatalError("Session store unavailable") from e

        if previous != state:
            logger.info(f"Session {phone}: {previous.value if previous else None} -> {state.value}")
        return session

    async def reset(self, session: ChatSession) -> ChatSession:
        return await self.save(session, SessionState.NEW, SessionData())

    async def discard_changes(self, session: ChatSession = None):
        """Roll back a failed transaction and reload the row so it can still be written."""
        await self.db.rollback()
        if session is not None:
            await self.db.refresh(session)
