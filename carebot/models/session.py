from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum
from sqlalchemy.sql import func
from carebot.database import Base
from carebot.utils.timeutils import utcnow
import enum

class SessionState(str, enum.Enum):
    NEW = "NEW"
    REGISTERING = "REGISTERING"
    LOGGING_IN = "LOGGING_IN"
    LOGGED_IN = "LOGGED_IN"
    SUPPORT_CHAT = "SUPPORT_CHAT"

class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String, unique=True, index=True, nullable=False)

    state = Column(Enum(SessionState), nullable=False, default=SessionState.NEW)
    data = Column(JSON, nullable=False, default=dict)
    last_activity = Column(DateTime, nullable=False, default=utcnow)

    # Bumped on every UPDATE; a stale writer gets StaleDataError instead of a lost update
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}
