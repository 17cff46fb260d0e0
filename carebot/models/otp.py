from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index
from carebot.database import Base
from carebot.utils.timeutils import utcnow
import enum

class CodeStatus(str, enum.Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

class OneTimeCode(Base):
    __tablename__ = "one_time_codes"

    id = Column(Integer, primary_key=True, index=True)
    address = Column(String, nullable=False)
    purpose = Column(String, nullable=False)
    code = Column(String, nullable=False)

    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # {"snapshot": "<fernet token>"} - payload the code protects
    meta = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_one_time_codes_address_purpose", "address", "purpose"),
        Index("ix_one_time_codes_purpose_code", "purpose", "code"),
    )

    def status(self, now=None) -> CodeStatus:
        now = now or utcnow()
        if self.superseded_at is not None:
            return CodeStatus.SUPERSEDED
        if self.is_used:
            return CodeStatus.CONSUMED
        if now > self.expires_at:
            return CodeStatus.EXPIRED
        return CodeStatus.ISSUED
