"""
One-time codes gating sensitive flows (registration today).

Per (address, purpose): NONE -> ISSUED -> CONSUMED | EXPIRED | SUPERSEDED.

Verification is a two-phase operation. ``verify`` reserves the code by
consuming it with a conditional UPDATE, so only one of two concurrent
deliveries of the same code can win. The caller then runs the protected
action and calls ``settle`` with its result: success keeps the code consumed,
failure restores it to ISSUED so the user can retry with the same code.
"""
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from carebot.config import get_settings
from carebot.exceptions import CodeRejected, CodeRejection
from carebot.models.otp import CodeStatus, OneTimeCode
from carebot.utils.security import decrypt_payload, encrypt_payload, generate_numeric_code
from carebot.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CodeReservation:
    record_id: int
    address: str
    purpose: str
    payload: Optional[Dict[str, Any]]


class OneTimeCodeGate:
    def __init__(self, db: AsyncSession, code_length: int = None, validity: timedelta = None):
        settings = get_settings()
        self.db = db
        self.code_length = code_length or settings.OTP_LENGTH
        self.validity = validity or timedelta(minutes=settings.OTP_VALIDITY_MINUTES)
        self._format = re.compile(rf"^\d{{{self.code_length}}}$")

    def is_code_format(self, text: str) -> bool:
        return bool(self._format.match((text or "").strip()))

    async def _supersede(self, address: str, purpose: str, now) -> int:
        superseded = await self.db.execute(
            update(OneTimeCode)
            .where(
                OneTimeCode.address == address,
                OneTimeCode.purpose == purpose,
                OneTimeCode.is_used.is_(False),
                OneTimeCode.superseded_at.is_(None),
            )
            .values(superseded_at=now)
        )
        if superseded.rowcount:
            logger.info(f"Superseded {superseded.rowcount} unused {purpose} code(s) for {address}")
        return superseded.rowcount

    async def issue(self, address: str, purpose: str, payload: Dict[str, Any] = None) -> str:
        now = utcnow()
        await self._supersede(address, purpose, now)

        code = generate_numeric_code(self.code_length)
        record = OneTimeCode(
            address=address,
            purpose=purpose,
            code=code,
            expires_at=now + self.validity,
            created_at=now,
            meta={"snapshot": encrypt_payload(payload)} if payload is not None else None,
        )
        self.db.add(record)
        await self.db.commit()
        logger.info(f"Issued {purpose} code for {address}, expires {record.expires_at.isoformat()}")
        return code

    async def revoke(self, address: str, purpose: str) -> int:
        """Retire every unused code for (address, purpose)."""
        revoked = await self._supersede(address, purpose, utcnow())
        await self.db.commit()
        return revoked

    async def latest(self, address: str, purpose: str) -> Optional[OneTimeCode]:
        result = await self.db.execute(
            select(OneTimeCode)
            .filter(OneTimeCode.address == address, OneTimeCode.purpose == purpose)
            .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def latest_pending(self, address: str, purpose: str) -> Optional[OneTimeCode]:
        record = await self.latest(address, purpose)
        if record and record.status() == CodeStatus.ISSUED:
            return record
        return None

    async def verify(self, address: str, purpose: str, supplied_code: str) -> CodeReservation:
        supplied_code = (supplied_code or "").strip()
        if not self.is_code_format(supplied_code):
            raise CodeRejected(CodeRejection.INVALID_FORMAT)

        result = await self.db.execute(
            select(OneTimeCode)
            .filter(
                OneTimeCode.address == address,
                OneTimeCode.purpose == purpose,
                OneTimeCode.code == supplied_code,
            )
            .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if record is None:
            raise CodeRejected(CodeRejection.NOT_FOUND)

        status = record.status()
        if status == CodeStatus.SUPERSEDED:
            raise CodeRejected(CodeRejection.SUPERSEDED)
        if status == CodeStatus.CONSUMED:
            raise CodeRejected(CodeRejection.ALREADY_USED)
        if status == CodeStatus.EXPIRED:
            raise CodeRejected(CodeRejection.EXPIRED)

        # Reserve: only one concurrent verifier flips is_used
        consumed = await self.db.execute(
            update(OneTimeCode)
            .where(
                OneTimeCode.id == record.id,
                OneTimeCode.is_used.is_(False),
                OneTimeCode.superseded_at.is_(None),
            )
            .values(is_used=True, used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if consumed.rowcount != 1:
            raise CodeRejected(CodeRejection.ALREADY_USED)

        logger.info(f"Consumed {purpose} code for {address}")
        return CodeReservation(
            record_id=record.id,
            address=address,
            purpose=purpose,
            payload=self._decrypt_meta(record),
        )

    async def unconsume(self, address: str, purpose: str) -> bool:
        """Put the most recently consumed code for (address, purpose) back to ISSUED."""
        result = await self.db.execute(
            select(OneTimeCode)
            .filter(
                OneTimeCode.address == address,
                OneTimeCode.purpose == purpose,
                OneTimeCode.is_used.is_(True),
            )
            .order_by(OneTimeCode.used_at.desc(), OneTimeCode.id.desc())
            .execution_options(populate_existing=True)
        )
        record = result.scalars().first()
        if record is None:
            return False
        return await self._restore(record.id)

    async def settle(self, reservation: CodeReservation, succeeded: bool) -> bool:
        """Commit or compensate a reservation. Returns True when the code is left consumed."""
        if succeeded:
            return True
        restored = await self._restore(reservation.record_id)
        if restored:
            logger.info(f"Protected action failed, {reservation.purpose} code for {reservation.address} is usable again")
        return False

    async def recover_payload(self, purpose: str, supplied_code: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Find the payload a still-valid code protects when the session lost its breadcrumb."""
        if not self.is_code_format(supplied_code):
            return None
        result = await self.db.execute(
            select(OneTimeCode)
            .filter(OneTimeCode.purpose == purpose, OneTimeCode.code == supplied_code.strip())
            .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
            .execution_options(populate_existing=True)
        )
        for record in result.scalars().all():
            if record.status() != CodeStatus.ISSUED:
                continue
            payload = self._decrypt_meta(record)
            if payload:
                return record.address, payload
        return None

    async def _restore(self, record_id: int) -> bool:
        restored = await self.db.execute(
            update(OneTimeCode)
            .where(OneTimeCode.id == record_id, OneTimeCode.is_used.is_(True))
            .values(is_used=False, used_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return restored.rowcount == 1

    def _decrypt_meta(self, record: OneTimeCode) -> Optional[Dict[str, Any]]:
        snapshot = (record.meta or {}).get("snapshot")
        if not snapshot:
            return None
        try:
            return decrypt_payload(snapshot)
        except ValueError as e:
            logger.warning(f"Could not decrypt snapshot on code {record.id}: {e}")
            return None
