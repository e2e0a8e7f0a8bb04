import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import or_, select, update

from predictgate.db.database import Database
from predictgate.db.models import AccessCodeTable

logger = logging.getLogger(__name__)

ACCESS_CODE_PREFIX = "PGW"
UNLIMITED_USES = -1


class AccessCodeValidation(BaseModel):
    is_valid: bool
    message: str


class AccessCode(BaseModel):
    id: str
    code: str
    created_by: str
    developer_name: Optional[str] = None
    developer_email: Optional[str] = None
    notes: Optional[str] = None
    max_uses: int
    current_uses: int
    is_active: bool
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


def generate_code() -> str:
    """``PGW-XXXX-XXXX-XXXX`` from the first 12 hex digits of a random UUID."""
    raw = uuid.uuid4().hex.upper()[:12]
    return f"{ACCESS_CODE_PREFIX}-{raw[0:4]}-{raw[4:8]}-{raw[8:12]}"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AccessCodeService:
    """Admin-issued codes gating self-service signup."""

    def __init__(self, db: Database):
        self.db = db

    async def create_access_code(
        self,
        created_by: str,
        developer_name: Optional[str] = None,
        developer_email: Optional[str] = None,
        notes: Optional[str] = None,
        max_uses: int = 1,
        expires_in_days: Optional[int] = None,
    ) -> AccessCode:
        expires_at = None
        if expires_in_days:
            expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days)

        record = AccessCodeTable(
            code=generate_code(),
            created_by=created_by,
            developer_name=developer_name,
            developer_email=developer_email,
            notes=notes,
            max_uses=max_uses or 1,
            current_uses=0,
            is_active=True,
            expires_at=expires_at,
        )
        async with self.db.session() as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
            access_code = AccessCode.model_validate(record)

        logger.info("Created access code %s (max uses %d)", access_code.code, access_code.max_uses)
        return access_code

    async def validate_and_use(self, code: str) -> AccessCodeValidation:
        """
        Check a code and consume one use.

        The increment is a conditional UPDATE so two concurrent signups
        cannot both take the last use.
        """
        now = datetime.now(timezone.utc)
        async with self.db.session() as session:
            result = await session.execute(select(AccessCodeTable).where(AccessCodeTable.code == code))
            record = result.scalar_one_or_none()
            if record is None:
                return AccessCodeValidation(is_valid=False, message="Invalid access code")
            if not record.is_active:
                return AccessCodeValidation(is_valid=False, message="Access code is inactive")
            if record.expires_at is not None and _aware(record.expires_at) < now:
                return AccessCodeValidation(is_valid=False, message="Access code has expired")

            stmt = update(AccessCodeTable).where(AccessCodeTable.id == record.id, AccessCodeTable.is_active.is_(True))
            if record.max_uses != UNLIMITED_USES:
                stmt = stmt.where(AccessCodeTable.current_uses < AccessCodeTable.max_uses)
            result = await session.execute(
                stmt.values(current_uses=AccessCodeTable.current_uses + 1, last_used_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return AccessCodeValidation(is_valid=False, message="Access code has reached maximum uses")

        return AccessCodeValidation(is_valid=True, message="Access code valid")

    async def list_access_codes(self) -> List[AccessCode]:
        async with self.db.session() as session:
            result = await session.execute(select(AccessCodeTable).order_by(AccessCodeTable.created_at.desc()))
            return [AccessCode.model_validate(row) for row in result.scalars()]

    async def revoke_access_code(self, code_or_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(AccessCodeTable)
                .where(or_(AccessCodeTable.id == code_or_id, AccessCodeTable.code == code_or_id))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0
