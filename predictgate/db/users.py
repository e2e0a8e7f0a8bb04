from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from predictgate.db.models import ActivityLogTable, UserTable
from predictgate.exceptions import UserAlreadyExists


class UserRepository:
    """User lookups shared by the wallet, credential and tool layers."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> Optional[UserTable]:
        return await self.session.get(UserTable, user_id)

    async def get_by_external_id(self, external_id: str) -> Optional[UserTable]:
        result = await self.session.execute(select(UserTable).where(UserTable.external_id == external_id))
        return result.scalar_one_or_none()

    async def get_by_wallet(self, public_key: str) -> Optional[UserTable]:
        """Match either the generated or the imported wallet column."""
        result = await self.session.execute(
            select(UserTable).where(
                or_(
                    UserTable.solana_public_key == public_key,
                    UserTable.imported_wallet_public_key == public_key,
                )
            )
        )
        return result.scalars().first()

    async def create(self, external_id: str, email: Optional[str] = None) -> UserTable:
        user = UserTable(external_id=external_id, email=email)
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise UserAlreadyExists() from e
        return user

    async def log_activity(
        self, user_id: Optional[str], action: str, resource: Optional[str] = None, **details
    ) -> None:
        self.session.add(ActivityLogTable(user_id=user_id, action=action, resource=resource, details=details))
