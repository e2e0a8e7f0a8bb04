import base64
import hashlib
import hmac
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import select, update

from predictgate.db.database import Database
from predictgate.db.models import ApiKeyTable
from predictgate.exceptions import CredentialError
from predictgate.wallet.encryption import SymmetricCipher

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "pk_pgw_"
API_SECRET_PREFIX = "sk_pgw_"
KEY_PREFIX_LENGTH = 16
HMAC_WINDOW_SECONDS = 30


class ApiKeyResult(BaseModel):
    """Returned once at creation; the full key and secret are never shown again."""

    api_key: str
    api_secret: str
    key_prefix: str
    key_id: str


class ApiKeyValidation(BaseModel):
    is_valid: bool
    user_id: Optional[str] = None
    key_id: Optional[str] = None
    message: Optional[str] = None


class ApiKeySummary(BaseModel):
    id: str
    key_prefix: str
    name: Optional[str] = None
    is_active: bool
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def create_hmac_signature(api_secret: str, timestamp: str, method: str, path: str, body: str) -> str:
    """base64(HMAC-SHA256(secret, timestamp + method + path + body))"""
    message = f"{timestamp}{method}{path}{body}".encode("utf-8")
    digest = hmac.new(api_secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_hmac_signature(
    api_secret: str,
    timestamp: str,
    method: str,
    path: str,
    body: str,
    provided_signature: str,
    *,
    now_ms: Optional[int] = None,
) -> bool:
    """Timestamps are milliseconds since the epoch and must be within 30 seconds of now."""
    try:
        request_ms = int(timestamp)
    except (TypeError, ValueError):
        return False
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now_ms - request_ms) > HMAC_WINDOW_SECONDS * 1000:
        return False
    expected = create_hmac_signature(api_secret, timestamp, method, path, body)
    return hmac.compare_digest(provided_signature.encode("utf-8"), expected.encode("utf-8"))


class ApiKeyService:
    """Issues, validates and revokes per-user API keys."""

    def __init__(self, db: Database, cipher: SymmetricCipher):
        self.db = db
        self.cipher = cipher

    async def create_api_key(self, user_id: str, name: Optional[str] = None) -> ApiKeyResult:
        api_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(24)}"
        api_secret = f"{API_SECRET_PREFIX}{secrets.token_urlsafe(32)}"
        key_prefix = api_key[:KEY_PREFIX_LENGTH]

        record = ApiKeyTable(
            user_id=user_id,
            name=name or "Default",
            key_hash=hash_key(api_key),
            key_prefix=key_prefix,
            encrypted_secret=self.cipher.encrypt(api_secret),
            is_active=True,
        )
        async with self.db.session() as session:
            session.add(record)
            await session.flush()
            key_id = record.id

        logger.info("Created API key %s for user %s", key_prefix, user_id)
        return ApiKeyResult(api_key=api_key, api_secret=api_secret, key_prefix=key_prefix, key_id=key_id)

    async def validate_api_key(self, api_key: Optional[str]) -> ApiKeyValidation:
        if not api_key or not api_key.startswith(API_KEY_PREFIX):
            return ApiKeyValidation(is_valid=False, message="Invalid API key format")

        async with self.db.session() as session:
            result = await session.execute(select(ApiKeyTable).where(ApiKeyTable.key_hash == hash_key(api_key)))
            record = result.scalar_one_or_none()
            if record is None:
                return ApiKeyValidation(is_valid=False, message="API key not found")
            if not record.is_active:
                return ApiKeyValidation(is_valid=False, message="API key is inactive")
            if record.expires_at is not None and _aware(record.expires_at) < datetime.now(timezone.utc):
                return ApiKeyValidation(is_valid=False, message="API key has expired")

            record.last_used_at = datetime.now(timezone.utc)
            return ApiKeyValidation(is_valid=True, user_id=record.user_id, key_id=record.id)

    async def authorize(self, api_key: Optional[str]) -> str:
        """Resolve an API key to its user id or raise `CredentialError`."""
        validation = await self.validate_api_key(api_key)
        if not validation.is_valid:
            raise CredentialError(validation.message)
        return validation.user_id

    async def get_api_secret(self, key_id: str) -> str:
        async with self.db.session() as session:
            record = await session.get(ApiKeyTable, key_id)
            if record is None:
                raise CredentialError("API key not found")
            return self.cipher.decrypt(record.encrypted_secret)

    async def verify_request_signature(
        self, key_id: str, timestamp: str, method: str, path: str, body: str, signature: str
    ) -> bool:
        secret = await self.get_api_secret(key_id)
        return validate_hmac_signature(secret, timestamp, method, path, body, signature)

    async def list_api_keys(self, user_id: str) -> List[ApiKeySummary]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ApiKeyTable).where(ApiKeyTable.user_id == user_id).order_by(ApiKeyTable.created_at.desc())
            )
            return [
                ApiKeySummary(
                    id=row.id,
                    key_prefix=row.key_prefix,
                    name=row.name,
                    is_active=row.is_active,
                    last_used_at=row.last_used_at,
                    created_at=row.created_at,
                )
                for row in result.scalars()
            ]

    async def revoke_api_key(self, user_id: str, key_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(ApiKeyTable)
                .where(ApiKeyTable.id == key_id, ApiKeyTable.user_id == user_id)
                .values(is_active=False)
            )
            revoked = result.rowcount == 1
        if revoked:
            logger.info("Revoked API key %s for user %s", key_id, user_id)
        return revoked


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
