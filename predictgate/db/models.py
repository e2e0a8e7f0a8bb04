import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


class UserTable(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    external_id = Column(String, unique=True, nullable=False)
    email = Column(String, nullable=True)

    # server-custodied wallet
    solana_public_key = Column(String, unique=True, nullable=True)
    encrypted_private_key = Column(Text, nullable=True)

    # bring-your-own-wallet bundle, stored exactly as received
    imported_wallet_public_key = Column(String, unique=True, nullable=True)
    imported_wallet_encrypted = Column(Text, nullable=True)
    imported_wallet_salt = Column(String, nullable=True)
    imported_wallet_iv = Column(String, nullable=True)
    imported_wallet_version = Column(String, nullable=True)
    wallet_imported_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class WalletAddressTable(Base):
    """One row per public key across both wallet kinds; the primary key enforces a single owner."""

    __tablename__ = "wallet_addresses"

    public_key = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ApiKeyTable(Base):
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False, default="Default")
    key_hash = Column(String, unique=True, nullable=False)
    key_prefix = Column(String, nullable=False)
    encrypted_secret = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AccessCodeTable(Base):
    __tablename__ = "access_codes"

    id = Column(String, primary_key=True, default=_new_id)
    code = Column(String, unique=True, nullable=False)
    created_by = Column(String, nullable=False)
    developer_name = Column(String, nullable=True)
    developer_email = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    max_uses = Column(Integer, default=1, nullable=False)
    current_uses = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class OrderTable(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    market_ticker = Column(String, nullable=True)
    outcome_mint = Column(String, nullable=False)
    side = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    tx_signature = Column(String, nullable=True)
    status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PositionTable(Base):
    __tablename__ = "positions"
    __table_args__ = (UniqueConstraint("user_id", "outcome_mint", name="uq_positions_user_mint"),)

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    market_ticker = Column(String, nullable=True)
    outcome_mint = Column(String, nullable=False)
    quantity = Column(Float, default=0.0, nullable=False)
    cost_basis = Column(Float, default=0.0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ActivityLogTable(Base):
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    action = Column(String, nullable=False)
    resource = Column(String, nullable=True)
    details = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
