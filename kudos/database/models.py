"""
kudos.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- import_keys         — Persistent dedup index for batch rows and daily
                        bonuses (unique ``(kind, key)``)
- manual_adjustments  — Append-only audit trail of manual XP adjustments

Events themselves live in the JSONL event log; the database only holds
what must survive a restart *and* be claimed atomically.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Kudos ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ImportKeyKind(enum.StrEnum):
    """Namespaces inside ``import_keys``."""
    APPROVAL = "approval"
    SALE = "sale"
    DAILY_BONUS = "daily_bonus"


# ---------------------------------------------------------------------------
# Import key index
# ---------------------------------------------------------------------------
class ImportKey(Base):
    __tablename__ = "import_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    key: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("kind", "key", name="uq_import_keys_kind_key"),
    )

    def __repr__(self) -> str:
        return f"<ImportKey {self.kind}:{self.key}>"


# ---------------------------------------------------------------------------
# Manual adjustment audit
# ---------------------------------------------------------------------------
class ManualAdjustment(Base):
    __tablename__ = "manual_adjustments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    delta_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delta_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="manual")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_manual_adjustments_tenant_user", "tenant", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<ManualAdjustment id={self.id} user={self.user_id} xp={self.delta_xp}>"
