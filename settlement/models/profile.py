from __future__ import annotations

"""
Identity tables: registered profiles and their roles.
"""
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Mapped, mapped_column

from settlement.extensions import db

from .mixins import TimestampMixin

ADMIN_ROLES = ("admin", "owner")


class Profile(db.Model, TimestampMixin):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(
        db.String(255),
        unique=True,
        nullable=False,
        index=True,
        doc="Login email; matched case-insensitively against Stripe emails",
    )
    display_name: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)

    @classmethod
    def find_by_email(cls, email: str) -> Optional["Profile"]:
        """Case-insensitive lookup (ilike semantics without wildcard surprises)."""
        e = (email or "").strip().lower()
        if not e:
            return None
        return db.session.query(cls).filter(func.lower(cls.email) == e).first()

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Profile {self.id} {self.email}>"


class UserRole(db.Model, TimestampMixin):
    __tablename__ = "user_roles"
    __table_args__ = (db.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        db.ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)

    @classmethod
    def is_admin(cls, user_id: int) -> bool:
        row = (
            db.session.query(cls.id)
            .filter(cls.user_id == user_id, cls.role.in_(ADMIN_ROLES))
            .first()
        )
        return row is not None
