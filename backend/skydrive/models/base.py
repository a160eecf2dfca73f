"""SQLAlchemy declarative base and shared mixins."""
from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class UserMixin:
    """Adds the owning user's id. Every row belongs to exactly one user."""
    user_id: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
