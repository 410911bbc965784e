"""SQLAlchemy ORM models for the tenant record."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Agency(Base):
    """Agency table - default tenant model, looked up by its subdomain code.

    The lookup column must stay unique and non-null; the unique constraint
    also provides the index used by every request's resolution.
    """

    __tablename__ = "agency"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"Agency(id={self.id!r}, code={self.code!r})"

    def __str__(self) -> str:
        return self.code
