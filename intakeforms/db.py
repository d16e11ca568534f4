"""SQLAlchemy tables and session factory for the form store."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from intakeforms.config import Settings


class Base(DeclarativeBase):
    """Base class for all form store tables."""
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class ClientRow(Base):
    """Known client; saves for unknown clients are refused."""

    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


class FormSubmissionRow(Base):
    """One submit action for a client."""

    __tablename__ = "form_submissions"
    __table_args__ = (
        Index("idx_form_submissions_client", "client_id", "submitted_at"),
    )

    submission_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("clients.client_id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    submission_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    submitted_by: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class IntakeFormRow(Base):
    """One form instance; unique per (client_id, form_type)."""

    __tablename__ = "intake_forms"
    __table_args__ = (
        UniqueConstraint("client_id", "form_type", name="uq_intake_form_client_type"),
        Index("idx_intake_forms_client_status", "client_id", "status"),
    )

    form_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("clients.client_id"), nullable=False
    )
    form_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)

    checkbox_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    signature: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    form_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    completion_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    submission_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("form_submissions.submission_id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_autosave_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    updated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    completed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)


def build_engine(settings: Settings) -> Engine:
    """Create the engine for ``settings.DATABASE_URL``.

    In-memory SQLite shares one connection across threads so every session
    sees the same database.
    """
    url = make_url(settings.DATABASE_URL)
    kwargs = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": settings.DB_TIMEOUT_SECONDS,
        }
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_timeout"] = settings.DB_TIMEOUT_SECONDS
    engine = create_engine(settings.DATABASE_URL, **kwargs)
    if url.get_backend_name() == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables."""
    Base.metadata.create_all(engine)
