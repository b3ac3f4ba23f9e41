"""Database setup and ORM records using SQLAlchemy."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PromptRecord(Base):
    """A versioned prompt template."""

    __tablename__ = "prompts"

    id = Column(String(32), primary_key=True)
    version = Column(Integer, nullable=False)
    prompt_type = Column(String(20), nullable=False, index=True)
    content = Column(Text, nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("prompt_type", "version", name="uq_prompts_type_version"),
        # At most one active prompt per type
        Index(
            "uq_prompts_one_active_per_type",
            "prompt_type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class PromptSequenceRecord(Base):
    """Last version number issued per prompt type."""

    __tablename__ = "prompt_sequences"

    prompt_type = Column(String(20), primary_key=True)
    last_version = Column(Integer, nullable=False, default=0)


class AnalysisRecord(Base):
    """An immutable analysis run."""

    __tablename__ = "analyses"

    id = Column(String(32), primary_key=True)
    contact_id = Column(String(64), nullable=False, index=True)
    contact_name = Column(String(255), nullable=False, default="")
    prompt_id = Column(String(32), nullable=False)
    prompt_version = Column(Integer, nullable=False)
    prompt_type = Column(String(20), nullable=False)
    analysis_text = Column(Text, nullable=False)
    transcriptions = Column(JSON, nullable=False, default=list)
    run_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class ContactCacheRecord(Base):
    """Read-through copy of a CRM contact."""

    __tablename__ = "contact_cache"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, default="")
    email = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    source = Column(String(255), nullable=True)
    custom_fields = Column(JSON, nullable=False, default=dict)
    last_synced = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Database:
    """Owns the engine and session factory shared by the stores."""

    def __init__(self, database_url: str | None = None, echo: bool | None = None):
        settings = get_settings()
        url = database_url or settings.database_url
        engine_kwargs: dict = {}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(
            url,
            echo=settings.debug if echo is None else echo,
            **engine_kwargs,
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def dispose(self) -> None:
        self.engine.dispose()
