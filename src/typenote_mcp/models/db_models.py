"""SQLAlchemy database models for the Typenote link index."""
import datetime

from sqlalchemy import (JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer,
                        String, Text, create_engine, event)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from typenote_mcp.config import config

Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBNote(Base):
    """Database row mirroring a note file."""
    __tablename__ = "notes"
    id = Column(String(512), primary_key=True, index=True)
    title = Column(String(512), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    type = Column(String(255), nullable=False, index=True)
    filename = Column(String(255), nullable=False, index=True)
    path = Column(Text, nullable=False)
    created = Column(String(64), nullable=True)
    updated = Column(String(64), nullable=True)
    size = Column(Integer, nullable=False, default=0)
    content_hash = Column(String(80), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    # Frontmatter keys beyond the fixed fields, queried with json_extract
    extra = Column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBNoteLink(Base):
    """A wikilink found in a note body; target_note_id is NULL while broken."""
    __tablename__ = "note_links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source_note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    target_note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="SET NULL"),
        nullable=True, index=True
    )
    target_title = Column(String(512), nullable=False, index=True)
    link_text = Column(Text, nullable=True)
    line_number = Column(Integer, nullable=True)
    created = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<NoteLink(source='{self.source_note_id}', "
            f"target='{self.target_note_id}', title='{self.target_title}')>"
        )


class DBExternalLink(Base):
    """A URL or image reference found in a note body."""
    __tablename__ = "external_links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(
        String(512), ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    url = Column(Text, nullable=False)
    title = Column(Text, nullable=True)
    line_number = Column(Integer, nullable=True)
    link_type = Column(String(16), nullable=False, default="url")
    created = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "link_type IN ('url', 'image', 'embed')", name="check_link_type"
        ),
    )

    def __repr__(self) -> str:
        return f"<ExternalLink(note='{self.note_id}', url='{self.url}')>"


def init_db(in_memory: bool = False):
    """Create the engine and the link index tables.

    File databases use a small QueuePool with WAL journaling. The in-memory
    database uses a StaticPool so every session sees the same connection.

    Args:
        in_memory: Use a private in-memory SQLite database.

    Returns:
        The configured SQLAlchemy engine.
    """
    if in_memory:
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            config.get_db_url(),
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-16000")  # 16MB cache
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine):
    """Create a session factory bound to the engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)
