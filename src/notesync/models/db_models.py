"""SQLAlchemy database models for the notesync mirror."""
from typing import Optional

from sqlalchemy import (Column, ForeignKey, Integer, String, Text, create_engine,
                        event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from notesync.config import config

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(64), primary_key=True)
    filename = Column(String(512), unique=True, nullable=False, index=True)
    title = Column(Text, nullable=True)
    hash = Column(String(64), nullable=False)
    created = Column(String(40), nullable=False)
    updated = Column(String(40), nullable=False)

    # Relationships
    headings = relationship(
        "DBHeading",
        back_populates="note",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DBHeading.line",
    )
    bookmarks = relationship(
        "DBBookmark",
        back_populates="note",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', filename='{self.filename}')>"


class DBHeading(Base):
    """Database model for a heading of a note."""
    __tablename__ = "headings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(
        String(64),
        ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    text = Column(Text, nullable=False)
    level = Column(Integer, nullable=False)
    line = Column(Integer, nullable=False)

    note = relationship("DBNote", back_populates="headings")

    def __repr__(self) -> str:
        """Return string representation of heading."""
        return f"<Heading(note_id='{self.note_id}', level={self.level}, line={self.line})>"


class DBBookmark(Base):
    """Database model for a numbered bookmark on a heading."""
    __tablename__ = "bookmarks"
    # Numbers are chosen by the user, never generated
    number = Column(Integer, primary_key=True, autoincrement=False)
    note_id = Column(
        String(64),
        ForeignKey("notes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    heading_index = Column(Integer, nullable=False)
    heading_text = Column(Text, nullable=False)

    note = relationship("DBNote", back_populates="bookmarks")

    def __repr__(self) -> str:
        """Return string representation of bookmark."""
        return f"<Bookmark(number={self.number}, note_id='{self.note_id}')>"


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _install_pragmas(engine: Engine, file_backed: bool) -> None:
    """Apply SQLite PRAGMAs on every new connection.

    Foreign keys are off by default in SQLite; cascading deletes of
    headings and bookmarks depend on them. SQLite's own ``lower()`` only
    folds ASCII, so a Unicode-aware ``casefold()`` is registered for search.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        dbapi_connection.create_function("casefold", 1, _casefold, deterministic=True)
        if file_backed:
            # WAL mode: writes go to a separate journal, preventing corruption on crash
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def init_db(db_url: Optional[str] = None, in_memory: bool = False) -> Engine:
    """Create the engine and the mirror schema.

    Args:
        db_url: Explicit SQLAlchemy URL. Defaults to the configured SQLite file.
        in_memory: Use a private in-memory database (tests, dry runs).

    Returns:
        The initialized engine.
    """
    if in_memory:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _install_pragmas(engine, file_backed=False)
    else:
        engine = create_engine(db_url or config.get_db_url(), pool_pre_ping=True)
        _install_pragmas(engine, file_backed=True)

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Optional[Engine] = None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
