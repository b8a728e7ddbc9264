"""
SQLAlchemy database models for the comic catalog.
Supports SQLite (default) and PostgreSQL backends.
"""

from datetime import datetime
from typing import List
import json

from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Float, Boolean, Table, ForeignKey, Index,
    UniqueConstraint
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()

# Many-to-many association table
story_genres = Table(
    'story_genres', Base.metadata,
    Column('story_id', Integer, ForeignKey('stories.id', ondelete='CASCADE'), primary_key=True),
    Column('genre_id', Integer, ForeignKey('genres.id', ondelete='CASCADE'), primary_key=True)
)


class Story(Base):
    """Catalog record keyed by its slug."""
    __tablename__ = 'stories'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(64), unique=True)
    slug = Column(String(255), unique=True, nullable=False)
    name = Column(String(500), nullable=False)
    content = Column(Text, default='')
    status = Column(String(20), default='ongoing')
    thumb_url = Column(String(500), default='')
    list_type = Column(String(50))
    # Set while the story still has chapters waiting to be written
    chapters_pending = Column(Boolean, default=False, nullable=False)

    views = Column(Integer, default=0)
    rating_value = Column(Float, default=0.0)
    rating_count = Column(Integer, default=0)
    like_count = Column(Integer, default=0)

    source_updated_at = Column(String(40))
    crawled_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # JSON fields for simple lists (stored as JSON strings)
    _origin_name = Column('origin_name', Text, default='[]')
    _author = Column('author', Text, default='[]')

    genres = relationship("Genre", secondary=story_genres, back_populates="stories")
    chapters = relationship("Chapter", back_populates="story", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index('idx_story_list_type', 'list_type'),
        Index('idx_story_status', 'status'),
    )

    @property
    def origin_name(self) -> List[str]:
        """Get alternative names as list."""
        try:
            return json.loads(self._origin_name) if self._origin_name else []
        except json.JSONDecodeError:
            return []

    @origin_name.setter
    def origin_name(self, value: List[str]):
        self._origin_name = json.dumps(value) if value else '[]'

    @property
    def author(self) -> List[str]:
        """Get authors as list."""
        try:
            return json.loads(self._author) if self._author else []
        except json.JSONDecodeError:
            return []

    @author.setter
    def author(self, value: List[str]):
        self._author = json.dumps(value) if value else '[]'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'source_id': self.source_id or '',
            'slug': self.slug,
            'name': self.name,
            'origin_name': self.origin_name,
            'author': self.author,
            'status': self.status or '',
            'thumb_url': self.thumb_url or '',
            'genres': [g.slug for g in self.genres],
            'views': self.views or 0,
            'rating_value': self.rating_value or 0.0,
            'rating_count': self.rating_count or 0,
            'like_count': self.like_count or 0,
            'source_updated_at': self.source_updated_at,
            'chapters_pending': bool(self.chapters_pending),
            'crawled_at': self.crawled_at.isoformat() if self.crawled_at else '',
        }


class Genre(Base):
    """Genre taxonomy entry."""
    __tablename__ = 'genres'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(64))
    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=False)

    stories = relationship("Story", secondary=story_genres, back_populates="genres")

    __table_args__ = (
        Index('idx_genre_name', 'name'),
    )


class Chapter(Base):
    """Sub-record keyed by (story_id, sequence_number)."""
    __tablename__ = 'chapters'

    id = Column(Integer, primary_key=True, autoincrement=True)
    story_id = Column(Integer, ForeignKey('stories.id', ondelete='CASCADE'), nullable=False)
    sequence_number = Column(Float, nullable=False)
    chapter_name = Column(String(100), default='')
    chapter_title = Column(String(500), default='')
    filename = Column(String(500), default='')
    server_name = Column(String(100), default='Server #1')
    chapter_api_data = Column(String(500))
    views = Column(Integer, default=0)
    like_count = Column(Integer, default=0)
    crawled_at = Column(DateTime, default=datetime.utcnow)

    _images = Column('images', Text, default='[]')

    story = relationship("Story", back_populates="chapters")

    __table_args__ = (
        UniqueConstraint('story_id', 'sequence_number', name='unique_story_chapter'),
        Index('idx_chapter_story', 'story_id'),
    )

    @property
    def images(self) -> List[str]:
        """Get page image URLs as list."""
        try:
            return json.loads(self._images) if self._images else []
        except json.JSONDecodeError:
            return []

    @images.setter
    def images(self, value: List[str]):
        self._images = json.dumps(value) if value else '[]'


def enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign key support for SQLite."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
