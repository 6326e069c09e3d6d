"""
Plex library model for storing server libraries (sections).

A library missing from its owner's listing is flagged inactive, not deleted.
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base_class import Base


class PlexLibrary(Base):
    """
    Stores Plex libraries (sections) for each server.

    @description Unique per (server, section key). The cached item_count
    is refreshed after every crawl.
    """
    __tablename__ = "plex_libraries"
    __table_args__ = (UniqueConstraint("server_id", "section_key", name="uq_plex_library_section"),)

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("plex_servers.id", ondelete="CASCADE"), nullable=False, index=True)
    section_key = Column(String, nullable=False)  # Plex section key (e.g., "1", "2")
    title = Column(String, nullable=False)  # Library name (e.g., "Movies", "TV Shows")
    type = Column(String, nullable=False)  # "movie", "show", "artist", ...
    agent = Column(String, nullable=True)
    scanner = Column(String, nullable=True)
    language = Column(String, nullable=True)
    uuid = Column(String, nullable=True)
    item_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    server = relationship("PlexServer", back_populates="libraries")
    items = relationship("PlexLibraryItem", back_populates="library", cascade="all, delete-orphan")
