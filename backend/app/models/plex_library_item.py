"""
Cached Plex library items and their TMDB resolution state.
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base_class import Base


class PlexLibraryItem(Base):
    """
    One media item inside a library.

    @description Keyed by rating_key within the library. Items missing from
    the latest crawl are flagged inactive and keep their tmdb_id; when they
    reappear the same row is reactivated.
    """
    __tablename__ = "plex_library_items"
    __table_args__ = (UniqueConstraint("library_id", "rating_key", name="uq_plex_item_rating_key"),)

    id = Column(Integer, primary_key=True, index=True)
    library_id = Column(Integer, ForeignKey("plex_libraries.id", ondelete="CASCADE"), nullable=False, index=True)
    rating_key = Column(String, nullable=False)
    guid = Column(String, nullable=True, index=True)  # plex://movie/..., com.plexapp.agents.imdb://...
    title = Column(String, nullable=False)
    year = Column(Integer, nullable=True)
    tmdb_id = Column(Integer, nullable=True, index=True)
    type = Column(String, nullable=False, default="movie")
    metadata_json = Column(JSON, nullable=True)  # secondary guids, original title, summary...
    added_at = Column(DateTime, nullable=True)
    updated_at_plex = Column(DateTime, nullable=True)
    last_matched_at = Column(DateTime, nullable=True)
    matching_attempts = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    library = relationship("PlexLibrary", back_populates="items")
