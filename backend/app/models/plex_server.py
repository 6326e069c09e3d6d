"""
Plex server model for storing server connection details.

Servers are keyed by their Plex machine identifier and are never deleted:
a server that goes offline keeps its row and libraries until it returns.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base_class import Base


class PlexServer(Base):
    """
    Stores Plex servers discovered through any linked account.

    @description The access token is the one returned by the most recent
    discovery and is used for library crawls.
    """
    __tablename__ = "plex_servers"

    id = Column(Integer, primary_key=True, index=True)
    machine_id = Column(String, unique=True, nullable=False, index=True)  # Plex clientIdentifier
    name = Column(String, nullable=False)
    owner_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    base_url = Column(String, nullable=False)  # Connection URL (e.g., https://192.168.1.x:32400)
    access_token = Column(String, nullable=True)
    version = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    libraries = relationship("PlexLibrary", back_populates="server", cascade="all, delete-orphan")
