"""
Minimal user model.

Accounts are managed elsewhere; the sync engine only needs a stable id
to attach Plex credentials and library access rows to.
"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base_class import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    plex_account = relationship("PlexAccount", back_populates="user", uselist=False,
                                cascade="all, delete-orphan")
    library_access = relationship("UserPlexAccess", back_populates="user",
                                  cascade="all, delete-orphan")
