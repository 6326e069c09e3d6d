"""
Plex.tv account model for storing authentication credentials.

Stores the auth token obtained from Plex.tv login, not the password.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base_class import Base


class PlexAccount(Base):
    """
    Stores a user's Plex.tv auth token.

    @description One account per user. The token lists every server the
    user can reach, owned or shared, and therefore which libraries they see.
    """
    __tablename__ = "plex_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    username = Column(String, nullable=False)  # Plex.tv email/username
    auth_token = Column(String, nullable=False)  # Token from Plex.tv login
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="plex_account")
