from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base_class import Base


class UserPlexAccess(Base):
    """Which libraries a user can see. Revocation flips is_active, rows are kept."""
    __tablename__ = "user_plex_access"
    __table_args__ = (UniqueConstraint("user_id", "library_id", name="uq_user_plex_access"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    library_id = Column(Integer, ForeignKey("plex_libraries.id"), nullable=False, index=True)
    access_level = Column(String, nullable=False, default="read")
    is_active = Column(Boolean, default=True, nullable=False)
    discovered_at = Column(DateTime, server_default=func.now())
    last_verified_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="library_access")
    library = relationship("PlexLibrary")
