from sqlalchemy import Column, Integer, DateTime
from app.db.base_class import Base

# The table holds exactly one row, reset in place when its window elapses
RATE_WINDOW_ID = 1


class TMDBRateWindow(Base):
    __tablename__ = "tmdb_rate_limits"

    id = Column(Integer, primary_key=True)
    time_window_start = Column(DateTime, nullable=False)
    requests_count = Column(Integer, default=0, nullable=False)
    last_request_at = Column(DateTime, nullable=True)
