from sqlalchemy import BigInteger, Column, Enum, Integer, JSON, String

from dispatch.db.database import Base
from dispatch.models import ActionStatus


class QueuedActionRecord(Base):
    """SQLAlchemy model for a field action waiting to be synchronized."""
    __tablename__ = "queued_actions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    action_type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    timestamp = Column(BigInteger, nullable=False, index=True)  # epoch millis
    status = Column(Enum(ActionStatus), nullable=False, default=ActionStatus.PENDING, index=True)
    retries = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error = Column(String, nullable=True)
    completed_at = Column(BigInteger, nullable=True)  # epoch millis
