from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, String
from database import Base


class AuditLog(Base):
    """Persisted copy of every event written to the ``audit`` logger."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False, index=True
    )

    action = Column(String(50), nullable=False, index=True)  # e.g. LOGIN, ROTATE_SECRET
    severity = Column(String(20), nullable=False, default="info", index=True)  # info/warning
    status = Column(String(20), nullable=False)  # success/failure
    actor = Column(String(100), nullable=True, index=True)
    resource = Column(String(50), nullable=False)
    resource_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)

    request_id = Column(String(36), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action={self.action}, actor={self.actor})>"
