# termhist/models.py
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from termhist.db import Base, to_iso, utcnow

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

STATUSES = (STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

CANCELLED_RESPONSE = "[Cancelled by user]"
DEFAULT_SOURCE = "ink-interface"
DEFAULT_USER_SCOPE = "default"


class HistoryRecord(Base):
    __tablename__ = "history_user"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, default=DEFAULT_USER_SCOPE)
    machine_id = Column(String(255), nullable=True)
    command = Column(Text, nullable=False)
    response = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=STATUS_PENDING)
    request_id = Column(String(128), index=True, nullable=True)
    session_id = Column(String(128), nullable=True)
    source = Column(String(64), nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    synced = Column(Boolean, default=False, nullable=False)
    synced_at = Column(DateTime, nullable=True)
    version = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("idx_history_user_lookup", "user_id", "timestamp"),
        Index("idx_history_user_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "machine_id": self.machine_id,
            "command": self.command,
            "response": self.response,
            "status": self.status,
            "source": self.source,
            "timestamp": to_iso(self.timestamp),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
            "synced": bool(self.synced),
            "synced_at": to_iso(self.synced_at),
            "version": self.version,
        }


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String(128), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "created_at": to_iso(self.created_at),
        }
