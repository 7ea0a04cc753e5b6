from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func
from db import Base


class LockoutEntry(Base):
    """
    Failed bearer token attempts and the active block window for one IP.
    A cleared entry has attempt_count=0 and no block fields set.
    """
    __tablename__ = "ip_lockouts"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, unique=True, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=False)
    blocked_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_ip_lockouts_active_expires", "is_active", "expires_at"),
    )


class RequestLog(Base):
    """
    One row per inbound request, written after the response is known.
    Headers and request data are stored sanitized.
    """
    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, index=True)
    method = Column(String(10), nullable=False, index=True)
    url = Column(Text, nullable=False)
    user_agent = Column(Text, nullable=True)
    headers = Column(JSON, nullable=True)
    request_data = Column(JSON, nullable=True)
    response_status = Column(Integer, nullable=True)
    response_message = Column(Text, nullable=True)
    has_bearer_token = Column(Boolean, nullable=False, default=False, index=True)
    execution_time = Column(Float, nullable=True)  # milliseconds
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_request_logs_ip_created", "ip_address", "created_at"),
    )
