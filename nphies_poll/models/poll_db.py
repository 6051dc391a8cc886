"""
SQLAlchemy models for the system poll audit trail
poll_logs: one row per poll execution (request + response + stats)
poll_messages: one row per message extracted from a poll response
poll_leases: one row per tenant scope, held while a poll runs
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, ForeignKey, Index, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime

# Tables are unqualified; the tenant schema is applied per session (see services.db)
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class PollStatus:
    """Lifecycle values for poll_logs.status"""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    NO_MESSAGES = "no_messages"
    ERROR = "error"

    TERMINAL = (SUCCESS, NO_MESSAGES, ERROR)


class TriggerType:
    MANUAL = "manual"
    SCHEDULED = "scheduled"

    ALL = (MANUAL, SCHEDULED)


class ProcessingStatus:
    """Values for poll_messages.processing_status"""
    PROCESSED = "processed"
    NEW_RECORD = "new_record"
    UNMATCHED = "unmatched"
    ERROR = "error"


class PollLogDB(Base):
    """
    Maps to poll_logs table
    Created in_progress at the start of a run and closed exactly once
    """
    __tablename__ = "poll_logs"
    __table_args__ = (
        Index("idx_poll_logs_status", "status"),
        Index("idx_poll_logs_schema_name", "schema_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    poll_id = Column(String(36), unique=True, nullable=False)
    schema_name = Column(String(100), default="public")
    provider_nphies_id = Column(String(100))
    trigger_type = Column(String(50), nullable=False, default=TriggerType.MANUAL)
    status = Column(String(50), nullable=False, default=PollStatus.IN_PROGRESS)

    poll_bundle = Column(JSONType)  # outgoing poll request bundle
    response_bundle = Column(JSONType)  # raw NPHIES response bundle
    response_code = Column(String(50))

    messages_received = Column(Integer, default=0)
    messages_processed = Column(Integer, default=0)
    messages_matched = Column(Integer, default=0)
    messages_unmatched = Column(Integer, default=0)

    # { "ClaimResponse": { "matched": 2, "unmatched": 1, "newRecords": 0 } }
    processing_summary = Column(JSONType)
    errors = Column(JSONType)

    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class PollMessageDB(Base):
    """
    Maps to poll_messages table
    Append-only: written once per extracted message, never updated
    """
    __tablename__ = "poll_messages"
    __table_args__ = (
        Index("idx_poll_messages_poll_log_id", "poll_log_id"),
        Index("idx_poll_messages_response_identifier", "response_identifier"),
        Index("idx_poll_messages_matched_table", "matched_table", "matched_record_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    poll_log_id = Column(Integer, ForeignKey("poll_logs.id", ondelete="CASCADE"), nullable=False)

    message_header_id = Column(String(255))
    response_identifier = Column(String(255))  # MessageHeader.response.identifier
    event_code = Column(String(100))

    resource_type = Column(String(100))
    resource_data = Column(JSONType)  # the individual message bundle

    message_type = Column(String(50), nullable=False, default="unknown")  # solicited / unsolicited / unknown

    matched = Column(Boolean, default=False)
    matched_table = Column(String(100))  # loose reference, target table varies
    matched_record_id = Column(Integer)
    match_strategy = Column(String(100))

    processing_status = Column(String(50), nullable=False)
    processing_error = Column(Text)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class PollLeaseDB(Base):
    """
    Maps to poll_leases table
    One row per schema; a run may proceed only while it holds an unexpired lease
    """
    __tablename__ = "poll_leases"

    schema_name = Column(String(100), primary_key=True)
    holder_id = Column(String(200), nullable=False)
    poll_id = Column(String(36))
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
