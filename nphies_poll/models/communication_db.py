"""
SQLAlchemy models for payer communications received through polling
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text
from datetime import datetime

# Import Base from poll_db to ensure same registry
from nphies_poll.models.poll_db import Base, JSONType


class CommunicationRequestDB(Base):
    """
    Maps to nphies_communication_requests table
    A payer asking for more information; stored once per request_id
    """
    __tablename__ = "nphies_communication_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(255), unique=True, nullable=False)  # CommunicationRequest.id

    # Loose links to whatever the request is about
    prior_auth_id = Column(Integer)
    claim_id = Column(Integer)
    advanced_authorization_id = Column(Integer)

    status = Column(String(50))
    category = Column(String(100))
    priority = Column(String(50))
    about_reference = Column(String(255))
    about_type = Column(String(100))
    about_identifier = Column(String(255))
    about_identifier_system = Column(String(255))
    cr_identifier = Column(String(255))
    cr_identifier_system = Column(String(255))
    payload_content_type = Column(String(50))
    payload_content_string = Column(Text)
    sender_identifier = Column(String(255))
    recipient_identifier = Column(String(255))
    authored_on = Column(String(50))
    request_bundle = Column(JSONType)

    # One-way: set when a Communication acknowledging this request arrives
    acknowledgment_received = Column(Boolean, default=False, nullable=False)
    acknowledgment_at = Column(DateTime(timezone=True))
    acknowledgment_status = Column(String(50))

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class CommunicationDB(Base):
    """
    Maps to nphies_communications table
    Acknowledgments or payer-initiated communications; stored once per communication_id
    """
    __tablename__ = "nphies_communications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    communication_id = Column(String(255), unique=True, nullable=False)

    prior_auth_id = Column(Integer)
    claim_id = Column(Integer)
    advanced_authorization_id = Column(Integer)
    communication_request_id = Column(Integer)

    status = Column(String(50))
    category = Column(String(100))
    payload_content_type = Column(String(50))
    payload_content_string = Column(Text)
    sender_identifier = Column(String(255))
    recipient_identifier = Column(String(255))
    sent_date = Column(String(50))
    communication_bundle = Column(JSONType)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
