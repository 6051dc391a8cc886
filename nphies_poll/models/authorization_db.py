"""
SQLAlchemy models for the claim-like domain records the poll engine updates
prior_authorizations, claim_submissions, advanced_authorizations and their
item / response history tables
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, Numeric, ForeignKey, Index
from datetime import datetime

# Import Base from poll_db to ensure same registry
from nphies_poll.models.poll_db import Base, JSONType


class PriorAuthorizationDB(Base):
    """
    Maps to prior_authorizations table
    outbound_message_header_id is the MessageHeader.id of the bundle we sent;
    solicited poll responses echo it in MessageHeader.response.identifier
    """
    __tablename__ = "prior_authorizations"
    __table_args__ = (
        Index("idx_prior_auth_outbound_msg_hdr_id", "outbound_message_header_id"),
        Index("idx_prior_auth_nphies_request_id", "nphies_request_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_number = Column(String(100))
    nphies_request_id = Column(String(255))
    outbound_message_header_id = Column(String(255))

    status = Column(String(50), nullable=False, default="pending")
    outcome = Column(String(50))
    disposition = Column(Text)
    adjudication_outcome = Column(String(50))
    pre_auth_ref = Column(String(255))
    pre_auth_period_start = Column(String(50))
    pre_auth_period_end = Column(String(50))
    approved_amount = Column(Numeric(14, 2))
    totals = Column(JSONType)

    response_bundle = Column(JSONType)  # last applied ClaimResponse
    response_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)


class PriorAuthorizationItemDB(Base):
    __tablename__ = "prior_authorization_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prior_auth_id = Column(Integer, ForeignKey("prior_authorizations.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    adjudication_status = Column(String(50), default="pending")
    adjudication_amount = Column(Numeric(14, 2))


class PriorAuthorizationResponseDB(Base):
    """Append-only history of responses applied to a prior authorization"""
    __tablename__ = "prior_authorization_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prior_auth_id = Column(Integer, ForeignKey("prior_authorizations.id", ondelete="CASCADE"), nullable=False)
    response_type = Column(String(50))  # 'poll'
    outcome = Column(String(50))
    disposition = Column(Text)
    pre_auth_ref = Column(String(255))
    bundle_json = Column(JSONType)
    has_errors = Column(Boolean, default=False)
    is_nphies_generated = Column(Boolean, default=True)
    nphies_response_id = Column(String(255))
    received_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class ClaimSubmissionDB(Base):
    """
    Maps to claim_submissions table
    Same correlation columns as prior_authorizations plus claim identifiers
    """
    __tablename__ = "claim_submissions"
    __table_args__ = (
        Index("idx_claim_sub_outbound_msg_hdr_id", "outbound_message_header_id"),
        Index("idx_claim_sub_nphies_request_id", "nphies_request_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_number = Column(String(100))
    nphies_claim_id = Column(String(255))
    nphies_request_id = Column(String(255))
    outbound_message_header_id = Column(String(255))

    status = Column(String(50), nullable=False, default="pending")
    outcome = Column(String(50))
    disposition = Column(Text)
    adjudication_outcome = Column(String(50))
    approved_amount = Column(Numeric(14, 2))
    totals = Column(JSONType)

    response_bundle = Column(JSONType)
    response_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)


class ClaimSubmissionItemDB(Base):
    __tablename__ = "claim_submission_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(Integer, ForeignKey("claim_submissions.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    adjudication_status = Column(String(50), default="pending")
    adjudication_amount = Column(Numeric(14, 2))


class ClaimSubmissionResponseDB(Base):
    """Append-only history of responses applied to a claim submission"""
    __tablename__ = "claim_submission_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(Integer, ForeignKey("claim_submissions.id", ondelete="CASCADE"), nullable=False)
    response_type = Column(String(50))
    outcome = Column(String(50))
    disposition = Column(Text)
    nphies_claim_id = Column(String(255))
    bundle_json = Column(JSONType)
    has_errors = Column(Boolean, default=False)
    is_nphies_generated = Column(Boolean, default=True)
    nphies_response_id = Column(String(255))
    received_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class AdvancedAuthorizationDB(Base):
    """
    Maps to advanced_authorizations table
    Payer-initiated authorizations with no local predecessor; keyed by the
    payer's identifier_value so repeated sightings upsert the same row
    """
    __tablename__ = "advanced_authorizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier_system = Column(String(255))
    identifier_value = Column(String(255), unique=True, nullable=False)

    status = Column(String(50))
    claim_type = Column(String(50))
    claim_subtype = Column(String(50))
    use_field = Column(String(50))
    auth_reason = Column(String(100))
    outcome = Column(String(50))
    adjudication_outcome = Column(String(50))
    disposition = Column(Text)

    patient_reference = Column(String(255))
    insurer_reference = Column(String(255))
    service_provider_reference = Column(String(255))
    referring_provider_reference = Column(String(255))
    referring_provider_display = Column(String(255))

    pre_auth_ref = Column(String(255))
    pre_auth_period_start = Column(String(50))
    pre_auth_period_end = Column(String(50))
    created_date = Column(String(50))
    is_newborn = Column(Boolean, default=False)
    reissue_reason = Column(String(100))

    transfer_auth_number = Column(String(255))
    transfer_auth_period_start = Column(String(50))
    transfer_auth_period_end = Column(String(50))
    transfer_auth_provider = Column(String(255))

    prescription_reference = Column(JSONType)
    diagnoses = Column(JSONType)
    supporting_info = Column(JSONType)
    add_items = Column(JSONType)
    totals = Column(JSONType)
    insurance = Column(JSONType)
    process_notes = Column(JSONType)

    response_bundle = Column(JSONType)  # raw ClaimResponse
    poll_bundle = Column(JSONType)
    poll_response_bundle = Column(JSONType)
    schema_name = Column(String(100))

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
