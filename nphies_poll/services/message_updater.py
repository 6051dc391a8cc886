"""
Message updater
Applies a correlated payload to its local record.

Dispatch is a closed table keyed by (PayloadKind, target table); a table of
None is the fallback for a kind. The updater refuses to start if any
PayloadKind has no handler.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from nphies_poll.models.authorization_db import (
    PriorAuthorizationDB,
    PriorAuthorizationItemDB,
    PriorAuthorizationResponseDB,
    ClaimSubmissionDB,
    ClaimSubmissionItemDB,
    ClaimSubmissionResponseDB,
    AdvancedAuthorizationDB,
)
from nphies_poll.models.communication_db import CommunicationRequestDB, CommunicationDB
from nphies_poll.services.advanced_auth_parser import parse_advanced_authorization
from nphies_poll.services.message_classifier import PayloadKind
from nphies_poll.services.message_correlator import (
    CorrelationResult,
    PRIOR_AUTHORIZATIONS,
    CLAIM_SUBMISSIONS,
    ADVANCED_AUTHORIZATIONS,
)

logger = logging.getLogger(__name__)

ADJUDICATION_OUTCOME_EXTENSION = "extension-adjudication-outcome"
APPROVE_SIGNALS = ("approv", "accept")
DENY_SIGNALS = ("denied", "deny", "reject")

# Adjudication marker -> local status, shared by header and item level
MARKER_STATUS = {
    "approved": "approved",
    "rejected": "denied",
    "partial": "partial",
}


class MessageUpdateError(Exception):
    """Raised when a correlated payload cannot be applied"""
    pass


@dataclass
class UpdateResult:
    table: str
    record_id: Optional[int] = None
    is_new: bool = False
    unchanged: bool = False
    already_stored: bool = False
    status: Optional[str] = None
    outcome: Optional[str] = None
    adjudication_outcome: Optional[str] = None


@dataclass
class UpdateContext:
    """Per-message context some handlers persist alongside the record"""
    schema_name: Optional[str] = None
    poll_bundle: Optional[Dict[str, Any]] = None
    message_bundle: Optional[Dict[str, Any]] = None


Handler = Callable[[Session, CorrelationResult, Dict[str, Any], UpdateContext], UpdateResult]


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------

def extract_adjudication_outcome(resource: Dict[str, Any]) -> Optional[str]:
    """Code of the adjudication-outcome extension on a ClaimResponse or one of its items."""
    for ext in resource.get("extension") or []:
        if ADJUDICATION_OUTCOME_EXTENSION in (ext.get("url") or ""):
            codings = (ext.get("valueCodeableConcept") or {}).get("coding") or [{}]
            return (codings[0] or {}).get("code")
    return None


def derive_claim_status(
    outcome: Optional[str],
    adjudication_outcome: Optional[str] = None,
    disposition: Optional[str] = None,
) -> Tuple[str, Optional[str]]:
    """
    Local status for a claim-like record from the latest ClaimResponse.

    Returns:
        (status, adjudication_outcome) where the adjudication outcome is
        inferred from the disposition text only when no marker is present.
    """
    if outcome == "queued":
        return "queued", adjudication_outcome
    if outcome == "error":
        return "error", adjudication_outcome
    if outcome == "partial":
        return "partial", adjudication_outcome or "partial"
    if outcome != "complete":
        return "pending", adjudication_outcome

    if adjudication_outcome:
        return MARKER_STATUS.get(adjudication_outcome, "pending"), adjudication_outcome

    # No marker: disposition text is the last resort
    text = (disposition or "").lower()
    if any(signal in text for signal in APPROVE_SIGNALS):
        return "approved", "approved"
    if any(signal in text for signal in DENY_SIGNALS):
        return "denied", "rejected"
    return "approved", "approved"


def item_adjudication_status(marker: Optional[str]) -> str:
    return MARKER_STATUS.get(marker, "pending")


def _category_amount(entries: List[Dict[str, Any]], category: str) -> Optional[float]:
    for entry in entries or []:
        codings = (entry.get("category") or {}).get("coding") or [{}]
        if (codings[0] or {}).get("code") == category:
            value = (entry.get("amount") or {}).get("value")
            if value is not None:
                return value
    return None


def benefit_or_eligible(entries: List[Dict[str, Any]]) -> Optional[float]:
    amount = _category_amount(entries, "benefit")
    if amount is None:
        amount = _category_amount(entries, "eligible")
    return amount


def summarize_totals(totals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    summary = []
    for total in totals or []:
        codings = (total.get("category") or {}).get("coding") or [{}]
        amount = total.get("amount") or {}
        summary.append({
            "category": (codings[0] or {}).get("code"),
            "amount": amount.get("value"),
            "currency": amount.get("currency") or "SAR",
        })
    return summary


def _first_identifier_value(resource: Dict[str, Any]) -> Optional[str]:
    identifier = resource.get("identifier")
    if isinstance(identifier, list):
        identifier = identifier[0] if identifier else None
    return (identifier or {}).get("value")


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items:
        return items[0] or {}
    return {}


# ----------------------------------------------------------------------
# Updater
# ----------------------------------------------------------------------

class MessageUpdater:
    """Applies payloads to records inside the caller's transaction; never commits."""

    def __init__(self):
        self._handlers: Dict[Tuple[PayloadKind, Optional[str]], Handler] = {
            (PayloadKind.CLAIM_RESPONSE, PRIOR_AUTHORIZATIONS): self.update_prior_authorization,
            (PayloadKind.CLAIM_RESPONSE, CLAIM_SUBMISSIONS): self.update_claim_submission,
            (PayloadKind.CLAIM_RESPONSE, ADVANCED_AUTHORIZATIONS): self.save_advanced_authorization,
            (PayloadKind.COMMUNICATION_REQUEST, None): self.store_communication_request,
            (PayloadKind.COMMUNICATION, None): self.store_communication,
        }
        covered = {kind for kind, _ in self._handlers}
        missing = [kind.value for kind in PayloadKind if kind not in covered]
        if missing:
            raise MessageUpdateError(f"No update handler registered for payload kinds: {missing}")

    def apply(
        self,
        db: Session,
        kind: PayloadKind,
        correlation: CorrelationResult,
        payload: Dict[str, Any],
        context: Optional[UpdateContext] = None,
    ) -> UpdateResult:
        handler = self._handlers.get((kind, correlation.table)) or self._handlers.get((kind, None))
        if handler is None:
            raise MessageUpdateError(f"No handler for {kind.value} targeting {correlation.table}")
        return handler(db, correlation, payload, context or UpdateContext())

    # ------------------------------------------------------------------
    # Claim-like records
    # ------------------------------------------------------------------

    def _get_record(self, db: Session, model, record_id: Optional[int]):
        record = db.get(model, record_id) if record_id is not None else None
        if record is None:
            raise MessageUpdateError(f"{model.__tablename__} #{record_id} not found")
        return record

    def _apply_items(self, db: Session, item_model, parent_column, record_id: int, payload: Dict[str, Any]) -> None:
        for item in payload.get("item") or []:
            sequence = item.get("itemSequence")
            if sequence is None:
                continue
            rows = (
                db.query(item_model)
                .filter(parent_column == record_id, item_model.sequence == sequence)
                .all()
            )
            for row in rows:
                # Full replacement; a missing amount clears the previous one
                row.adjudication_status = item_adjudication_status(extract_adjudication_outcome(item))
                row.adjudication_amount = benefit_or_eligible(item.get("adjudication"))

    def _history_exists(self, db: Session, history_model, parent_column, record_id: int, response_id: Optional[str]) -> bool:
        if not response_id:
            return False
        return (
            db.query(history_model.id)
            .filter(parent_column == record_id, history_model.nphies_response_id == response_id)
            .first()
            is not None
        )

    def update_prior_authorization(
        self, db: Session, correlation: CorrelationResult, payload: Dict[str, Any], context: UpdateContext
    ) -> UpdateResult:
        record = self._get_record(db, PriorAuthorizationDB, correlation.record_id)
        if record.response_bundle == payload:
            logger.info(f"prior_authorization #{record.id} already has this response, skipping")
            return UpdateResult(
                table=PRIOR_AUTHORIZATIONS, record_id=record.id, unchanged=True,
                status=record.status, outcome=record.outcome,
                adjudication_outcome=record.adjudication_outcome,
            )

        outcome = payload.get("outcome")
        status, adjudication_outcome = derive_claim_status(
            outcome, extract_adjudication_outcome(payload), payload.get("disposition")
        )
        approved_amount = benefit_or_eligible(payload.get("total"))
        period = payload.get("preAuthPeriod") or {}
        now = datetime.utcnow()

        record.status = status
        record.outcome = outcome
        record.disposition = payload.get("disposition")
        record.adjudication_outcome = adjudication_outcome
        record.pre_auth_ref = payload.get("preAuthRef") or record.pre_auth_ref
        record.pre_auth_period_start = period.get("start") or record.pre_auth_period_start
        record.pre_auth_period_end = period.get("end") or record.pre_auth_period_end
        if approved_amount is not None:
            record.approved_amount = approved_amount
        record.totals = summarize_totals(payload.get("total"))
        record.response_bundle = payload
        record.response_date = now
        record.updated_at = now

        self._apply_items(db, PriorAuthorizationItemDB, PriorAuthorizationItemDB.prior_auth_id, record.id, payload)

        response_id = payload.get("id")
        if not self._history_exists(
            db, PriorAuthorizationResponseDB, PriorAuthorizationResponseDB.prior_auth_id, record.id, response_id
        ):
            db.add(PriorAuthorizationResponseDB(
                prior_auth_id=record.id,
                response_type="poll",
                outcome=outcome,
                disposition=payload.get("disposition"),
                pre_auth_ref=payload.get("preAuthRef"),
                bundle_json=payload,
                has_errors=outcome == "error",
                is_nphies_generated=True,
                nphies_response_id=response_id,
            ))
        db.flush()

        logger.info(f"Updated prior_authorization #{record.id}: status={status}, outcome={outcome}")
        return UpdateResult(
            table=PRIOR_AUTHORIZATIONS, record_id=record.id, status=status,
            outcome=outcome, adjudication_outcome=adjudication_outcome,
        )

    def update_claim_submission(
        self, db: Session, correlation: CorrelationResult, payload: Dict[str, Any], context: UpdateContext
    ) -> UpdateResult:
        record = self._get_record(db, ClaimSubmissionDB, correlation.record_id)
        if record.response_bundle == payload:
            logger.info(f"claim_submission #{record.id} already has this response, skipping")
            return UpdateResult(
                table=CLAIM_SUBMISSIONS, record_id=record.id, unchanged=True,
                status=record.status, outcome=record.outcome,
                adjudication_outcome=record.adjudication_outcome,
            )

        outcome = payload.get("outcome")
        status, adjudication_outcome = derive_claim_status(
            outcome, extract_adjudication_outcome(payload), payload.get("disposition")
        )
        nphies_claim_id = _first_identifier_value(payload) or payload.get("id")
        approved_amount = benefit_or_eligible(payload.get("total"))
        now = datetime.utcnow()

        record.status = status
        record.outcome = outcome
        record.disposition = payload.get("disposition")
        record.adjudication_outcome = adjudication_outcome
        record.nphies_claim_id = nphies_claim_id or record.nphies_claim_id
        if approved_amount is not None:
            record.approved_amount = approved_amount
        record.totals = summarize_totals(payload.get("total"))
        record.response_bundle = payload
        record.response_date = now
        record.updated_at = now

        self._apply_items(db, ClaimSubmissionItemDB, ClaimSubmissionItemDB.claim_id, record.id, payload)

        response_id = payload.get("id")
        if not self._history_exists(
            db, ClaimSubmissionResponseDB, ClaimSubmissionResponseDB.claim_id, record.id, response_id
        ):
            db.add(ClaimSubmissionResponseDB(
                claim_id=record.id,
                response_type="poll",
                outcome=outcome,
                disposition=payload.get("disposition"),
                nphies_claim_id=nphies_claim_id,
                bundle_json=payload,
                has_errors=outcome == "error",
                is_nphies_generated=True,
                nphies_response_id=response_id,
            ))
        db.flush()

        logger.info(f"Updated claim_submission #{record.id}: status={status}, outcome={outcome}")
        return UpdateResult(
            table=CLAIM_SUBMISSIONS, record_id=record.id, status=status,
            outcome=outcome, adjudication_outcome=adjudication_outcome,
        )

    # ------------------------------------------------------------------
    # Advanced authorizations
    # ------------------------------------------------------------------

    @staticmethod
    def _dialect_insert(db: Session):
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise MessageUpdateError(f"Advanced authorization upsert is not supported on {dialect}")

    def save_advanced_authorization(
        self, db: Session, correlation: CorrelationResult, payload: Dict[str, Any], context: UpdateContext
    ) -> UpdateResult:
        """Upsert keyed by identifier value (falls back to the resource id)."""
        values = parse_advanced_authorization(payload)
        key = values.get("identifier_value") or payload.get("id")
        if not key:
            raise MessageUpdateError("Advanced authorization has neither an identifier value nor an id")

        existing = (
            db.query(AdvancedAuthorizationDB)
            .filter(AdvancedAuthorizationDB.identifier_value == key)
            .first()
        )
        if existing is not None and existing.response_bundle == payload:
            return UpdateResult(
                table=ADVANCED_AUTHORIZATIONS, record_id=existing.id, unchanged=True,
                status=existing.status, outcome=existing.outcome,
                adjudication_outcome=existing.adjudication_outcome,
            )

        values.update(
            identifier_value=key,
            poll_bundle=context.poll_bundle,
            poll_response_bundle=context.message_bundle,
            schema_name=context.schema_name,
        )
        insert = self._dialect_insert(db)
        stmt = insert(AdvancedAuthorizationDB).values(**values)
        changes = {name: stmt.excluded[name] for name in values if name != "identifier_value"}
        changes["updated_at"] = datetime.utcnow()
        stmt = stmt.on_conflict_do_update(index_elements=["identifier_value"], set_=changes)
        db.execute(stmt)

        record_id = (
            db.query(AdvancedAuthorizationDB.id)
            .filter(AdvancedAuthorizationDB.identifier_value == key)
            .scalar()
        )
        if existing is not None:
            # The upsert bypassed the identity map
            db.expire(existing)

        is_new = existing is None
        logger.info(
            f"{'Created' if is_new else 'Updated'} advanced_authorization #{record_id}: identifier={key}"
        )
        return UpdateResult(
            table=ADVANCED_AUTHORIZATIONS, record_id=record_id, is_new=is_new,
            status=values.get("status"), outcome=values.get("outcome"),
            adjudication_outcome=values.get("adjudication_outcome"),
        )

    # ------------------------------------------------------------------
    # Communications
    # ------------------------------------------------------------------

    @staticmethod
    def _linked_ids(correlation: CorrelationResult) -> Dict[str, Optional[int]]:
        def pick(related: Optional[int], table: str) -> Optional[int]:
            if related:
                return related
            return correlation.record_id if correlation.table == table else None

        return {
            "prior_auth_id": pick(correlation.related_prior_auth_id, PRIOR_AUTHORIZATIONS),
            "claim_id": pick(correlation.related_claim_id, CLAIM_SUBMISSIONS),
            "advanced_authorization_id": pick(correlation.related_advanced_auth_id, ADVANCED_AUTHORIZATIONS),
        }

    def store_communication_request(
        self, db: Session, correlation: CorrelationResult, payload: Dict[str, Any], context: UpdateContext
    ) -> UpdateResult:
        request_id = payload.get("id") or _first_identifier_value(payload)
        if not request_id:
            raise MessageUpdateError("CommunicationRequest has no id")

        existing = (
            db.query(CommunicationRequestDB)
            .filter(CommunicationRequestDB.request_id == request_id)
            .first()
        )
        if existing is not None:
            return UpdateResult(table=CommunicationRequestDB.__tablename__, record_id=existing.id, already_stored=True)

        about = _first(payload.get("about"))
        about_reference = about.get("reference")
        about_identifier = about.get("identifier") or {}
        identifier = payload.get("identifier")
        identifier = _first(identifier) if isinstance(identifier, list) else (identifier or {})
        content = _first(payload.get("payload"))
        if content.get("contentString"):
            content_type = "string"
        elif content.get("contentAttachment"):
            content_type = "attachment"
        elif content.get("contentReference"):
            content_type = "reference"
        else:
            content_type = None

        record = CommunicationRequestDB(
            request_id=request_id,
            status=payload.get("status") or "active",
            category=((_first(payload.get("category")).get("coding") or [{}])[0] or {}).get("code"),
            priority=payload.get("priority"),
            about_reference=about_reference,
            about_type=about.get("type") or (about_reference.split("/")[0] if about_reference and "/" in about_reference else None),
            about_identifier=about_identifier.get("value"),
            about_identifier_system=about_identifier.get("system"),
            cr_identifier=identifier.get("value"),
            cr_identifier_system=identifier.get("system"),
            payload_content_type=content_type,
            payload_content_string=content.get("contentString"),
            sender_identifier=((payload.get("sender") or {}).get("identifier") or {}).get("value"),
            recipient_identifier=(_first(payload.get("recipient")).get("identifier") or {}).get("value"),
            authored_on=payload.get("authoredOn"),
            request_bundle=payload,
            **self._linked_ids(correlation),
        )
        db.add(record)
        db.flush()

        logger.info(
            f"Stored CommunicationRequest {request_id}: prior_auth={record.prior_auth_id}, "
            f"claim={record.claim_id}, advanced_auth={record.advanced_authorization_id}"
        )
        return UpdateResult(table=CommunicationRequestDB.__tablename__, record_id=record.id)

    def store_communication(
        self, db: Session, correlation: CorrelationResult, payload: Dict[str, Any], context: UpdateContext
    ) -> UpdateResult:
        communication_id = payload.get("id") or _first_identifier_value(payload)
        if not communication_id:
            raise MessageUpdateError("Communication has no id")

        existing = (
            db.query(CommunicationDB)
            .filter(CommunicationDB.communication_id == communication_id)
            .first()
        )
        if existing is not None:
            return UpdateResult(table=CommunicationDB.__tablename__, record_id=existing.id, already_stored=True)

        request_pk = correlation.related_communication_request_id
        if request_pk:
            request = db.get(CommunicationRequestDB, request_pk)
            if request is not None and not request.acknowledgment_received:
                request.acknowledgment_received = True
                request.acknowledgment_at = datetime.utcnow()
                request.acknowledgment_status = "completed"

        content = _first(payload.get("payload"))
        record = CommunicationDB(
            communication_id=communication_id,
            communication_request_id=request_pk,
            status=payload.get("status") or "completed",
            category=((_first(payload.get("category")).get("coding") or [{}])[0] or {}).get("code"),
            payload_content_type="string" if content.get("contentString") else "attachment",
            payload_content_string=content.get("contentString"),
            sender_identifier=((payload.get("sender") or {}).get("identifier") or {}).get("value"),
            recipient_identifier=(_first(payload.get("recipient")).get("identifier") or {}).get("value"),
            sent_date=payload.get("sent"),
            communication_bundle=payload,
            **self._linked_ids(correlation),
        )
        db.add(record)
        db.flush()

        logger.info(
            f"Stored Communication {communication_id}: prior_auth={record.prior_auth_id}, "
            f"claim={record.claim_id}, communication_request={request_pk}"
        )
        return UpdateResult(table=CommunicationDB.__tablename__, record_id=record.id)
