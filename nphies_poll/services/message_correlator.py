"""
Message correlation
Finds the local record a polled message belongs to.

Every strategy gathers candidates from all candidate tables before deciding:
exactly one distinct record is a match, more than one is ambiguous and fails
closed (no match, later strategies are not tried).
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from nphies_poll.models.authorization_db import (
    PriorAuthorizationDB,
    ClaimSubmissionDB,
    AdvancedAuthorizationDB,
)
from nphies_poll.models.communication_db import CommunicationRequestDB
from nphies_poll.services.advanced_auth_parser import is_advanced_authorization
from nphies_poll.services.message_classifier import PayloadKind

logger = logging.getLogger(__name__)

PRIOR_AUTHORIZATIONS = PriorAuthorizationDB.__tablename__
CLAIM_SUBMISSIONS = ClaimSubmissionDB.__tablename__
ADVANCED_AUTHORIZATIONS = AdvancedAuthorizationDB.__tablename__
COMMUNICATION_REQUESTS = CommunicationRequestDB.__tablename__

Candidate = Tuple[str, int]


class MatchStrategy:
    MESSAGE_HEADER_ID = "message_header_id"
    CLAIM_RESPONSE_IDENTIFIER = "claim_response_identifier"
    NEW_ADVANCED_AUTH = "new_advanced_auth"
    COMMUNICATION_REQUEST_ABOUT = "communication_request_about"
    COMMUNICATION_ABOUT = "communication_about"


@dataclass
class CorrelationResult:
    table: Optional[str] = None
    record_id: Optional[int] = None
    strategy: Optional[str] = None
    is_new: bool = False
    reason: Optional[str] = None
    unmatched: bool = False
    related_communication_request_id: Optional[int] = None
    related_prior_auth_id: Optional[int] = None
    related_claim_id: Optional[int] = None
    related_advanced_auth_id: Optional[int] = None

    @classmethod
    def no_match(cls, reason: str) -> "CorrelationResult":
        return cls(unmatched=True, reason=reason)


class _Ambiguous:
    """Outcome of a strategy that found more than one candidate"""

    def __init__(self, candidates: List[Candidate]):
        self.candidates = candidates

    @property
    def reason(self) -> str:
        listed = ", ".join(f"{t}#{i}" for t, i in self.candidates)
        return f"Ambiguous correlation: {len(self.candidates)} candidate records ({listed})"


def _distinct(candidates: List[Candidate]) -> List[Candidate]:
    seen = []
    for candidate in candidates:
        if candidate not in seen:
            seen.append(candidate)
    return seen


def _decide(candidates: List[Candidate]):
    """None for no candidates, the candidate for exactly one, _Ambiguous otherwise."""
    candidates = _distinct(candidates)
    if not candidates:
        return None
    if len(candidates) > 1:
        return _Ambiguous(candidates)
    return candidates[0]


def _about_keys(payload: Dict[str, Any]) -> List[str]:
    """Identifier values and reference tails from a payload's about[] list, in order."""
    keys = []
    for about in payload.get("about") or []:
        if not isinstance(about, dict):
            continue
        value = (about.get("identifier") or {}).get("value")
        if value and value not in keys:
            keys.append(value)
        reference = about.get("reference")
        if reference:
            tail = reference.rstrip("/").split("/")[-1]
            if tail and tail not in keys:
                keys.append(tail)
    return keys


class MessageCorrelator:
    """Stateless; every method takes the tenant-scoped session explicitly."""

    # ------------------------------------------------------------------
    # Candidate lookups
    # ------------------------------------------------------------------

    def _by_outbound_header(self, db: Session, header_id: str) -> List[Candidate]:
        candidates = [
            (PRIOR_AUTHORIZATIONS, row.id)
            for row in db.query(PriorAuthorizationDB.id)
            .filter(PriorAuthorizationDB.outbound_message_header_id == header_id)
            .all()
        ]
        candidates.extend(
            (CLAIM_SUBMISSIONS, row.id)
            for row in db.query(ClaimSubmissionDB.id)
            .filter(ClaimSubmissionDB.outbound_message_header_id == header_id)
            .all()
        )
        return candidates

    def _by_request_identifier(self, db: Session, value: str, include_advanced: bool = False) -> List[Candidate]:
        candidates = [
            (PRIOR_AUTHORIZATIONS, row.id)
            for row in db.query(PriorAuthorizationDB.id)
            .filter(or_(
                PriorAuthorizationDB.request_number == value,
                PriorAuthorizationDB.nphies_request_id == value,
            ))
            .all()
        ]
        candidates.extend(
            (CLAIM_SUBMISSIONS, row.id)
            for row in db.query(ClaimSubmissionDB.id)
            .filter(or_(
                ClaimSubmissionDB.claim_number == value,
                ClaimSubmissionDB.nphies_claim_id == value,
                ClaimSubmissionDB.nphies_request_id == value,
            ))
            .all()
        )
        if include_advanced:
            candidates.extend(
                (ADVANCED_AUTHORIZATIONS, row.id)
                for row in db.query(AdvancedAuthorizationDB.id)
                .filter(AdvancedAuthorizationDB.identifier_value == value)
                .all()
            )
        return candidates

    def _communication_requests(self, db: Session, value: str) -> List[CommunicationRequestDB]:
        return (
            db.query(CommunicationRequestDB)
            .filter(or_(
                CommunicationRequestDB.request_id == value,
                CommunicationRequestDB.cr_identifier == value,
            ))
            .all()
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _match_claim_response_identifier(self, db: Session, payload: Optional[Dict[str, Any]]):
        if not payload or payload.get("resourceType") != PayloadKind.CLAIM_RESPONSE.value:
            return None
        value = (((payload.get("request") or {}).get("identifier")) or {}).get("value")
        if not value:
            return None
        return _decide(self._by_request_identifier(db, value))

    def _match_about(self, db: Session, payload: Dict[str, Any]):
        candidates: List[Candidate] = []
        for key in _about_keys(payload):
            candidates.extend(self._by_request_identifier(db, key, include_advanced=True))
        return _decide(candidates)

    def _related_communication_request(self, db: Session, payload: Dict[str, Any]):
        """The single stored CommunicationRequest a Communication is about, or _Ambiguous / None."""
        found: Dict[int, CommunicationRequestDB] = {}
        for key in _about_keys(payload):
            for cr in self._communication_requests(db, key):
                found.setdefault(cr.id, cr)
        if len(found) > 1:
            return _Ambiguous([(COMMUNICATION_REQUESTS, i) for i in found])
        if found:
            return next(iter(found.values()))
        return None

    @staticmethod
    def _apply_related_request(result: CorrelationResult, cr: CommunicationRequestDB) -> None:
        result.related_communication_request_id = cr.id
        result.related_prior_auth_id = cr.prior_auth_id
        result.related_claim_id = cr.claim_id
        result.related_advanced_auth_id = cr.advanced_authorization_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def correlate_solicited(
        self,
        response_identifier: str,
        payload: Optional[Dict[str, Any]],
        db: Session,
    ) -> CorrelationResult:
        """
        Correlate a solicited message to the outbound request it answers.

        Returns an unmatched result (with the reason) instead of None so the
        caller can record why nothing was matched.
        """
        outcome = _decide(self._by_outbound_header(db, response_identifier)) if response_identifier else None
        strategy = MatchStrategy.MESSAGE_HEADER_ID
        if outcome is None:
            outcome = self._match_claim_response_identifier(db, payload)
            strategy = MatchStrategy.CLAIM_RESPONSE_IDENTIFIER

        if isinstance(outcome, _Ambiguous):
            logger.warning(f"Correlation for response {response_identifier} failed closed: {outcome.reason}")
            return CorrelationResult.no_match(outcome.reason)
        if outcome is None:
            return CorrelationResult.no_match(
                f"No outbound request matches response identifier {response_identifier}"
            )

        table, record_id = outcome
        result = CorrelationResult(table=table, record_id=record_id, strategy=strategy)
        if payload and payload.get("resourceType") == PayloadKind.COMMUNICATION.value:
            cr = self._related_communication_request(db, payload)
            if cr is not None and not isinstance(cr, _Ambiguous):
                self._apply_related_request(result, cr)
        return result

    def correlate_to_outbound_request(
        self,
        response_identifier: str,
        payload: Optional[Dict[str, Any]],
        db: Session,
    ) -> Optional[CorrelationResult]:
        """Matched result, or None when nothing (or more than one record) matches."""
        result = self.correlate_solicited(response_identifier, payload, db)
        return None if result.unmatched else result

    def handle_new_inbound_event(
        self,
        bundle: Dict[str, Any],
        payload: Optional[Dict[str, Any]],
        db: Session,
    ) -> CorrelationResult:
        """
        Correlate an unsolicited message. Never returns None; an unmatched
        result is an expected outcome, not an error.
        """
        if not payload:
            return CorrelationResult.no_match("No recognized payload resource")

        kind = PayloadKind.from_resource_type(payload.get("resourceType"))
        if kind is PayloadKind.CLAIM_RESPONSE:
            return self._inbound_claim_response(db, payload)
        if kind is PayloadKind.COMMUNICATION_REQUEST:
            return self._inbound_communication_request(db, payload)
        if kind is PayloadKind.COMMUNICATION:
            return self._inbound_communication(db, payload)
        return CorrelationResult.no_match(f"Unhandled resource type: {payload.get('resourceType')}")

    def _inbound_claim_response(self, db: Session, payload: Dict[str, Any]) -> CorrelationResult:
        outcome = self._match_claim_response_identifier(db, payload)
        if isinstance(outcome, _Ambiguous):
            logger.warning(f"Unsolicited ClaimResponse {payload.get('id')} failed closed: {outcome.reason}")
            return CorrelationResult.no_match(outcome.reason)
        if outcome is not None:
            table, record_id = outcome
            return CorrelationResult(
                table=table, record_id=record_id, strategy=MatchStrategy.CLAIM_RESPONSE_IDENTIFIER
            )

        if is_advanced_authorization(payload):
            # Upsert and the final is_new are decided by the updater
            return CorrelationResult(
                table=ADVANCED_AUTHORIZATIONS,
                strategy=MatchStrategy.NEW_ADVANCED_AUTH,
                is_new=True,
            )

        return CorrelationResult.no_match(
            "ClaimResponse does not match any existing request and is not an Advanced Authorization"
        )

    def _inbound_communication_request(self, db: Session, payload: Dict[str, Any]) -> CorrelationResult:
        outcome = self._match_about(db, payload)
        if isinstance(outcome, _Ambiguous):
            return CorrelationResult.no_match(outcome.reason)
        if outcome is None:
            return CorrelationResult.no_match("Could not match CommunicationRequest.about to any existing request")
        table, record_id = outcome
        return CorrelationResult(
            table=table, record_id=record_id, strategy=MatchStrategy.COMMUNICATION_REQUEST_ABOUT
        )

    def _inbound_communication(self, db: Session, payload: Dict[str, Any]) -> CorrelationResult:
        cr = self._related_communication_request(db, payload)
        if isinstance(cr, _Ambiguous):
            return CorrelationResult.no_match(cr.reason)
        if cr is not None:
            # Acknowledgment of a stored request; report the record the request is about
            if cr.prior_auth_id:
                table, record_id = PRIOR_AUTHORIZATIONS, cr.prior_auth_id
            elif cr.claim_id:
                table, record_id = CLAIM_SUBMISSIONS, cr.claim_id
            elif cr.advanced_authorization_id:
                table, record_id = ADVANCED_AUTHORIZATIONS, cr.advanced_authorization_id
            else:
                table, record_id = COMMUNICATION_REQUESTS, cr.id
            result = CorrelationResult(
                table=table, record_id=record_id, strategy=MatchStrategy.COMMUNICATION_ABOUT
            )
            self._apply_related_request(result, cr)
            return result

        outcome = self._match_about(db, payload)
        if isinstance(outcome, _Ambiguous):
            return CorrelationResult.no_match(outcome.reason)
        if outcome is None:
            return CorrelationResult.no_match("Could not match Communication.about to any existing request")
        table, record_id = outcome
        return CorrelationResult(table=table, record_id=record_id, strategy=MatchStrategy.COMMUNICATION_ABOUT)
