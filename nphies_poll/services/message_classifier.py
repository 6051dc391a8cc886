"""
Message classification
Splits a message bundle into header and payload and decides whether it
answers a request we sent (solicited) or was pushed by the payer (unsolicited)
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class PayloadKind(str, Enum):
    """Recognized payload resources; every kind needs an updater handler"""
    CLAIM_RESPONSE = "ClaimResponse"
    COMMUNICATION_REQUEST = "CommunicationRequest"
    COMMUNICATION = "Communication"

    @classmethod
    def from_resource_type(cls, resource_type: Optional[str]) -> Optional["PayloadKind"]:
        for kind in cls:
            if kind.value == resource_type:
                return kind
        return None


class MessageType:
    """Values for poll_messages.message_type"""
    SOLICITED = "solicited"
    UNSOLICITED = "unsolicited"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedMessage:
    header: Optional[Dict[str, Any]]
    payload: Optional[Dict[str, Any]]
    kind: Optional[PayloadKind]
    classification: str
    response_identifier: Optional[str] = None
    event_code: Optional[str] = None
    message_header_id: Optional[str] = None

    @property
    def resource_type(self) -> Optional[str]:
        if self.payload:
            return self.payload.get("resourceType")
        return None


def _resources(bundle: Dict[str, Any]):
    for entry in (bundle or {}).get("entry") or []:
        resource = (entry or {}).get("resource")
        if isinstance(resource, dict):
            yield resource


def classify_message(bundle: Dict[str, Any]) -> ClassifiedMessage:
    """
    Classify one message bundle.

    solicited iff MessageHeader.response.identifier is present; a bundle with
    no header (e.g. a wrapped direct resource) is therefore unsolicited.
    """
    header = None
    payload = None
    kind = None
    for resource in _resources(bundle):
        resource_type = resource.get("resourceType")
        if header is None and resource_type == "MessageHeader":
            header = resource
            continue
        if payload is None:
            kind = PayloadKind.from_resource_type(resource_type)
            if kind is not None:
                payload = resource

    response_identifier = ((header or {}).get("response") or {}).get("identifier") or None
    event_code = ((header or {}).get("eventCoding") or {}).get("code")
    if not event_code:
        # Older headers carry the event as a CodeableConcept
        event_codings = ((header or {}).get("event") or {}).get("coding") or [{}]
        event_code = (event_codings[0] or {}).get("code")
    classification = MessageType.SOLICITED if response_identifier else MessageType.UNSOLICITED

    return ClassifiedMessage(
        header=header,
        payload=payload,
        kind=kind,
        classification=classification,
        response_identifier=response_identifier,
        event_code=event_code,
        message_header_id=(header or {}).get("id"),
    )
