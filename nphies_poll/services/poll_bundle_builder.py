"""
Poll envelope builder
Builds the FHIR message Bundle sent to NPHIES to fetch queued messages
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from nphies_poll.config import settings

logger = logging.getLogger(__name__)

BUNDLE_PROFILE = "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition/bundle|1.0.0"
MESSAGE_HEADER_PROFILE = "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition/message-header|1.0.0"
MESSAGE_EVENTS_SYSTEM = "http://nphies.sa/terminology/CodeSystem/ksa-message-events"
NPHIES_ENDPOINT = "http://nphies.sa"
NPHIES_LICENSE_SYSTEM = "http://nphies.sa/license/nphies-license"
PROVIDER_LICENSE_SYSTEM = "http://nphies.sa/license/provider-license"


def _clamp_count(count: Optional[int]) -> int:
    max_count = settings.nphies_poll_max_count
    if count is None:
        count = settings.nphies_poll_count
    if count < 1:
        return 1
    if count > max_count:
        logger.debug(f"Poll count {count} exceeds maximum {max_count}, clamping")
        return max_count
    return count


def build_poll_bundle(
    provider_id: str,
    provider_name: Optional[str] = None,
    message_types: Optional[List[str]] = None,
    count: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build a poll request bundle for the given provider.

    Args:
        provider_id: Provider license id sent as the MessageHeader sender
        provider_name: Display name for the sender (optional)
        message_types: Message type codes to request, defaults to settings
        count: Maximum messages to return, clamped to 1..nphies_poll_max_count

    Returns:
        FHIR Bundle (type=message) with a MessageHeader and a Parameters resource
    """
    if not provider_id:
        raise ValueError("provider_id is required to build a poll bundle")

    message_types = message_types or settings.poll_message_types_list
    bundle_id = str(uuid.uuid4())
    header_id = str(uuid.uuid4())
    parameters_id = str(uuid.uuid4())

    sender: Dict[str, Any] = {
        "type": "Organization",
        "identifier": {"system": PROVIDER_LICENSE_SYSTEM, "value": str(provider_id)},
    }
    if provider_name:
        sender["display"] = provider_name

    parameters = [{"name": "message-type", "valueCode": t} for t in message_types]
    parameters.append({"name": "count", "valueInteger": _clamp_count(count)})

    return {
        "resourceType": "Bundle",
        "id": bundle_id,
        "meta": {"profile": [BUNDLE_PROFILE]},
        "type": "message",
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "entry": [
            {
                "fullUrl": f"urn:uuid:{header_id}",
                "resource": {
                    "resourceType": "MessageHeader",
                    "id": header_id,
                    "meta": {"profile": [MESSAGE_HEADER_PROFILE]},
                    "eventCoding": {"system": MESSAGE_EVENTS_SYSTEM, "code": "poll"},
                    "source": {"endpoint": settings.nphies_provider_endpoint},
                    "destination": [
                        {
                            "endpoint": NPHIES_ENDPOINT,
                            "receiver": {
                                "type": "Organization",
                                "identifier": {"system": NPHIES_LICENSE_SYSTEM, "value": "nphies"},
                            },
                        }
                    ],
                    "sender": sender,
                },
            },
            {
                "fullUrl": f"urn:uuid:{parameters_id}",
                "resource": {
                    "resourceType": "Parameters",
                    "id": parameters_id,
                    "parameter": parameters,
                },
            },
        ],
    }
