"""
Poll response extraction
NPHIES returns queued messages either as nested message Bundles or as bare
payload resources at the top level; both shapes are turned into one list of
message bundles for the per-message pipeline.
"""
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DIRECT_RESOURCE_TYPES = ("ClaimResponse", "CommunicationRequest", "Communication")


def is_bundle(data: Any) -> bool:
    return isinstance(data, dict) and data.get("resourceType") == "Bundle"


def _entries(response: Any) -> List[Dict[str, Any]]:
    if not is_bundle(response):
        return []
    entries = response.get("entry") or []
    if not isinstance(entries, list):
        return []
    return [e for e in entries if isinstance(e, dict)]


def extract_message_bundles(response: Any) -> List[Dict[str, Any]]:
    """Nested Bundle(type=message) entries of the poll response, in order."""
    bundles = []
    for entry in _entries(response):
        resource = entry.get("resource")
        if is_bundle(resource) and resource.get("type") == "message":
            bundles.append(resource)
    return bundles


def extract_direct_resources(response: Any) -> List[Dict[str, Any]]:
    """Top-level payload resources that are not wrapped in a message bundle."""
    resources = []
    for entry in _entries(response):
        resource = entry.get("resource")
        if isinstance(resource, dict) and resource.get("resourceType") in DIRECT_RESOURCE_TYPES:
            resources.append(resource)
    return resources


def wrap_direct_resource(resource: Dict[str, Any]) -> Dict[str, Any]:
    """Single-entry pseudo message bundle around a bare payload resource."""
    return {
        "resourceType": "Bundle",
        "type": "message",
        "entry": [{"resource": resource}],
    }


def build_message_descriptors(response: Any) -> List[Dict[str, Any]]:
    """
    Uniform list of message bundles: nested bundles first, then wrapped direct
    resources. A missing or non-Bundle response yields an empty list.
    """
    if not is_bundle(response):
        return []

    descriptors = extract_message_bundles(response)
    direct = extract_direct_resources(response)
    descriptors.extend(wrap_direct_resource(r) for r in direct)

    logger.debug(
        f"Extracted {len(descriptors)} messages "
        f"({len(descriptors) - len(direct)} nested, {len(direct)} direct)"
    )
    return descriptors
