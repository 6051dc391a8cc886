"""
Builders for the FHIR resources used across the poll tests
"""
import uuid

ADVANCED_AUTH_PROFILE = "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition/advanced-authorization|1.0.0"
ADJUDICATION_OUTCOME_URL = "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition/extension-adjudication-outcome"


def adjudication_extension(code):
    return {
        "url": ADJUDICATION_OUTCOME_URL,
        "valueCodeableConcept": {"coding": [{"code": code}]},
    }


def claim_response(
    resource_id="cr-1",
    outcome="complete",
    disposition=None,
    marker=None,
    request_identifier=None,
    identifier_value=None,
    advanced=False,
    items=None,
    total=None,
    pre_auth_ref=None,
):
    resource = {"resourceType": "ClaimResponse", "id": resource_id, "outcome": outcome, "status": "active"}
    if disposition is not None:
        resource["disposition"] = disposition
    if marker is not None:
        resource["extension"] = [adjudication_extension(marker)]
    if request_identifier is not None:
        resource["request"] = {"identifier": {"system": "http://provider.com/request", "value": request_identifier}}
    if identifier_value is not None:
        resource["identifier"] = [{"system": "http://payer.com/claimresponse", "value": identifier_value}]
    if advanced:
        resource["meta"] = {"profile": [ADVANCED_AUTH_PROFILE]}
    if items is not None:
        resource["item"] = items
    if total is not None:
        resource["total"] = total
    if pre_auth_ref is not None:
        resource["preAuthRef"] = pre_auth_ref
    return resource


def adjudicated_item(sequence, marker=None, benefit=None, eligible=None):
    item = {"itemSequence": sequence, "adjudication": []}
    if marker is not None:
        item["extension"] = [adjudication_extension(marker)]
    if benefit is not None:
        item["adjudication"].append({"category": {"coding": [{"code": "benefit"}]}, "amount": {"value": benefit, "currency": "SAR"}})
    if eligible is not None:
        item["adjudication"].append({"category": {"coding": [{"code": "eligible"}]}, "amount": {"value": eligible, "currency": "SAR"}})
    return item


def total(category, value):
    return {"category": {"coding": [{"code": category}]}, "amount": {"value": value, "currency": "SAR"}}


def communication_request(resource_id="comreq-1", about_identifier=None, about_reference=None, identifier_value=None):
    resource = {
        "resourceType": "CommunicationRequest",
        "id": resource_id,
        "status": "active",
        "category": [{"coding": [{"code": "missing-info"}]}],
        "payload": [{"contentString": "Please send the lab report"}],
        "sender": {"identifier": {"value": "INS-1"}},
        "recipient": [{"identifier": {"value": "1010613708"}}],
    }
    about = {}
    if about_identifier is not None:
        about["identifier"] = {"system": "http://provider.com/request", "value": about_identifier}
    if about_reference is not None:
        about["reference"] = about_reference
    if about:
        resource["about"] = [about]
    if identifier_value is not None:
        resource["identifier"] = [{"system": "http://payer.com/communicationrequest", "value": identifier_value}]
    return resource


def communication(resource_id="com-1", about_identifier=None, about_reference=None):
    resource = {
        "resourceType": "Communication",
        "id": resource_id,
        "status": "completed",
        "payload": [{"contentString": "Acknowledged"}],
    }
    about = {}
    if about_identifier is not None:
        about["identifier"] = {"value": about_identifier}
    if about_reference is not None:
        about["reference"] = about_reference
    if about:
        resource["about"] = [about]
    return resource


def message_bundle(payload=None, response_identifier=None, event_code="priorauth-response", header_id=None):
    header = {
        "resourceType": "MessageHeader",
        "id": header_id or str(uuid.uuid4()),
        "eventCoding": {"system": "http://nphies.sa/terminology/CodeSystem/ksa-message-events", "code": event_code},
    }
    if response_identifier is not None:
        header["response"] = {"identifier": response_identifier, "code": "ok"}
    entries = [{"fullUrl": f"urn:uuid:{header['id']}", "resource": header}]
    if payload is not None:
        entries.append({"fullUrl": f"urn:uuid:{payload.get('id')}", "resource": payload})
    return {"resourceType": "Bundle", "id": str(uuid.uuid4()), "type": "message", "entry": entries}


def poll_response(*resources):
    """Top-level poll response: nested message bundles and/or bare payload resources"""
    header = {
        "resourceType": "MessageHeader",
        "id": str(uuid.uuid4()),
        "eventCoding": {"code": "poll-response"},
        "response": {"identifier": str(uuid.uuid4()), "code": "ok"},
    }
    entries = [{"resource": header}] + [{"resource": r} for r in resources]
    return {"resourceType": "Bundle", "type": "message", "entry": entries}
