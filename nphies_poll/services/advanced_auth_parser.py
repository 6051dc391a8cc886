"""
Advanced authorization parser
Flattens a payer-initiated ClaimResponse (advanced-authorization profile) into
column values for advanced_authorizations
"""
from typing import Any, Dict, List, Optional

ADVANCED_AUTH_PROFILE_MARKER = "advanced-authorization"
DEFAULT_CURRENCY = "SAR"


def is_advanced_authorization(resource: Optional[Dict[str, Any]]) -> bool:
    if not resource or resource.get("resourceType") != "ClaimResponse":
        return False
    profiles = (resource.get("meta") or {}).get("profile") or []
    return any(ADVANCED_AUTH_PROFILE_MARKER in (p or "") for p in profiles)


def _first_coding(concept: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    codings = (concept or {}).get("coding") or [{}]
    return codings[0] or {}


def _find_extension(extensions: List[Dict[str, Any]], url_part: str) -> Optional[Dict[str, Any]]:
    for ext in extensions:
        if url_part in (ext.get("url") or ""):
            return ext
    return None


def _extension_code(extensions, url_part) -> Optional[str]:
    ext = _find_extension(extensions, url_part)
    if not ext:
        return None
    return _first_coding(ext.get("valueCodeableConcept")).get("code")


def _extension_bool(extensions, url_part) -> bool:
    ext = _find_extension(extensions, url_part)
    return bool(ext.get("valueBoolean", False)) if ext else False


def _extension_string(extensions, url_part) -> Optional[str]:
    ext = _find_extension(extensions, url_part)
    return ext.get("valueString") if ext else None


def _extension_reference(extensions, url_part) -> Optional[str]:
    ext = _find_extension(extensions, url_part)
    if not ext:
        return None
    ref = ext.get("valueReference") or {}
    return ref.get("reference") or (ref.get("identifier") or {}).get("value")


def _extension_display(extensions, url_part) -> Optional[str]:
    ext = _find_extension(extensions, url_part)
    if not ext:
        return None
    return (ext.get("valueReference") or {}).get("display")


def _extension_positive_ints(extensions, url_part) -> List[int]:
    return [
        e["valuePositiveInt"]
        for e in extensions
        if url_part in (e.get("url") or "") and e.get("valuePositiveInt") is not None
    ]


def _reference(ref: Optional[Dict[str, Any]]) -> Optional[str]:
    if not ref:
        return None
    return ref.get("reference") or (ref.get("identifier") or {}).get("value") or ref.get("display")


def _coding_summary(concept: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    coding = _first_coding(concept)
    return {"code": coding.get("code"), "system": coding.get("system"), "display": coding.get("display")}


def get_identifier(resource: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """ClaimResponse.identifier as {system, value}; FHIR allows a list or a single object."""
    identifier = resource.get("identifier")
    if isinstance(identifier, list):
        identifier = identifier[0] if identifier else None
    identifier = identifier or {}
    return {"system": identifier.get("system"), "value": identifier.get("value")}


def parse_adjudication(adjudications: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    parsed = []
    for adj in adjudications or []:
        category = _first_coding(adj.get("category"))
        reason = _first_coding(adj.get("reason"))
        amount = adj.get("amount") or {}
        parsed.append({
            "category": category.get("code"),
            "categorySystem": category.get("system"),
            "amount": amount.get("value"),
            "currency": amount.get("currency") or DEFAULT_CURRENCY,
            "value": adj.get("value"),
            "reason": reason.get("code"),
            "reasonDisplay": reason.get("display"),
        })
    return parsed


def parse_totals(totals: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    parsed = []
    for total in totals or []:
        category = _first_coding(total.get("category"))
        amount = total.get("amount") or {}
        parsed.append({
            "category": category.get("code"),
            "categorySystem": category.get("system"),
            "amount": amount.get("value"),
            "currency": amount.get("currency") or DEFAULT_CURRENCY,
        })
    return parsed


def parse_diagnoses(extensions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    diagnoses = []
    for ext in extensions:
        url = ext.get("url") or ""
        if "extension-diagnosis" not in url or not isinstance(ext.get("extension"), list):
            continue
        if any(s in url for s in ("extension-diagnosis-sequence", "extension-diagnosis-type", "extension-diagnosesSequence")):
            continue
        subs = ext["extension"]
        sequence = _find_extension(subs, "extension-diagnosis-sequence") or {}
        code = _first_coding((_find_extension(subs, "extension-diagnosis-diagnosisCodeableConcept") or {}).get("valueCodeableConcept"))
        dtype = _first_coding((_find_extension(subs, "extension-diagnosis-type") or {}).get("valueCodeableConcept"))
        diagnoses.append({
            "sequence": sequence.get("valuePositiveInt"),
            "code": code.get("code"),
            "system": code.get("system"),
            "display": code.get("display"),
            "type": dtype.get("code"),
            "typeDisplay": dtype.get("display"),
        })
    return diagnoses


def parse_supporting_info(extensions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    infos = []
    for ext in extensions:
        url = ext.get("url") or ""
        if "extension-supportingInfo" not in url or "extension-supportingInfo-" in url:
            continue
        if not isinstance(ext.get("extension"), list):
            continue
        subs = ext["extension"]
        category = _first_coding((_find_extension(subs, "extension-supportingInfo-category") or {}).get("valueCodeableConcept"))
        info: Dict[str, Any] = {
            "sequence": (_find_extension(subs, "extension-supportingInfo-sequence") or {}).get("valuePositiveInt"),
            "category": category.get("code"),
            "categoryDisplay": category.get("display"),
        }

        value_string = _find_extension(subs, "extension-supportingInfo-valueString")
        value_quantity = _find_extension(subs, "extension-supportingInfo-valueQuantity")
        value_code = _find_extension(subs, "extension-supportingInfo-code")
        value_attachment = _find_extension(subs, "extension-supportingInfo-valueAttachment")
        if value_string:
            info.update(valueType="string", value=value_string.get("valueString"))
        elif value_quantity:
            quantity = value_quantity.get("valueQuantity") or {}
            info.update(
                valueType="quantity",
                value=quantity.get("value"),
                unit=quantity.get("code") or quantity.get("unit"),
                unitSystem=quantity.get("system"),
            )
        elif value_code:
            concept = value_code.get("valueCodeableConcept") or {}
            coding = _first_coding(concept)
            info.update(
                valueType="code",
                code=coding.get("code"),
                codeSystem=coding.get("system"),
                codeDisplay=coding.get("display"),
                codeText=concept.get("text"),
            )
        elif value_attachment:
            attachment = value_attachment.get("valueAttachment") or {}
            # Attachment data stays in the raw bundle only
            info.update(
                valueType="attachment",
                contentType=attachment.get("contentType"),
                title=attachment.get("title"),
                creation=attachment.get("creation"),
                hasData=bool(attachment.get("data")),
            )

        reason = _find_extension(subs, "extension-supportingInfo-reason")
        if reason:
            coding = _first_coding(reason.get("valueCodeableConcept"))
            info.update(reason=coding.get("code"), reasonDisplay=coding.get("display"))
        timing_date = _find_extension(subs, "extension-supportingInfo-timingDate")
        if timing_date:
            info["timingDate"] = timing_date.get("valueDate")
        timing_period = _find_extension(subs, "extension-supportingInfo-timingPeriod")
        if timing_period:
            period = timing_period.get("valuePeriod") or {}
            info.update(timingPeriodStart=period.get("start"), timingPeriodEnd=period.get("end"))

        infos.append(info)
    return infos


def parse_add_items(add_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    items = []
    for item in add_items or []:
        exts = item.get("extension") or []
        sequences = _extension_positive_ints(exts, "extension-sequence")
        sub_sites = item.get("subSite") or []
        items.append({
            "sequence": sequences[0] if sequences else None,
            "adjudicationOutcome": _extension_code(exts, "extension-adjudication-outcome"),
            "maternity": _extension_bool(exts, "extension-maternity"),
            "isPackage": _extension_bool(exts, "extension-package"),
            "diagnosisSequences": _extension_positive_ints(exts, "extension-diagnosis-sequence"),
            "informationSequences": _extension_positive_ints(exts, "extension-informationSequence"),
            "productOrService": _coding_summary(item.get("productOrService")),
            "quantity": (item.get("quantity") or {}).get("value"),
            "bodySite": _coding_summary(item["bodySite"]) if item.get("bodySite") else None,
            "subSite": _coding_summary(sub_sites[0]) if sub_sites else None,
            "provider": _reference(item.get("provider")),
            "noteNumbers": item.get("noteNumber") or [],
            "adjudication": parse_adjudication(item.get("adjudication")),
            "details": [
                {
                    "sequence": (_extension_positive_ints(d.get("extension") or [], "extension-sequence") or [None])[0],
                    "productOrService": _coding_summary(d.get("productOrService")),
                    "quantity": (d.get("quantity") or {}).get("value"),
                    "noteNumbers": d.get("noteNumber") or [],
                    "adjudication": parse_adjudication(d.get("adjudication")),
                }
                for d in item.get("detail") or []
            ],
        })
    return items


def parse_advanced_authorization(claim_response: Dict[str, Any]) -> Dict[str, Any]:
    """
    Parse an advanced-authorization ClaimResponse into advanced_authorizations columns.

    Raises:
        ValueError: If the resource is not a ClaimResponse
    """
    if not claim_response or claim_response.get("resourceType") != "ClaimResponse":
        raise ValueError("Invalid ClaimResponse resource")

    exts = claim_response.get("extension") or []
    identifier = get_identifier(claim_response)
    pre_auth_period = claim_response.get("preAuthPeriod") or {}
    transfer_period = (_find_extension(exts, "extension-transferAuthorizationPeriod") or {}).get("valuePeriod") or {}
    prescription = _find_extension(exts, "extension-prescription")
    prescription_ref = (prescription or {}).get("valueReference") or {}

    return {
        "identifier_system": identifier["system"],
        "identifier_value": identifier["value"],
        "status": claim_response.get("status") or "active",
        "claim_type": _first_coding(claim_response.get("type")).get("code"),
        "claim_subtype": _first_coding(claim_response.get("subType")).get("code"),
        "use_field": claim_response.get("use") or "preauthorization",
        "outcome": claim_response.get("outcome"),
        "disposition": claim_response.get("disposition"),
        "auth_reason": _extension_code(exts, "extension-advancedAuth-reason"),
        "adjudication_outcome": _extension_code(exts, "extension-adjudication-outcome"),
        "reissue_reason": _extension_code(exts, "extension-adjudication-reissue"),
        "is_newborn": _extension_bool(exts, "extension-newborn"),
        "patient_reference": _reference(claim_response.get("patient")),
        "insurer_reference": _reference(claim_response.get("insurer")),
        "service_provider_reference": _extension_reference(exts, "extension-serviceProvider"),
        "referring_provider_reference": _extension_reference(exts, "extension-referringProvider"),
        "referring_provider_display": _extension_display(exts, "extension-referringProvider"),
        "pre_auth_ref": claim_response.get("preAuthRef"),
        "pre_auth_period_start": pre_auth_period.get("start"),
        "pre_auth_period_end": pre_auth_period.get("end"),
        "created_date": claim_response.get("created"),
        "prescription_reference": {
            "reference": prescription_ref.get("reference"),
            "system": (prescription_ref.get("identifier") or {}).get("system"),
            "value": (prescription_ref.get("identifier") or {}).get("value"),
        } if prescription else None,
        "transfer_auth_number": _extension_string(exts, "extension-transferAuthorizationNumber"),
        "transfer_auth_period_start": transfer_period.get("start"),
        "transfer_auth_period_end": transfer_period.get("end"),
        "transfer_auth_provider": _extension_reference(exts, "extension-transferAuthorizationProvider"),
        "diagnoses": parse_diagnoses(exts),
        "supporting_info": parse_supporting_info(exts),
        "add_items": parse_add_items(claim_response.get("addItem")),
        "totals": parse_totals(claim_response.get("total")),
        "insurance": claim_response.get("insurance"),
        "process_notes": claim_response.get("processNote"),
        "response_bundle": claim_response,
    }
