"""
NPHIES Endpoint Gateway
Sends a poll bundle to the exchange's $process-message endpoint and reports
the outcome as a GatewayResult. Never raises for remote or transport failures
and never retries; the next poll run is the retry.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from nphies_poll.config import settings

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
FAILED_RESPONSE_CODES = ("fatal-error", "transient-error")
FAILED_SEVERITIES = ("error", "fatal")


@dataclass
class GatewayResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    response_code: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _top_level_header(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for entry in body.get("entry") or []:
        resource = (entry or {}).get("resource") or {}
        if resource.get("resourceType") == "MessageHeader":
            return resource
    return None


def _outcome_issues(outcome: Dict[str, Any]) -> List[Dict[str, Any]]:
    issues = []
    for issue in outcome.get("issue") or []:
        if (issue or {}).get("severity") in FAILED_SEVERITIES:
            coding = ((issue.get("details") or {}).get("coding") or [{}])[0]
            issues.append({
                "type": "nphies_error",
                "code": coding.get("code") or issue.get("code"),
                "message": coding.get("display") or issue.get("diagnostics") or "NPHIES returned an error",
            })
    return issues


def evaluate_response(status_code: int, body: Any) -> GatewayResult:
    """
    Decide whether a poll response is usable.

    Failure when the status is not 2xx, the body is a top-level OperationOutcome
    with error/fatal issues, or the top-level MessageHeader reports a
    fatal-error/transient-error response code. The body is kept in ``data``
    either way so the run can persist it for audit.
    """
    data = body if isinstance(body, dict) else None
    response_code: Optional[str] = str(status_code)

    header = _top_level_header(data) if data and data.get("resourceType") == "Bundle" else None
    header_code = ((header or {}).get("response") or {}).get("code")
    if header_code:
        response_code = header_code

    if not 200 <= status_code < 300:
        errors = _outcome_issues(data) if data and data.get("resourceType") == "OperationOutcome" else []
        if not errors:
            errors = [{"type": "nphies_error", "code": str(status_code), "message": f"HTTP {status_code}"}]
        return GatewayResult(success=False, data=data, response_code=response_code, errors=errors)

    if data and data.get("resourceType") == "OperationOutcome":
        errors = _outcome_issues(data)
        if errors:
            return GatewayResult(success=False, data=data, response_code=response_code, errors=errors)

    if header_code in FAILED_RESPONSE_CODES:
        return GatewayResult(
            success=False,
            data=data,
            response_code=response_code,
            errors=[{
                "type": "nphies_error",
                "code": header_code,
                "message": f"NPHIES responded with {header_code}",
            }],
        )

    return GatewayResult(success=True, data=data, response_code=response_code)


class NphiesGateway:
    """
    Thin synchronous client for the NPHIES exchange.
    The poll orchestrator runs in a worker thread, so a blocking client is used.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        read_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or settings.nphies_base_url).rstrip("/")
        read_timeout = read_timeout or settings.nphies_timeout_seconds
        connect_timeout = connect_timeout or settings.nphies_connect_timeout_seconds
        # httpx.Timeout requires either a default or all four parameters (connect, read, write, pool)
        self.timeout = httpx.Timeout(timeout=read_timeout, connect=connect_timeout)
        self._client = client

        logger.info(
            f"NphiesGateway initialized: base_url={self.base_url}, "
            f"timeout=connect:{connect_timeout}s,read:{read_timeout}s"
        )

    @property
    def process_message_url(self) -> str:
        return f"{self.base_url}/$process-message"

    def _post(self, bundle: Dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}
        if self._client is not None:
            return self._client.post(self.process_message_url, json=bundle, headers=headers)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.process_message_url, json=bundle, headers=headers)

    def send_poll(self, bundle: Dict[str, Any]) -> GatewayResult:
        """
        POST a poll bundle and evaluate the response.

        Returns:
            GatewayResult; success=False for transport errors and remote rejections
        """
        try:
            response = self._post(bundle)
        except httpx.TimeoutException as e:
            logger.warning(f"NPHIES poll timed out: {e}")
            return GatewayResult(
                success=False,
                errors=[{"type": "nphies_error", "code": "timeout", "message": f"NPHIES request timed out: {e}"}],
            )
        except httpx.RequestError as e:
            logger.warning(f"NPHIES poll request error: {e}")
            return GatewayResult(
                success=False,
                errors=[{"type": "nphies_error", "code": "network", "message": f"NPHIES request failed: {e}"}],
            )

        try:
            body = response.json() if response.content else None
        except ValueError:
            logger.warning(f"NPHIES returned a non-JSON body (HTTP {response.status_code})")
            body = None

        result = evaluate_response(response.status_code, body)
        if result.success:
            logger.info(f"NPHIES poll succeeded: response_code={result.response_code}")
        else:
            logger.warning(
                f"NPHIES poll rejected: response_code={result.response_code} errors={result.errors}"
            )
        return result
