"""
System Poll Service
Runs one poll against NPHIES for a tenant schema: fetch queued messages,
classify, correlate and apply each one, and record the run in poll_logs /
poll_messages.

Each message is applied and logged in its own transaction so one bad message
never rolls back the others. Database connectivity errors abort the run.
"""
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from nphies_poll.config import settings
from nphies_poll.models.poll_db import (
    PollLogDB,
    PollMessageDB,
    PollStatus,
    ProcessingStatus,
    TriggerType,
)
from nphies_poll.models.poll_dto import KindSummary, PollMessageSummary, PollRunResult, PollStats
from nphies_poll.services.message_classifier import ClassifiedMessage, MessageType, classify_message
from nphies_poll.services.message_correlator import MessageCorrelator
from nphies_poll.services.message_extractor import build_message_descriptors, is_bundle
from nphies_poll.services.message_updater import MessageUpdater, UpdateContext
from nphies_poll.services.nphies_gateway import GatewayResult, NphiesGateway
from nphies_poll.services.poll_bundle_builder import build_poll_bundle
from nphies_poll.services.poll_lease import PollLease, PollLeaseError
from nphies_poll.services.provider_directory import resolve_provider
from nphies_poll.services.stale_poll_reclaimer import StalePollReclaimer
from nphies_poll.utils.audit_logger import log_poll_event

logger = logging.getLogger(__name__)

NO_PAYLOAD_REASON = "No recognized payload resource"


def _is_connection_error(error: Exception) -> bool:
    from nphies_poll.services.db import is_connection_error
    return is_connection_error(error)


def _resource_type(message: Dict[str, Any], classified: Optional[ClassifiedMessage]) -> str:
    if classified is not None and classified.resource_type:
        return classified.resource_type
    for entry in (message or {}).get("entry") or []:
        resource_type = ((entry or {}).get("resource") or {}).get("resourceType")
        if resource_type and resource_type != "MessageHeader":
            return resource_type
    return "unknown"


def _summarize(row: PollMessageDB) -> PollMessageSummary:
    return PollMessageSummary(
        message_header_id=row.message_header_id,
        resource_type=row.resource_type,
        message_type=row.message_type,
        matched=bool(row.matched),
        processing_status=row.processing_status,
        match_strategy=row.match_strategy,
        matched_table=row.matched_table,
        matched_record_id=row.matched_record_id,
        error=row.processing_error,
    )


class _RunFatal(Exception):
    """Carries a fatal error out of the per-message loop"""

    def __init__(self, original: Exception):
        super().__init__(str(original))
        self.original = original


class SystemPollService:
    """
    Poll orchestrator.

    Collaborators are injectable so the service can run against a test
    database and a fake gateway.
    """

    def __init__(
        self,
        gateway: Optional[NphiesGateway] = None,
        correlator: Optional[MessageCorrelator] = None,
        updater: Optional[MessageUpdater] = None,
        session_factory: Optional[Callable[[str], Session]] = None,
        reclaimer: Optional[StalePollReclaimer] = None,
        lease_factory: Optional[Callable[[str], PollLease]] = None,
    ):
        if session_factory is None:
            from nphies_poll.services.db import get_tenant_session
            session_factory = get_tenant_session
        self.session_factory = session_factory
        self.gateway = gateway or NphiesGateway()
        self.correlator = correlator or MessageCorrelator()
        self.updater = updater or MessageUpdater()
        self.reclaimer = reclaimer or StalePollReclaimer(session_factory=session_factory)
        self.lease_factory = lease_factory or (
            lambda schema: PollLease(schema, session_factory=session_factory)
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def execute_poll(
        self,
        schema_name: Optional[str] = None,
        trigger_type: str = TriggerType.MANUAL,
    ) -> PollRunResult:
        """
        Execute one poll for ``schema_name``.

        Returns:
            PollRunResult; skipped=True (and no poll_logs row) when another
            poll holds the schema's lease
        """
        schema_name = schema_name or settings.poll_default_schema
        if trigger_type not in TriggerType.ALL:
            raise ValueError(f"Invalid trigger_type: {trigger_type}")

        poll_id = str(uuid.uuid4())
        logger.info(f"Starting {trigger_type} poll {poll_id} for schema {schema_name}")

        try:
            self.reclaimer.reclaim(schema_name)
        except Exception as e:
            logger.error(f"Stale poll reclaim failed for schema {schema_name}: {e}", exc_info=True)

        lease = self.lease_factory(schema_name)
        try:
            with lease.hold(poll_id) as held:
                result = self._run(poll_id, schema_name, trigger_type, held)
        except PollLeaseError as e:
            logger.info(f"Skipping poll for schema {schema_name}: {e}")
            log_poll_event(
                action="skipped",
                outcome="skipped",
                schema_name=schema_name,
                trigger_type=trigger_type,
                details=str(e),
            )
            return PollRunResult(
                success=False,
                skipped=True,
                schema_name=schema_name,
                message=str(e),
            )
        except Exception as e:
            # Lease bookkeeping itself failed; no run was started
            logger.error(f"Poll {poll_id} could not start for schema {schema_name}: {e}", exc_info=True)
            return PollRunResult(
                success=False,
                poll_id=poll_id,
                schema_name=schema_name,
                status=PollStatus.ERROR,
                message="Poll could not start",
                errors=[{"type": "fatal", "message": str(e)}],
            )

        log_poll_event(
            action="run",
            outcome=result.status or PollStatus.ERROR,
            poll_id=poll_id,
            schema_name=schema_name,
            trigger_type=trigger_type,
            stats=result.stats.model_dump(by_alias=True),
            details=result.message,
        )
        return result

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _run(self, poll_id: str, schema_name: str, trigger_type: str, lease: PollLease) -> PollRunResult:
        started_at = datetime.utcnow()
        start = time.monotonic()
        stats = PollStats()
        errors: List[Dict[str, Any]] = []
        messages: List[PollMessageSummary] = []
        poll_log_id: Optional[int] = None

        db = self.session_factory(schema_name)
        try:
            provider = resolve_provider(db)
            poll_bundle = build_poll_bundle(
                provider.nphies_id,
                provider_name=provider.name,
                message_types=settings.poll_message_types_list,
                count=settings.nphies_poll_count,
            )
            poll_log = PollLogDB(
                poll_id=poll_id,
                schema_name=schema_name,
                provider_nphies_id=provider.nphies_id,
                trigger_type=trigger_type,
                status=PollStatus.IN_PROGRESS,
                poll_bundle=poll_bundle,
                started_at=started_at,
            )
            db.add(poll_log)
            db.commit()
            poll_log_id = poll_log.id

            gateway_result = self.gateway.send_poll(poll_bundle)
            if not gateway_result.success:
                errors = self._gateway_errors(gateway_result)
                return self._finish(
                    db, poll_log, PollStatus.ERROR, stats, errors, start,
                    response=gateway_result.data,
                    response_code=gateway_result.response_code,
                    message="NPHIES poll request failed",
                )

            response = gateway_result.data
            if not is_bundle(response):
                errors.append({
                    "type": "structural",
                    "message": "Poll response is missing or is not a Bundle",
                })

            descriptors = build_message_descriptors(response)
            stats.messages_received = len(descriptors)
            context = UpdateContext(schema_name=schema_name, poll_bundle=poll_bundle)
            for message in descriptors:
                if not lease.renew():
                    # Another poll owns the schema now; unprocessed messages stay in response_bundle
                    errors.append({
                        "type": "lease_lost",
                        "message": f"Poll lease lost after {len(messages)} of {stats.messages_received} message(s)",
                    })
                    return self._finish(
                        db, poll_log, PollStatus.ERROR, stats, errors, start,
                        response=response,
                        response_code=gateway_result.response_code,
                        message="Poll lease lost during processing",
                        messages=messages,
                    )
                self._process_message(db, poll_log_id, message, context, stats, errors, messages)

            status = PollStatus.SUCCESS if stats.messages_received > 0 else PollStatus.NO_MESSAGES
            return self._finish(
                db, poll_log, status, stats, errors, start,
                response=response,
                response_code=gateway_result.response_code,
                message=f"Processed {stats.messages_processed} of {stats.messages_received} message(s)",
                messages=messages,
            )

        except Exception as e:
            original = e.original if isinstance(e, _RunFatal) else e
            logger.error(f"Poll {poll_id} aborted: {original}", exc_info=True)
            try:
                db.rollback()
            except Exception as rollback_error:
                logger.warning(f"Failed to rollback after fatal poll error: {rollback_error}")
            errors.append({"type": "fatal", "message": str(original)})
            return self._finish_fatal(poll_id, poll_log_id, schema_name, stats, errors, start, messages)
        finally:
            db.close()

    @staticmethod
    def _gateway_errors(gateway_result: GatewayResult) -> List[Dict[str, Any]]:
        errors = [dict(err, type="nphies_error") for err in gateway_result.errors or []]
        return errors or [{"type": "nphies_error", "message": "NPHIES poll request failed"}]

    # ------------------------------------------------------------------
    # Per message
    # ------------------------------------------------------------------

    def _process_message(
        self,
        db: Session,
        poll_log_id: int,
        message: Dict[str, Any],
        context: UpdateContext,
        stats: PollStats,
        errors: List[Dict[str, Any]],
        messages: List[PollMessageSummary],
    ) -> None:
        classified: Optional[ClassifiedMessage] = None
        try:
            classified = classify_message(message)
            row = self._apply_message(db, classified, message, context)
            row.poll_log_id = poll_log_id
            db.add(row)
            db.commit()
        except Exception as e:
            db.rollback()
            if _is_connection_error(e):
                raise _RunFatal(e)
            logger.error(f"Error processing polled message: {e}", exc_info=True)
            errors.append({
                "type": "message_processing",
                "message": str(e),
                "message_header_id": classified.message_header_id if classified else None,
            })
            messages.append(self._log_failed_message(db, poll_log_id, message, classified, str(e)))
            return

        messages.append(_summarize(row))
        stats.messages_processed += 1
        if row.matched:
            stats.messages_matched += 1
        else:
            stats.messages_unmatched += 1

        summary = stats.processing_summary.setdefault(row.resource_type, KindSummary())
        if row.processing_status == ProcessingStatus.NEW_RECORD:
            summary.new_records += 1
        elif row.matched:
            summary.matched += 1
        else:
            summary.unmatched += 1

    def _apply_message(
        self,
        db: Session,
        classified: ClassifiedMessage,
        message: Dict[str, Any],
        context: UpdateContext,
    ) -> PollMessageDB:
        """Correlate and apply one message; returns its unsaved poll_messages row."""
        row = PollMessageDB(
            message_header_id=classified.message_header_id,
            response_identifier=classified.response_identifier,
            event_code=classified.event_code,
            resource_type=_resource_type(message, classified),
            resource_data=message,
            message_type=classified.classification,
            matched=False,
        )

        if classified.kind is None:
            row.processing_status = ProcessingStatus.UNMATCHED
            row.processing_error = NO_PAYLOAD_REASON
            return row

        if classified.classification == MessageType.SOLICITED:
            correlation = self.correlator.correlate_solicited(
                classified.response_identifier, classified.payload, db
            )
        else:
            correlation = self.correlator.handle_new_inbound_event(message, classified.payload, db)

        if correlation.unmatched:
            logger.info(
                f"Unmatched {classified.classification} {row.resource_type}: {correlation.reason}"
            )
            row.processing_status = ProcessingStatus.UNMATCHED
            row.processing_error = correlation.reason
            return row

        update = self.updater.apply(
            db,
            classified.kind,
            correlation,
            classified.payload,
            UpdateContext(
                schema_name=context.schema_name,
                poll_bundle=context.poll_bundle,
                message_bundle=message,
            ),
        )

        row.matched = True
        row.matched_table = correlation.table
        row.matched_record_id = correlation.record_id if correlation.record_id is not None else update.record_id
        row.match_strategy = correlation.strategy
        row.processing_status = ProcessingStatus.NEW_RECORD if update.is_new else ProcessingStatus.PROCESSED
        return row

    def _log_failed_message(
        self,
        db: Session,
        poll_log_id: int,
        message: Dict[str, Any],
        classified: Optional[ClassifiedMessage],
        error: str,
    ) -> PollMessageSummary:
        row = PollMessageDB(
            poll_log_id=poll_log_id,
            message_header_id=classified.message_header_id if classified else None,
            response_identifier=classified.response_identifier if classified else None,
            event_code=classified.event_code if classified else None,
            resource_type=_resource_type(message, classified),
            resource_data=message,
            message_type=MessageType.UNKNOWN,
            matched=False,
            processing_status=ProcessingStatus.ERROR,
            processing_error=error,
        )
        try:
            db.add(row)
            db.commit()
        except Exception as e:
            db.rollback()
            if _is_connection_error(e):
                raise _RunFatal(e)
            logger.error(f"Failed to log errored poll message: {e}", exc_info=True)
        return _summarize(row)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _finish(
        self,
        db: Session,
        poll_log: PollLogDB,
        status: str,
        stats: PollStats,
        errors: List[Dict[str, Any]],
        start: float,
        response: Optional[Dict[str, Any]] = None,
        response_code: Optional[str] = None,
        message: Optional[str] = None,
        messages: Optional[List[PollMessageSummary]] = None,
    ) -> PollRunResult:
        duration_ms = int((time.monotonic() - start) * 1000)
        messages = messages or []

        # The row may have been closed behind our back (e.g. reclaimed as abandoned)
        db.refresh(poll_log, with_for_update=True)
        if poll_log.status != PollStatus.IN_PROGRESS:
            closed_status = poll_log.status
            closed_errors = list(poll_log.errors or [])
            db.rollback()
            logger.warning(
                f"Poll {poll_log.poll_id} was already closed as {closed_status}; "
                f"keeping it and dropping this run's {status} outcome"
            )
            return PollRunResult(
                success=False,
                poll_id=poll_log.poll_id,
                poll_log_id=poll_log.id,
                schema_name=poll_log.schema_name,
                status=closed_status,
                message=f"Run was closed as {closed_status} before it finished",
                response_code=response_code,
                stats=stats,
                messages=messages,
                errors=closed_errors + errors,
                duration_ms=duration_ms,
            )

        poll_log.status = status
        poll_log.response_bundle = response
        poll_log.response_code = response_code
        poll_log.messages_received = stats.messages_received
        poll_log.messages_processed = stats.messages_processed
        poll_log.messages_matched = stats.messages_matched
        poll_log.messages_unmatched = stats.messages_unmatched
        poll_log.processing_summary = {
            kind: summary.model_dump(by_alias=True) for kind, summary in stats.processing_summary.items()
        }
        poll_log.errors = errors
        poll_log.completed_at = datetime.utcnow()
        poll_log.duration_ms = duration_ms
        db.commit()

        logger.info(
            f"Poll {poll_log.poll_id} finished: status={status}, received={stats.messages_received}, "
            f"processed={stats.messages_processed}, matched={stats.messages_matched}, "
            f"unmatched={stats.messages_unmatched}, duration={duration_ms}ms"
        )
        return PollRunResult(
            success=status != PollStatus.ERROR,
            poll_id=poll_log.poll_id,
            poll_log_id=poll_log.id,
            schema_name=poll_log.schema_name,
            status=status,
            message=message,
            response_code=response_code,
            stats=stats,
            messages=messages,
            errors=errors,
            duration_ms=duration_ms,
        )

    def _finish_fatal(
        self,
        poll_id: str,
        poll_log_id: Optional[int],
        schema_name: str,
        stats: PollStats,
        errors: List[Dict[str, Any]],
        start: float,
        messages: Optional[List[PollMessageSummary]] = None,
    ) -> PollRunResult:
        """Force the run to error on a fresh session; rows already committed stay."""
        duration_ms = int((time.monotonic() - start) * 1000)
        if poll_log_id is not None:
            db = None
            try:
                db = self.session_factory(schema_name)
                poll_log = db.get(PollLogDB, poll_log_id)
                if poll_log is not None and poll_log.status == PollStatus.IN_PROGRESS:
                    poll_log.status = PollStatus.ERROR
                    poll_log.messages_received = stats.messages_received
                    poll_log.messages_processed = stats.messages_processed
                    poll_log.messages_matched = stats.messages_matched
                    poll_log.messages_unmatched = stats.messages_unmatched
                    poll_log.errors = errors
                    poll_log.completed_at = datetime.utcnow()
                    poll_log.duration_ms = duration_ms
                    db.commit()
            except Exception as e:
                if db is not None:
                    db.rollback()
                # The stale poll reclaimer closes the run later
                logger.error(f"Could not mark poll {poll_id} as error: {e}", exc_info=True)
            finally:
                if db is not None:
                    db.close()

        return PollRunResult(
            success=False,
            poll_id=poll_id,
            poll_log_id=poll_log_id,
            schema_name=schema_name,
            status=PollStatus.ERROR,
            message="Poll aborted by a fatal error",
            stats=stats,
            messages=messages or [],
            errors=errors,
            duration_ms=duration_ms,
        )
