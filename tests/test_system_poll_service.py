"""
Integration tests for SystemPollService
Real correlator, updater, lease and reclaimer on SQLite; the NPHIES gateway is mocked.
"""
import json
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from nphies_poll.config import settings
from nphies_poll.models import (
    AdvancedAuthorizationDB,
    CommunicationDB,
    CommunicationRequestDB,
    PollLeaseDB,
    PollLogDB,
    PollMessageDB,
    PriorAuthorizationDB,
    PriorAuthorizationResponseDB,
)
from nphies_poll.models.poll_db import PollStatus, ProcessingStatus
from nphies_poll.services.message_updater import MessageUpdater
from nphies_poll.services.nphies_gateway import GatewayResult
from nphies_poll.services.poll_lease import PollLease
from nphies_poll.services.system_poll_service import SystemPollService

from fhir_fixtures import (
    claim_response,
    communication,
    communication_request,
    message_bundle,
    poll_response,
)


@pytest.fixture
def gateway():
    gateway = Mock()
    gateway.send_poll.return_value = GatewayResult(success=True, data=poll_response(), response_code="ok")
    return gateway


@pytest.fixture
def updater():
    return MessageUpdater()


@pytest.fixture
def service(gateway, updater, session_factory):
    return SystemPollService(gateway=gateway, updater=updater, session_factory=session_factory)


def _respond_with(gateway, *resources):
    gateway.send_poll.return_value = GatewayResult(success=True, data=poll_response(*resources), response_code="ok")


def _seed(session_factory, *records):
    db = session_factory()
    db.add_all(records)
    db.commit()
    ids = [r.id for r in records]
    db.close()
    return ids


def _messages(session_factory, poll_log_id):
    db = session_factory()
    rows = db.query(PollMessageDB).filter_by(poll_log_id=poll_log_id).order_by(PollMessageDB.id).all()
    db.close()
    return rows


def _poll_log(session_factory, poll_log_id):
    db = session_factory()
    row = db.get(PollLogDB, poll_log_id)
    db.close()
    return row


class TestPollRunScenarios:
    """End-to-end poll runs"""

    def test_solicited_response_updates_prior_authorization(self, service, gateway, session_factory):
        (pa_id,) = _seed(session_factory, PriorAuthorizationDB(request_number="REQ-1", outbound_message_header_id="hdr-out-1"))
        _respond_with(gateway, message_bundle(claim_response("resp-1", marker="approved"), response_identifier="hdr-out-1"))

        result = service.execute_poll("public")

        assert result.success is True
        assert result.status == PollStatus.SUCCESS
        assert result.stats.messages_received == 1
        assert result.stats.messages_processed == 1
        assert result.stats.messages_matched == 1
        assert result.stats.processing_summary["ClaimResponse"].matched == 1
        assert len(result.messages) == 1
        summary = result.messages[0]
        assert summary.resource_type == "ClaimResponse"
        assert summary.message_type == "solicited"
        assert summary.matched is True
        assert summary.match_strategy == "message_header_id"
        assert (summary.matched_table, summary.matched_record_id) == ("prior_authorizations", pa_id)
        assert summary.processing_status == ProcessingStatus.PROCESSED

        rows = _messages(session_factory, result.poll_log_id)
        assert len(rows) == 1
        assert rows[0].message_type == "solicited"
        assert rows[0].processing_status == ProcessingStatus.PROCESSED
        assert (rows[0].matched_table, rows[0].matched_record_id) == ("prior_authorizations", pa_id)
        assert rows[0].match_strategy == "message_header_id"

        db = session_factory()
        assert db.get(PriorAuthorizationDB, pa_id).status == "approved"
        db.close()

        poll_log = _poll_log(session_factory, result.poll_log_id)
        assert poll_log.status == PollStatus.SUCCESS
        assert poll_log.completed_at is not None
        assert poll_log.processing_summary == {"ClaimResponse": {"matched": 1, "unmatched": 0, "newRecords": 0}}

    def test_ambiguous_solicited_response_is_unmatched(self, service, gateway, session_factory):
        (pa_id,) = _seed(
            session_factory,
            PriorAuthorizationDB(outbound_message_header_id="dup"),
            PriorAuthorizationDB(outbound_message_header_id="dup"),
        )[:1]
        _respond_with(gateway, message_bundle(claim_response("resp-1", marker="approved"), response_identifier="dup"))

        result = service.execute_poll("public")

        assert result.success is True
        assert result.stats.messages_unmatched == 1
        rows = _messages(session_factory, result.poll_log_id)
        assert rows[0].processing_status == ProcessingStatus.UNMATCHED
        assert "Ambiguous" in rows[0].processing_error
        db = session_factory()
        assert db.get(PriorAuthorizationDB, pa_id).status == "pending"
        db.close()

    def test_unsolicited_advanced_authorization_is_new_then_processed(self, service, gateway, session_factory):
        _respond_with(gateway, message_bundle(claim_response("aa-resp", identifier_value="AA-1", advanced=True)))

        first = service.execute_poll("public")
        second = service.execute_poll("public")

        assert _messages(session_factory, first.poll_log_id)[0].processing_status == ProcessingStatus.NEW_RECORD
        assert first.stats.processing_summary["ClaimResponse"].new_records == 1
        assert _messages(session_factory, second.poll_log_id)[0].processing_status == ProcessingStatus.PROCESSED
        db = session_factory()
        records = db.query(AdvancedAuthorizationDB).all()
        assert len(records) == 1
        assert records[0].identifier_value == "AA-1"
        assert records[0].schema_name == "public"
        assert records[0].poll_bundle["resourceType"] == "Bundle"
        db.close()

    def test_communication_request_then_communication_acknowledges(self, service, gateway, session_factory):
        (pa_id,) = _seed(session_factory, PriorAuthorizationDB(request_number="REQ-1"))
        _respond_with(
            gateway,
            message_bundle(communication_request("comreq-1", about_identifier="REQ-1"), event_code="communication-request"),
            message_bundle(communication("com-1", about_reference="CommunicationRequest/comreq-1"), event_code="communication"),
        )

        result = service.execute_poll("public")

        assert result.stats.messages_processed == 2
        assert result.stats.messages_matched == 2
        assert set(result.stats.processing_summary) == {"CommunicationRequest", "Communication"}
        db = session_factory()
        request = db.query(CommunicationRequestDB).one()
        assert request.prior_auth_id == pa_id
        assert request.acknowledgment_received is True
        stored = db.query(CommunicationDB).one()
        assert stored.communication_request_id == request.id
        assert stored.prior_auth_id == pa_id
        db.close()

    def test_unrecognized_payload_is_unmatched(self, service, gateway, session_factory):
        _respond_with(gateway, message_bundle({"resourceType": "Patient", "id": "p1"}))

        result = service.execute_poll("public")

        rows = _messages(session_factory, result.poll_log_id)
        assert rows[0].processing_status == ProcessingStatus.UNMATCHED
        assert rows[0].processing_error == "No recognized payload resource"
        assert rows[0].resource_type == "Patient"

    def test_bare_top_level_resource_is_processed_as_unsolicited(self, service, gateway, session_factory):
        (pa_id,) = _seed(session_factory, PriorAuthorizationDB(request_number="REQ-1"))
        _respond_with(gateway, communication_request("comreq-d", about_identifier="REQ-1"))

        result = service.execute_poll("public")

        assert result.status == PollStatus.SUCCESS
        assert result.stats.messages_received == 1
        assert result.stats.messages_processed == 1
        assert result.stats.messages_matched == 1
        assert set(result.stats.processing_summary) == {"CommunicationRequest"}
        assert result.messages[0].message_header_id is None
        assert result.messages[0].message_type == "unsolicited"

        rows = _messages(session_factory, result.poll_log_id)
        assert len(rows) == 1
        assert rows[0].message_type == "unsolicited"
        assert rows[0].resource_type == "CommunicationRequest"
        db = session_factory()
        request = db.query(CommunicationRequestDB).one()
        assert request.prior_auth_id == pa_id
        db.close()

    def test_same_response_polled_twice_is_applied_once(self, service, gateway, session_factory):
        (pa_id,) = _seed(session_factory, PriorAuthorizationDB(request_number="REQ-1", outbound_message_header_id="hdr-out-1"))
        _respond_with(gateway, message_bundle(claim_response("resp-1", marker="approved"), response_identifier="hdr-out-1"))

        first = service.execute_poll("public")
        db = session_factory()
        updated_at = db.get(PriorAuthorizationDB, pa_id).updated_at
        db.close()
        second = service.execute_poll("public")

        assert first.status == second.status == PollStatus.SUCCESS
        rows = _messages(session_factory, first.poll_log_id) + _messages(session_factory, second.poll_log_id)
        assert [r.processing_status for r in rows] == [ProcessingStatus.PROCESSED, ProcessingStatus.PROCESSED]
        db = session_factory()
        assert db.query(PollMessageDB).count() == 2
        assert db.query(PriorAuthorizationResponseDB).filter_by(prior_auth_id=pa_id).count() == 1
        record = db.get(PriorAuthorizationDB, pa_id)
        assert record.status == "approved"
        assert record.updated_at == updated_at
        db.close()


class TestPollRunOutcomes:
    """Terminal statuses and error handling"""

    def test_empty_response_is_no_messages(self, service, session_factory):
        result = service.execute_poll("public")

        assert result.success is True
        assert result.status == PollStatus.NO_MESSAGES
        assert result.errors == []
        assert _poll_log(session_factory, result.poll_log_id).status == PollStatus.NO_MESSAGES

    def test_non_bundle_response_records_structural_error(self, service, gateway, session_factory):
        gateway.send_poll.return_value = GatewayResult(success=True, data=None, response_code="200")

        result = service.execute_poll("public")

        assert result.status == PollStatus.NO_MESSAGES
        assert [e["type"] for e in result.errors] == ["structural"]
        assert _poll_log(session_factory, result.poll_log_id).errors[0]["type"] == "structural"

    def test_gateway_failure_is_error_without_messages(self, service, gateway, session_factory):
        gateway.send_poll.return_value = GatewayResult(
            success=False,
            response_code="500",
            errors=[{"type": "nphies_error", "code": "500", "message": "HTTP 500"}],
        )

        result = service.execute_poll("public")

        assert result.success is False
        assert result.status == PollStatus.ERROR
        assert result.errors[0]["type"] == "nphies_error"
        poll_log = _poll_log(session_factory, result.poll_log_id)
        assert poll_log.status == PollStatus.ERROR
        assert poll_log.response_code == "500"
        assert _messages(session_factory, result.poll_log_id) == []

    def test_one_failing_message_does_not_roll_back_the_others(self, service, gateway, updater, session_factory):
        pa_ids = _seed(
            session_factory,
            PriorAuthorizationDB(outbound_message_header_id="hdr-a"),
            PriorAuthorizationDB(outbound_message_header_id="hdr-b"),
        )
        _respond_with(
            gateway,
            message_bundle(claim_response("bad", marker="approved"), response_identifier="hdr-a"),
            message_bundle(claim_response("good", marker="approved"), response_identifier="hdr-b"),
        )
        real_apply = updater.apply

        def flaky_apply(db, kind, correlation, payload, context=None):
            if payload["id"] == "bad":
                raise ValueError("cannot apply")
            return real_apply(db, kind, correlation, payload, context)

        with patch.object(updater, "apply", side_effect=flaky_apply):
            result = service.execute_poll("public")

        assert result.success is True
        assert result.status == PollStatus.SUCCESS
        assert result.stats.messages_received == 2
        assert result.stats.messages_processed == 1
        assert [e["type"] for e in result.errors] == ["message_processing"]

        rows = _messages(session_factory, result.poll_log_id)
        assert [r.processing_status for r in rows] == [ProcessingStatus.ERROR, ProcessingStatus.PROCESSED]
        assert rows[0].message_type == "unknown"
        assert rows[0].processing_error == "cannot apply"
        assert [m.processing_status for m in result.messages] == [ProcessingStatus.ERROR, ProcessingStatus.PROCESSED]
        assert result.messages[0].error == "cannot apply"
        assert result.messages[0].matched is False
        assert result.messages[1].matched_record_id == pa_ids[1]

        db = session_factory()
        assert db.get(PriorAuthorizationDB, pa_ids[0]).status == "pending"
        assert db.get(PriorAuthorizationDB, pa_ids[1]).status == "approved"
        db.close()

    def test_database_connection_error_aborts_run(self, service, gateway, updater, session_factory):
        _seed(session_factory, PriorAuthorizationDB(outbound_message_header_id="hdr-a"))
        _respond_with(gateway, message_bundle(claim_response("r1"), response_identifier="hdr-a"))
        lost = OperationalError("UPDATE prior_authorizations", {}, Exception("server closed the connection unexpectedly"))

        with patch.object(updater, "apply", side_effect=lost):
            result = service.execute_poll("public")

        assert result.success is False
        assert result.status == PollStatus.ERROR
        assert result.errors[-1]["type"] == "fatal"
        poll_log = _poll_log(session_factory, result.poll_log_id)
        assert poll_log.status == PollStatus.ERROR
        assert poll_log.errors[-1]["type"] == "fatal"
        assert poll_log.completed_at is not None

    def test_statement_timeout_only_fails_its_own_message(self, service, gateway, updater, session_factory):
        pa_ids = _seed(
            session_factory,
            PriorAuthorizationDB(outbound_message_header_id="hdr-a"),
            PriorAuthorizationDB(outbound_message_header_id="hdr-b"),
        )
        _respond_with(
            gateway,
            message_bundle(claim_response("slow", marker="approved"), response_identifier="hdr-a"),
            message_bundle(claim_response("fast", marker="approved"), response_identifier="hdr-b"),
        )
        real_apply = updater.apply

        class QueryCanceled(Exception):
            pgcode = "57014"

        def slow_apply(db, kind, correlation, payload, context=None):
            if payload["id"] == "slow":
                raise OperationalError(
                    "UPDATE prior_authorizations", {}, QueryCanceled("canceling statement due to statement timeout")
                )
            return real_apply(db, kind, correlation, payload, context)

        with patch.object(updater, "apply", side_effect=slow_apply):
            result = service.execute_poll("public")

        assert result.success is True
        assert result.status == PollStatus.SUCCESS
        assert result.stats.messages_processed == 1
        assert [e["type"] for e in result.errors] == ["message_processing"]
        rows = _messages(session_factory, result.poll_log_id)
        assert [r.processing_status for r in rows] == [ProcessingStatus.ERROR, ProcessingStatus.PROCESSED]
        db = session_factory()
        assert db.get(PriorAuthorizationDB, pa_ids[1]).status == "approved"
        db.close()

    def test_lost_lease_stops_processing(self, service, gateway, updater, session_factory):
        (pa_id,) = _seed(session_factory, PriorAuthorizationDB(outbound_message_header_id="hdr-a"))
        _respond_with(gateway, message_bundle(claim_response("r1", marker="approved"), response_identifier="hdr-a"))

        with patch.object(PollLease, "renew", return_value=False), \
                patch.object(updater, "apply") as apply:
            result = service.execute_poll("public")

        apply.assert_not_called()
        assert result.success is False
        assert result.status == PollStatus.ERROR
        assert [e["type"] for e in result.errors] == ["lease_lost"]
        assert result.messages == []
        poll_log = _poll_log(session_factory, result.poll_log_id)
        assert poll_log.status == PollStatus.ERROR
        assert poll_log.messages_received == 1
        assert poll_log.response_bundle["resourceType"] == "Bundle"
        assert _messages(session_factory, result.poll_log_id) == []
        db = session_factory()
        assert db.get(PriorAuthorizationDB, pa_id).status == "pending"
        db.close()

    def test_lease_is_renewed_per_message(self, service, gateway):
        _respond_with(gateway, message_bundle(claim_response("a")), message_bundle(claim_response("b")))

        with patch.object(PollLease, "renew", autospec=True, return_value=True) as renew:
            service.execute_poll("public")

        assert renew.call_count == 2

    def test_run_closed_elsewhere_keeps_its_closed_status(self, service, gateway, session_factory):
        _seed(session_factory, PriorAuthorizationDB(outbound_message_header_id="hdr-a"))
        abandoned = {"type": "abandoned", "message": "Run still in_progress after 30 minutes"}

        def reclaimed_during_request(poll_bundle):
            db = session_factory()
            run = db.query(PollLogDB).filter_by(status=PollStatus.IN_PROGRESS).one()
            run.status = PollStatus.ERROR
            run.errors = [abandoned]
            db.commit()
            db.close()
            return GatewayResult(
                success=True,
                data=poll_response(message_bundle(claim_response("r1", marker="approved"), response_identifier="hdr-a")),
                response_code="ok",
            )

        gateway.send_poll.side_effect = reclaimed_during_request

        result = service.execute_poll("public")

        assert result.success is False
        assert result.status == PollStatus.ERROR
        assert result.errors == [abandoned]
        assert result.stats.messages_processed == 1
        poll_log = _poll_log(session_factory, result.poll_log_id)
        assert poll_log.status == PollStatus.ERROR
        assert poll_log.errors == [abandoned]
        assert poll_log.messages_processed == 0
        assert len(_messages(session_factory, result.poll_log_id)) == 1

    def test_run_is_skipped_while_lease_is_held(self, service, gateway, session_factory):
        now = datetime.utcnow()
        db = session_factory()
        db.add(PollLeaseDB(
            schema_name="public", holder_id="other-worker", acquired_at=now, expires_at=now + timedelta(minutes=10),
        ))
        db.commit()
        db.close()

        result = service.execute_poll("public")

        assert result.skipped is True
        assert result.success is False
        assert result.poll_log_id is None
        gateway.send_poll.assert_not_called()
        db = session_factory()
        assert db.query(PollLogDB).count() == 0
        db.close()

    def test_lease_is_released_after_run(self, service, session_factory):
        service.execute_poll("public")

        db = session_factory()
        assert db.query(PollLeaseDB).count() == 0
        db.close()

    def test_stale_runs_are_reclaimed_before_polling(self, service, session_factory):
        (stale_id,) = _seed(session_factory, PollLogDB(
            poll_id="stale-run", schema_name="public", trigger_type="scheduled",
            status=PollStatus.IN_PROGRESS, started_at=datetime.utcnow() - timedelta(hours=2),
        ))

        service.execute_poll("public")

        stale = _poll_log(session_factory, stale_id)
        assert stale.status == PollStatus.ERROR
        assert stale.errors[-1]["type"] == "abandoned"

    def test_invalid_trigger_type_is_rejected(self, service):
        with pytest.raises(ValueError):
            service.execute_poll("public", trigger_type="cron")

    def test_poll_is_sent_as_resolved_provider(self, service, gateway, monkeypatch):
        monkeypatch.setattr(settings, "nphies_provider_id", "7000000001")

        service.execute_poll("public")

        bundle = gateway.send_poll.call_args[0][0]
        header = next(e["resource"] for e in bundle["entry"] if e["resource"]["resourceType"] == "MessageHeader")
        assert header["sender"]["identifier"]["value"] == "7000000001"

    def test_completed_run_is_written_to_audit_log(self, service):
        result = service.execute_poll("public", trigger_type="scheduled")

        with open(settings.audit_log_path, encoding="utf-8") as f:
            entries = [json.loads(line) for line in f]
        run = [e for e in entries if e["action"] == "poll:run"]
        assert len(run) == 1
        assert run[0]["poll_id"] == result.poll_id
        assert run[0]["trigger_type"] == "scheduled"
        assert run[0]["outcome"] == PollStatus.NO_MESSAGES
