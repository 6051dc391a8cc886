"""
Stale Poll Reclaimer
Closes poll runs left in_progress by a crashed or killed worker.

A run is considered abandoned if:
- status is in_progress
- started_at is older than stale_minutes
- it is not the run holding the schema's unexpired lease

Abandoned runs are marked error with an {type: abandoned} entry. They are
never resumed; the next poll fetches whatever NPHIES still has queued.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from nphies_poll.config import settings
from nphies_poll.models.poll_db import PollLeaseDB, PollLogDB, PollStatus
from nphies_poll.utils.audit_logger import log_poll_event

logger = logging.getLogger(__name__)


class StalePollReclaimer:

    def __init__(
        self,
        stale_minutes: Optional[int] = None,
        session_factory: Optional[Callable[[str], Session]] = None,
    ):
        if session_factory is None:
            from nphies_poll.services.db import get_tenant_session
            session_factory = get_tenant_session
        self.stale_minutes = stale_minutes or settings.poll_stale_minutes
        self.session_factory = session_factory

    def reclaim(self, schema_name: str) -> int:
        """
        Mark abandoned runs in ``schema_name`` as error.

        Returns:
            Number of runs reclaimed
        """
        db = self.session_factory(schema_name)
        try:
            now = datetime.utcnow()
            cutoff = now - timedelta(minutes=self.stale_minutes)
            stale_runs = (
                db.query(PollLogDB)
                .filter(
                    PollLogDB.status == PollStatus.IN_PROGRESS,
                    PollLogDB.started_at < cutoff,
                )
                .all()
            )
            # A long run that keeps renewing its lease is still alive
            live_lease = (
                db.query(PollLeaseDB)
                .filter(
                    PollLeaseDB.schema_name == schema_name,
                    PollLeaseDB.expires_at >= now,
                )
                .first()
            )
            if live_lease is not None and live_lease.poll_id:
                stale_runs = [run for run in stale_runs if run.poll_id != live_lease.poll_id]
            if not stale_runs:
                logger.debug(f"No abandoned poll runs in schema {schema_name}")
                return 0

            for run in stale_runs:
                run.status = PollStatus.ERROR
                run.errors = list(run.errors or []) + [{
                    "type": "abandoned",
                    "message": f"Run still in_progress after {self.stale_minutes} minutes",
                }]
                run.completed_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.warning(f"Reclaimed {len(stale_runs)} abandoned poll run(s) in schema {schema_name}")
        for run in stale_runs:
            log_poll_event(
                action="reclaimed",
                outcome=PollStatus.ERROR,
                poll_id=run.poll_id,
                schema_name=schema_name,
                trigger_type=run.trigger_type,
            )
        return len(stale_runs)
