"""
Per-scope poll lease
Ensures only ONE poll runs per tenant schema across workers and processes.

Database lease with expiry: a holder takes over an expired row with a
conditional UPDATE, or creates the row with an INSERT protected by the
primary key. The lease expires on its own if the holder dies.
"""
import logging
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nphies_poll.config import settings
from nphies_poll.models.poll_db import PollLeaseDB

logger = logging.getLogger(__name__)


class PollLeaseError(Exception):
    """Raised when the lease for a schema is held by another poll"""
    pass


class PollLease:
    """
    Lease on poll_leases for one schema.
    """

    def __init__(
        self,
        schema_name: str,
        ttl_seconds: Optional[int] = None,
        session_factory: Optional[Callable[[str], Session]] = None,
    ):
        """
        Args:
            schema_name: Tenant schema the lease guards
            ttl_seconds: Lease lifetime (default: settings.poll_lease_ttl_seconds)
            session_factory: Callable returning a session for a schema
        """
        if session_factory is None:
            from nphies_poll.services.db import get_tenant_session
            session_factory = get_tenant_session
        self.schema_name = schema_name
        self.ttl_seconds = ttl_seconds or settings.poll_lease_ttl_seconds
        self.session_factory = session_factory
        self.holder_id = f"poll-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self.is_held = False

    def acquire(self, poll_id: Optional[str] = None) -> bool:
        """
        Try to take the lease.

        Returns:
            True if this instance now holds the lease, False if another holder has it
        """
        db = self.session_factory(self.schema_name)
        try:
            now = datetime.utcnow()
            expires_at = now + timedelta(seconds=self.ttl_seconds)

            # Take over an expired lease
            result = db.execute(
                update(PollLeaseDB)
                .where(
                    PollLeaseDB.schema_name == self.schema_name,
                    PollLeaseDB.expires_at < now,
                )
                .values(
                    holder_id=self.holder_id,
                    poll_id=poll_id,
                    acquired_at=now,
                    expires_at=expires_at,
                )
            )
            if result.rowcount == 1:
                db.commit()
                self.is_held = True
                logger.info(f"Acquired expired poll lease for schema {self.schema_name} (holder={self.holder_id})")
                return True

            # No expired row; first holder wins the insert
            try:
                db.add(PollLeaseDB(
                    schema_name=self.schema_name,
                    holder_id=self.holder_id,
                    poll_id=poll_id,
                    acquired_at=now,
                    expires_at=expires_at,
                ))
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"Poll lease for schema {self.schema_name} is held by another poll")
                return False

            self.is_held = True
            logger.info(f"Acquired poll lease for schema {self.schema_name} (holder={self.holder_id})")
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def renew(self) -> bool:
        """
        Push the expiry out by another ttl_seconds.

        Returns:
            True if this instance still holds the lease, False if it was
            taken over after expiring
        """
        if not self.is_held:
            return False
        db = self.session_factory(self.schema_name)
        try:
            result = db.execute(
                update(PollLeaseDB)
                .where(
                    PollLeaseDB.schema_name == self.schema_name,
                    PollLeaseDB.holder_id == self.holder_id,
                )
                .values(expires_at=datetime.utcnow() + timedelta(seconds=self.ttl_seconds))
            )
            renewed = result.rowcount == 1
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if not renewed:
            logger.warning(f"Poll lease for schema {self.schema_name} was lost (holder={self.holder_id})")
            self.is_held = False
            return False
        return True

    def release(self) -> None:
        """Drop the lease if this instance still holds it."""
        if not self.is_held:
            return
        db = self.session_factory(self.schema_name)
        try:
            db.execute(
                delete(PollLeaseDB).where(
                    PollLeaseDB.schema_name == self.schema_name,
                    PollLeaseDB.holder_id == self.holder_id,
                )
            )
            db.commit()
            logger.info(f"Released poll lease for schema {self.schema_name}")
        except Exception as e:
            db.rollback()
            # The lease expires on its own after ttl_seconds
            logger.error(f"Failed to release poll lease for schema {self.schema_name}: {e}", exc_info=True)
        finally:
            self.is_held = False
            db.close()

    @contextmanager
    def hold(self, poll_id: Optional[str] = None):
        """
        Hold the lease for the duration of the block.

        Raises:
            PollLeaseError: If another poll holds the lease
        """
        if not self.acquire(poll_id):
            raise PollLeaseError(f"Poll already running for schema {self.schema_name}")
        try:
            yield self
        finally:
            self.release()
