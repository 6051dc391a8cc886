"""
Provider directory lookup for the polling identity
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from nphies_poll.config import settings
from nphies_poll.models.provider_db import ProviderDB

logger = logging.getLogger(__name__)

# Bound on directory rows scanned for a usable license id
PROVIDER_SCAN_LIMIT = 100


@dataclass
class ProviderIdentity:
    nphies_id: str
    name: Optional[str] = None
    source: str = "default"  # 'config', 'directory' or 'default'


def resolve_provider(db: Session) -> ProviderIdentity:
    """
    Resolve the provider license the poll is sent as.

    Order: configured id, then the newest provider whose nphies_id is purely
    numeric, then the built-in default.
    """
    if settings.nphies_provider_id:
        return ProviderIdentity(
            nphies_id=settings.nphies_provider_id,
            name=settings.nphies_provider_name,
            source="config",
        )

    providers = (
        db.query(ProviderDB)
        .filter(ProviderDB.nphies_id.isnot(None))
        .order_by(ProviderDB.created_at.desc(), ProviderDB.id.desc())
        .limit(PROVIDER_SCAN_LIMIT)
        .all()
    )
    for provider in providers:
        nphies_id = (provider.nphies_id or "").strip()
        if nphies_id.isdigit():
            return ProviderIdentity(nphies_id=nphies_id, name=provider.provider_name, source="directory")

    logger.warning(
        f"No provider with a numeric NPHIES id found, using default {settings.nphies_default_provider_id}"
    )
    return ProviderIdentity(
        nphies_id=settings.nphies_default_provider_id,
        name=settings.nphies_provider_name,
        source="default",
    )
