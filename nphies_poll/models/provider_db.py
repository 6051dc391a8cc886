"""
SQLAlchemy model for the provider directory
Only the columns the poll engine needs to resolve its sender identity
"""
from sqlalchemy import Column, String, Integer, DateTime
from datetime import datetime

# Import Base from poll_db to ensure same registry
from nphies_poll.models.poll_db import Base


class ProviderDB(Base):
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    nphies_id = Column(String(100))  # provider license id at NPHIES
    provider_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
