"""
Tenant and sync checkpoint models
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, UniqueConstraint
from datetime import datetime

from shipsync.models.base import Base


class Tenant(Base):
    """
    A billing-isolated customer of the fulfillment provider.

    System tenants (is_system) are internal buckets such as the payments
    account; they receive routed fees but are never synced themselves.
    """
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)  # Display name
    merchant_id = Column(String, nullable=True)

    # Provider credentials
    api_token = Column(String, nullable=True)

    # Cadence for incremental syncs
    sync_interval_minutes = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, index=True)
    is_system = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncCheckpoint(Base):
    """
    Per-tenant, per-mode sync watermark.

    sync_mode is "full" (creation-date window) or "incremental"
    (modification-date window).
    """
    __tablename__ = "sync_checkpoints"
    __table_args__ = (
        UniqueConstraint("client_id", "sync_mode", name="uq_sync_checkpoint_client_mode"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, index=True, nullable=False)
    sync_mode = Column(String, nullable=False)

    last_run_at = Column(DateTime, nullable=True)
    last_verified_at = Column(DateTime, nullable=True)  # Last run that finished without errors
    last_timeline_checked_at = Column(DateTime, nullable=True)

    last_status = Column(String, nullable=True)  # success, partial, failed
    last_error = Column(Text, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
