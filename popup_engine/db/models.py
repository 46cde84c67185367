"""
SQLAlchemy ORM Models for the Popup Engine
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, Date, Index
)
from sqlalchemy.sql import func
from popup_engine.db.database import Base, JSONDocument


class Popup(Base):
    """Venue and lifecycle status needed by check-in and cancellation"""
    __tablename__ = "popups"

    id = Column(String(64), primary_key=True, index=True)
    brand_name = Column(String(200), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    # proposed, funding, confirmed, completed, cancelled
    status = Column(String(20), nullable=False, default="proposed")
    event_date = Column(Date)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CheckinAttempt(Base):
    """One immutable verification attempt; retries insert new rows"""
    __tablename__ = "checkin_records"

    id = Column(String(64), primary_key=True)
    popup_id = Column(String(64), ForeignKey("popups.id"), nullable=False)
    user_id = Column(String(64), nullable=False)
    gps_score = Column(Integer, nullable=False)
    qr_score = Column(Integer, nullable=False)
    receipt_score = Column(Integer, nullable=False, default=0)
    total_score = Column(Integer, nullable=False)
    passed = Column(Boolean, nullable=False)
    code_hash = Column(String(64))
    evidence = Column(JSONDocument, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_checkin_popup_user", "popup_id", "user_id"),
    )


class TrustHistory(Base):
    """Trust events per subject (leader or brand)"""
    __tablename__ = "trust_events"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(String(64), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    type = Column(String(20), nullable=False)
    category = Column(String(30), nullable=False)
    description = Column(Text, default="")
    impact = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_trust_subject_time", "subject_id", "timestamp"),
    )


class PipelineRecord(Base):
    """Pipeline document; `version` is the compare-and-set guard"""
    __tablename__ = "pipelines"

    id = Column(String(64), primary_key=True)
    leader_id = Column(String(64), nullable=False, index=True)
    brand_id = Column(String(64))
    popup_id = Column(String(64))
    stage = Column(String(20), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=0)
    document = Column(JSONDocument, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class Payout(Base):
    """Payouts released to the payment collaborator after settlement"""
    __tablename__ = "payouts"

    id = Column(String(100), primary_key=True)
    pipeline_id = Column(String(64), ForeignKey("pipelines.id"), nullable=False)
    recipient = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="KRW")
    scheduled_date = Column(Date, nullable=False)
    # scheduled, held, processing, completed, failed
    status = Column(String(20), nullable=False, default="scheduled")
    method = Column(String(30), nullable=False, default="bank_transfer")
    processed_at = Column(DateTime(timezone=True))
    reference = Column(String(100))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_payout_status_date", "status", "scheduled_date"),
    )
