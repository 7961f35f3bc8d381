"""
SQLAlchemy ORM models for the Lifecycle Engine.

Write ownership:
  event_store                     -- command layer only (append-only)
  company_products                -- command layer only (aggregate registry)
  company_product_read_model      -- projector only
  company_product_stage_facts     -- projector only
  product_pipeline_stage_counts   -- projector only
  products / product_processes /
  product_process_stages          -- reference data, read-only to the core
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Text,
    DateTime, ForeignKey, JSON, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Schema version
# ---------------------------------------------------------------------------
class SchemaMeta(Base):
    __tablename__ = "schema_meta"

    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False)
    applied_at = Column(DateTime(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Reference data: products, processes, stages
# ---------------------------------------------------------------------------
class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    processes = relationship("ProductProcess", back_populates="product")


class ProductProcess(Base):
    __tablename__ = "product_processes"
    __table_args__ = (
        UniqueConstraint("product_id", "process_type", "version"),
    )

    id = Column(String(36), primary_key=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    process_type = Column(String(20), nullable=False)  # sales | onboarding | engagement
    name = Column(String(200), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="draft")  # draft | published | archived
    created_at = Column(DateTime(timezone=True), default=utcnow)

    product = relationship("Product", back_populates="processes")
    stages = relationship(
        "ProductProcessStage",
        back_populates="process",
        order_by="ProductProcessStage.stage_order",
    )


class ProductProcessStage(Base):
    __tablename__ = "product_process_stages"
    __table_args__ = (
        UniqueConstraint("process_id", "stage_order"),
    )

    id = Column(String(36), primary_key=True)
    process_id = Column(String(36), ForeignKey("product_processes.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    stage_order = Column(Integer, nullable=False)
    is_terminal = Column(Boolean, nullable=False, default=False)
    terminal_type = Column(String(20), nullable=True)  # won | lost | completed | churned | cancelled
    sla_days = Column(Integer, nullable=True)
    sla_warning_days = Column(Integer, nullable=True)

    process = relationship("ProductProcess", back_populates="stages")


# ---------------------------------------------------------------------------
# Aggregate registry: one row per (company, product)
# ---------------------------------------------------------------------------
class CompanyProduct(Base):
    __tablename__ = "company_products"
    __table_args__ = (
        UniqueConstraint("company_id", "product_id", name="uq_company_product_pair"),
    )

    id = Column(String(36), primary_key=True)
    company_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Event store -- IMMUTABLE, append-only
# ---------------------------------------------------------------------------
class LifecycleEvent(Base):
    """
    One row per domain event. Never updated or deleted.
    ``id`` is the global cursor; ``sequence_no`` orders events per aggregate.
    """
    __tablename__ = "event_store"
    __table_args__ = (
        UniqueConstraint("aggregate_id", "sequence_no", name="uq_event_aggregate_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    aggregate_id = Column(String(36), ForeignKey("company_products.id"), nullable=False, index=True)
    sequence_no = Column(Integer, nullable=False)

    event_type = Column(String(60), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    actor_type = Column(String(10), nullable=False)  # user | system | ai
    actor_id = Column(String(100), nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)   # informational
    recorded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Read model: current state per aggregate
# ---------------------------------------------------------------------------
class CompanyProductReadModel(Base):
    __tablename__ = "company_product_read_model"
    __table_args__ = (
        Index("ix_read_model_process_stage", "current_process_type", "current_stage_id"),
    )

    company_product_id = Column(String(36), primary_key=True)
    company_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), nullable=False, index=True)

    phase = Column(String(20), nullable=True, index=True)
    # prospect | in_sales | onboarding | active | churned
    status = Column(String(20), nullable=True)  # open | completed
    terminal_outcome = Column(String(20), nullable=True)
    churn_reason = Column(Text, nullable=True)

    current_process_id = Column(String(36), nullable=True)
    current_process_type = Column(String(20), nullable=True)
    current_stage_id = Column(String(36), nullable=True)
    current_stage_name = Column(String(200), nullable=True)
    current_stage_order = Column(Integer, nullable=True)
    stage_entered_at = Column(DateTime(timezone=True), nullable=True)
    last_stage_moved_at = Column(DateTime(timezone=True), nullable=True)
    stage_sla_deadline = Column(DateTime(timezone=True), nullable=True)
    stage_sla_warning_at = Column(DateTime(timezone=True), nullable=True)
    is_sla_warning = Column(Boolean, nullable=False, default=False)
    is_sla_breached = Column(Boolean, nullable=False, default=False)
    process_started_at = Column(DateTime(timezone=True), nullable=True)
    process_completed_at = Column(DateTime(timezone=True), nullable=True)
    stage_transition_count = Column(Integer, nullable=False, default=0)

    owner_id = Column(String(100), nullable=True, index=True)
    owner_name = Column(String(200), nullable=True)
    tier = Column(Integer, nullable=True)
    mrr = Column(Float, nullable=True)
    mrr_currency = Column(String(3), nullable=True)
    seats = Column(Integer, nullable=True)
    next_step = Column(Text, nullable=True)
    next_step_due_at = Column(DateTime(timezone=True), nullable=True)
    close_confidence = Column(Integer, nullable=True)  # 0-100
    close_ready = Column(Boolean, nullable=False, default=False)
    health_score = Column(Integer, nullable=True)  # 0-100
    risk_level = Column(String(10), nullable=True)

    last_event_type = Column(String(60), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    last_applied_sequence_no = Column(Integer, nullable=False, default=0)  # watermark
    projected_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Stage facts: stage entry/exit history
# ---------------------------------------------------------------------------
class CompanyProductStageFact(Base):
    __tablename__ = "company_product_stage_facts"
    __table_args__ = (
        UniqueConstraint("company_product_id", "entry_sequence_no", name="uq_stage_fact_entry"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_product_id = Column(String(36), nullable=False, index=True)
    process_id = Column(String(36), nullable=False)
    process_type = Column(String(20), nullable=False)
    stage_id = Column(String(36), nullable=False)
    stage_name = Column(String(200), nullable=True)
    stage_order = Column(Integer, nullable=True)

    entered_at = Column(DateTime(timezone=True), nullable=False)
    exited_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    exit_reason = Column(String(20), nullable=True)  # progressed | regressed | completed

    entry_sequence_no = Column(Integer, nullable=False)
    exit_sequence_no = Column(Integer, nullable=True)


# ---------------------------------------------------------------------------
# Cross-aggregate summary: counts per process stage
# ---------------------------------------------------------------------------
class PipelineStageCount(Base):
    __tablename__ = "product_pipeline_stage_counts"
    __table_args__ = (
        UniqueConstraint("product_id", "process_id", "stage_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String(36), nullable=False, index=True)
    process_id = Column(String(36), nullable=False)
    process_type = Column(String(20), nullable=False, index=True)
    stage_id = Column(String(36), nullable=False)
    stage_name = Column(String(200), nullable=True)
    stage_order = Column(Integer, nullable=True)

    total_count = Column(Integer, nullable=False, default=0)
    sla_warning_count = Column(Integer, nullable=False, default=0)
    sla_breached_count = Column(Integer, nullable=False, default=0)
    total_mrr = Column(Float, nullable=False, default=0.0)
    avg_days_in_stage = Column(Float, nullable=True)

    projected_at = Column(DateTime(timezone=True), default=utcnow)
