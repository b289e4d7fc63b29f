"""
FunnelFuel Database Models

Tables read and written by the analytics engine.
Multi-tenant via organization_id on all tables.

Tables:
  Tracking (written by ingestion, read here):
  1. organizations         - Tenant accounts
  2. funnels               - Named funnels per organization
  3. funnel_steps          - Ordered steps within a funnel
  4. contact_tags          - Tags attached to resolved contacts
  5. events                - Immutable tracked events
  6. payments              - Payment records (revenue source)

  Definitions (written by configuration CRUD):
  7. metrics               - Event / revenue / calculated metric definitions
  8. alerts                - Staleness alerts (+ state fields owned by the monitor)
  9. experiments           - Split tests keyed by slug
  10. variants             - Weighted experiment variants

  Assignment ledger:
  11. experiment_assignments - Sticky (session_key, experiment) → variant rows
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


EVENT_TYPES = (
    "PAGE_VIEW",
    "OPT_IN",
    "FORM_SUBMIT",
    "APPLICATION_SUBMIT",
    "BOOKING",
    "BOOKING_CONFIRMED",
    "WEBINAR_REGISTER",
    "WEBINAR_ATTEND",
    "WEBINAR_CTA_CLICK",
    "PURCHASE",
    "CUSTOM",
)


# ─── 1. Organizations ──────────────────────────────────────────────────────


class Organization(Base):
    __tablename__ = "organizations"

    organization_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("status IN ('active', 'trial', 'inactive')", name="ck_organization_status"),)


# ─── 2–3. Funnels ──────────────────────────────────────────────────────────


class Funnel(Base):
    __tablename__ = "funnels"

    funnel_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    steps = relationship(
        "FunnelStep",
        back_populates="funnel",
        order_by="FunnelStep.position",
        cascade="all, delete-orphan",
    )


class FunnelStep(Base):
    __tablename__ = "funnel_steps"

    funnel_step_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    funnel_id = Column(GUID(), ForeignKey("funnels.funnel_id"), nullable=False)
    name = Column(String(255), nullable=False)
    step_type = Column(String(50), nullable=False, default="PAGE_VIEW")
    position = Column(Integer, nullable=False)
    url_pattern = Column(Text)

    __table_args__ = (UniqueConstraint("funnel_id", "position", name="uq_funnel_step_position"),)

    funnel = relationship("Funnel", back_populates="steps")


# ─── 4. Contact Tags ───────────────────────────────────────────────────────


class ContactTag(Base):
    __tablename__ = "contact_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    contact_id = Column(GUID(), nullable=False)
    tag = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("contact_id", "tag", name="uq_contact_tag"),
        Index("ix_contact_tags_org_tag", "organization_id", "tag"),
    )


# ─── 5. Events ─────────────────────────────────────────────────────────────


class Event(Base):
    __tablename__ = "events"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    contact_id = Column(GUID())
    event_type = Column(String(50), nullable=False)
    source = Column(String(100))
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    confidence = Column(Float, nullable=False, default=1.0)
    funnel_id = Column(GUID(), ForeignKey("funnels.funnel_id"))
    funnel_step_id = Column(GUID(), ForeignKey("funnel_steps.funnel_step_id"))
    payload = Column(JSON, default=dict)
    external_id = Column(String(255))
    variant_id = Column(GUID(), ForeignKey("variants.variant_id"))

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_event_external_id"),
        Index("ix_events_org_type_ts", "organization_id", "event_type", "timestamp"),
        Index("ix_events_funnel_ts", "funnel_id", "timestamp"),
        Index("ix_events_step_ts", "funnel_step_id", "timestamp"),
        Index("ix_events_variant_ts", "variant_id", "timestamp"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_event_confidence_range"),
    )


# ─── 6. Payments ───────────────────────────────────────────────────────────


class Payment(Base):
    __tablename__ = "payments"

    payment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    contact_id = Column(GUID())
    funnel_id = Column(GUID(), ForeignKey("funnels.funnel_id"))
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="succeeded")
    product_name = Column(String(255))
    source = Column(String(100))
    variant_id = Column(GUID(), ForeignKey("variants.variant_id"))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_payments_org_status_created", "organization_id", "status", "created_at"),
        Index("ix_payments_variant_created", "variant_id", "created_at"),
        CheckConstraint("status IN ('succeeded', 'pending', 'failed', 'refunded')", name="ck_payment_status"),
    )


# ─── 7. Metrics ────────────────────────────────────────────────────────────


class Metric(Base):
    __tablename__ = "metrics"

    metric_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    kind = Column(String(20), nullable=False)
    event_type = Column(String(50))
    aggregation = Column(String(30), nullable=False, default="TOTAL_EVENTS")
    value_property = Column(String(100))
    product_filter = Column(String(255))
    numerator_metric_id = Column(GUID(), ForeignKey("metrics.metric_id"))
    denominator_metric_id = Column(GUID(), ForeignKey("metrics.metric_id"))
    format = Column(String(20), nullable=False, default="NUMBER")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_metrics_org", "organization_id"),
        CheckConstraint("kind IN ('EVENT', 'REVENUE', 'CALCULATED')", name="ck_metric_kind"),
        CheckConstraint(
            "aggregation IN ('TOTAL_EVENTS', 'UNIQUE_CONTACTS', 'EVENT_VALUE_SUM', 'EVENT_VALUE_AVG')",
            name="ck_metric_aggregation",
        ),
        CheckConstraint("format IN ('NUMBER', 'CURRENCY', 'PERCENTAGE')", name="ck_metric_format"),
    )


# ─── 8. Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    alert_type = Column(String(30), nullable=False)
    funnel_id = Column(GUID(), ForeignKey("funnels.funnel_id"))
    funnel_step_id = Column(GUID(), ForeignKey("funnel_steps.funnel_step_id"))
    threshold_hours = Column(Integer, nullable=False, default=24)
    is_active = Column(Boolean, nullable=False, default=True)
    last_fired_at = Column(DateTime)
    last_event_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_alerts_org_active", "organization_id", "is_active"),
        CheckConstraint(
            "alert_type IN ('NO_EVENTS', 'NO_OPT_INS', 'NO_PURCHASES', 'NO_BOOKINGS', 'NO_PAGE_VIEWS')",
            name="ck_alert_type",
        ),
        CheckConstraint("threshold_hours >= 1 AND threshold_hours <= 168", name="ck_alert_threshold_range"),
    )


# ─── 9–10. Experiments ─────────────────────────────────────────────────────


class Experiment(Base):
    __tablename__ = "experiments"

    experiment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="DRAFT")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('DRAFT', 'ACTIVE', 'PAUSED', 'COMPLETED')", name="ck_experiment_status"),
    )

    variants = relationship(
        "Variant",
        back_populates="experiment",
        order_by="Variant.position",
        cascade="all, delete-orphan",
    )


class Variant(Base):
    __tablename__ = "variants"

    variant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    experiment_id = Column(GUID(), ForeignKey("experiments.experiment_id"), nullable=False)
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    weight = Column(Float, nullable=False, default=1.0)
    position = Column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("weight >= 0", name="ck_variant_weight_nonnegative"),)

    experiment = relationship("Experiment", back_populates="variants")


# ─── 11. Experiment Assignments ────────────────────────────────────────────


class ExperimentAssignment(Base):
    __tablename__ = "experiment_assignments"

    assignment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    session_key = Column(String(128), nullable=False)
    experiment_id = Column(GUID(), ForeignKey("experiments.experiment_id"), nullable=False)
    variant_id = Column(GUID(), ForeignKey("variants.variant_id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("session_key", "experiment_id", name="uq_assignment_session_experiment"),
        Index("ix_assignments_experiment", "experiment_id"),
    )
