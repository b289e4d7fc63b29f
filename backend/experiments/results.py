"""
Split-Test Results — per-variant read-out of the assignment ledger.

For every experiment of an organization (newest first), each variant reports:
  - assignments:     ledger rows created inside the range
  - conversions:     PURCHASE / FORM_SUBMIT / OPT_IN events attributed to the variant
  - revenue:         succeeded payments attributed to the variant, in currency units
  - conversion_rate: conversions / assignments (0.0 when nothing was assigned)

`total_assignments` counts the experiment's ledger rows regardless of range.
"""

import uuid
from dataclasses import dataclass, field

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from analytics.date_range import DateRange
from analytics.evaluator import safe_divide
from analytics.event_store import SUCCEEDED_PAYMENT_STATUS
from core.errors import TransientStorageError
from db.models import Event, Experiment, ExperimentAssignment, Payment

logger = structlog.get_logger()

CONVERSION_EVENT_TYPES = ("PURCHASE", "FORM_SUBMIT", "OPT_IN")


@dataclass
class VariantResult:
    variant_id: uuid.UUID
    name: str
    url: str
    weight: float
    assignments: int
    conversions: int
    revenue: float
    conversion_rate: float


@dataclass
class ExperimentResults:
    experiment_id: uuid.UUID
    name: str
    slug: str
    status: str
    total_assignments: int
    variants: list[VariantResult] = field(default_factory=list)


class SplitTestReport:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def overview(
        self,
        organization_id: uuid.UUID,
        date_range: DateRange,
        tz_name: str = "UTC",
    ) -> list[ExperimentResults]:
        experiments = await self._load_experiments(organization_id)
        experiment_ids = [e.experiment_id for e in experiments]
        variant_ids = [v.variant_id for e in experiments for v in e.variants]
        start, end = date_range.utc_bounds(tz_name)

        totals = await self._grouped(
            select(ExperimentAssignment.experiment_id, func.count(ExperimentAssignment.assignment_id))
            .where(ExperimentAssignment.experiment_id.in_(experiment_ids))
            .group_by(ExperimentAssignment.experiment_id)
        )
        assignments = await self._grouped(
            select(ExperimentAssignment.variant_id, func.count(ExperimentAssignment.assignment_id))
            .where(
                ExperimentAssignment.variant_id.in_(variant_ids),
                ExperimentAssignment.created_at >= start,
                ExperimentAssignment.created_at < end,
            )
            .group_by(ExperimentAssignment.variant_id)
        )
        conversions = await self._grouped(
            select(Event.variant_id, func.count(Event.event_id))
            .where(
                Event.organization_id == organization_id,
                Event.variant_id.in_(variant_ids),
                Event.event_type.in_(CONVERSION_EVENT_TYPES),
                Event.timestamp >= start,
                Event.timestamp < end,
            )
            .group_by(Event.variant_id)
        )
        revenue_cents = await self._grouped(
            select(Payment.variant_id, func.sum(Payment.amount_cents))
            .where(
                Payment.organization_id == organization_id,
                Payment.variant_id.in_(variant_ids),
                Payment.status == SUCCEEDED_PAYMENT_STATUS,
                Payment.created_at >= start,
                Payment.created_at < end,
            )
            .group_by(Payment.variant_id)
        )

        results = []
        for experiment in experiments:
            variants = []
            for variant in experiment.variants:
                assigned = int(assignments.get(variant.variant_id, 0))
                converted = int(conversions.get(variant.variant_id, 0))
                variants.append(
                    VariantResult(
                        variant_id=variant.variant_id,
                        name=variant.name,
                        url=variant.url,
                        weight=variant.weight,
                        assignments=assigned,
                        conversions=converted,
                        revenue=int(revenue_cents.get(variant.variant_id) or 0) / 100,
                        conversion_rate=safe_divide(converted, assigned),
                    )
                )
            results.append(
                ExperimentResults(
                    experiment_id=experiment.experiment_id,
                    name=experiment.name,
                    slug=experiment.slug,
                    status=experiment.status,
                    total_assignments=int(totals.get(experiment.experiment_id, 0)),
                    variants=variants,
                )
            )

        logger.info(
            "split_tests.overview",
            organization_id=str(organization_id),
            experiments=len(results),
            variants=len(variant_ids),
        )
        return results

    async def _load_experiments(self, organization_id: uuid.UUID) -> list[Experiment]:
        stmt = (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .where(Experiment.organization_id == organization_id)
            .order_by(Experiment.created_at.desc())
        )
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def _grouped(self, stmt) -> dict:
        result = await self._execute(stmt)
        return {key: value for key, value in result.all()}

    async def _execute(self, stmt):
        try:
            return await self.db.execute(stmt)
        except OperationalError as exc:
            logger.error("split_tests.unavailable", error=str(exc))
            raise TransientStorageError("Split-test results unavailable") from exc
