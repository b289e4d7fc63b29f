"""
Experiment Assignment Router — sticky weighted traffic splitting.

Resolution order for GET /go/{slug}:
  1. Unknown slug                          → NotFoundError
  2. Experiment not ACTIVE                 → first variant (no cookie, no ledger write)
  3. Assignment cookie names a live variant → honor it
  4. Session key has a ledger row           → honor it, re-issue the cookie
  5. Weighted random draw
  6. Persist the draw when a session key is present (insert-if-absent)
  7. Issue the assignment cookie

The ledger is authoritative; the cookie is a write-through cache. A variant
id in the cookie or ledger that no longer exists on the experiment is
ignored. A ledger write that loses a race adopts the stored row; a ledger
write that fails leaves the draw cookie-only.
"""

import random
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.config import Settings, get_settings
from core.errors import ConfigurationError, NotFoundError, TransientStorageError
from db.models import Experiment, Variant
from experiments.ledger import AssignmentLedger, LedgerWriteResult

logger = structlog.get_logger()

ACTIVE_STATUS = "ACTIVE"


class AssignmentSource(str, Enum):
    FALLBACK = "fallback"  # experiment not active
    COOKIE = "cookie"
    LEDGER = "ledger"
    DRAW = "draw"


@dataclass(frozen=True)
class CookieInstruction:
    name: str
    value: str
    max_age: int
    path: str = "/"
    samesite: str = "lax"


@dataclass(frozen=True)
class RequestIdentity:
    """Identity signals carried by an inbound request."""

    session_key: str | None = None
    cookies: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_cookies(cls, cookies: Mapping[str, str], session_cookie_name: str) -> "RequestIdentity":
        return cls(session_key=cookies.get(session_cookie_name) or None, cookies=dict(cookies))


@dataclass(frozen=True)
class AssignmentDecision:
    experiment_id: uuid.UUID
    variant_id: uuid.UUID
    variant_url: str
    source: AssignmentSource
    cookie: CookieInstruction | None = None
    persisted: bool = False


def select_variant(variants: Sequence[Variant], rng: random.Random) -> Variant:
    """
    Weighted random choice in definition order.

    Draws r in [0, total_weight), subtracts each positive weight in turn and
    returns the variant that brings r to <= 0. Zero-weight variants are never
    chosen by the draw; if nothing is chosen (all weights zero, float
    rounding) the last variant is returned.
    """
    if not variants:
        raise ConfigurationError("Experiment has no variants configured")

    total = sum(max(v.weight or 0.0, 0.0) for v in variants)
    remaining = rng.random() * total
    for variant in variants:
        weight = max(variant.weight or 0.0, 0.0)
        if weight <= 0:
            continue
        remaining -= weight
        if remaining <= 0:
            return variant
    return variants[-1]


class ExperimentRouter:
    """Resolve an experiment slug and request identity to a variant."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: AssignmentLedger | None = None,
        rng: random.Random | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.ledger = ledger or AssignmentLedger(db)
        self.rng = rng or random.Random()
        self.settings = settings or get_settings()

    def cookie_name(self, experiment_id: uuid.UUID) -> str:
        return f"{self.settings.assignment_cookie_prefix}{experiment_id}"

    async def load_experiment(self, slug: str) -> Experiment:
        result = await self.db.execute(
            select(Experiment).options(selectinload(Experiment.variants)).where(Experiment.slug == slug)
        )
        experiment = result.scalar_one_or_none()
        if experiment is None:
            raise NotFoundError(f"Experiment '{slug}' not found")
        return experiment

    async def resolve(self, slug: str, identity: RequestIdentity) -> AssignmentDecision:
        experiment = await self.load_experiment(slug)
        variants = list(experiment.variants)
        if not variants:
            raise ConfigurationError(f"Experiment '{slug}' has no variants configured")

        if experiment.status != ACTIVE_STATUS:
            fallback = variants[0]
            return AssignmentDecision(
                experiment_id=experiment.experiment_id,
                variant_id=fallback.variant_id,
                variant_url=fallback.url,
                source=AssignmentSource.FALLBACK,
            )

        by_id = {str(v.variant_id): v for v in variants}
        log = logger.bind(experiment_id=str(experiment.experiment_id), slug=slug)

        cookie_value = identity.cookies.get(self.cookie_name(experiment.experiment_id))
        if cookie_value and cookie_value in by_id:
            return self._decision(experiment, by_id[cookie_value], AssignmentSource.COOKIE)

        session_key = identity.session_key
        if session_key:
            stored = await self.ledger.get_assignment(session_key, experiment.experiment_id)
            if stored is not None and str(stored) in by_id:
                return self._decision(experiment, by_id[str(stored)], AssignmentSource.LEDGER, persisted=True)

        chosen = select_variant(variants, self.rng)
        if not session_key:
            return self._decision(experiment, chosen, AssignmentSource.DRAW)

        try:
            write = await self.ledger.create_assignment_if_absent(
                session_key, experiment.experiment_id, chosen.variant_id
            )
        except TransientStorageError as exc:
            log.warning("experiments.ledger.write_failed", error=str(exc))
            return self._decision(experiment, chosen, AssignmentSource.DRAW)

        if write is LedgerWriteResult.CREATED:
            log.info("experiments.assigned", variant_id=str(chosen.variant_id))
            return self._decision(experiment, chosen, AssignmentSource.DRAW, persisted=True)

        # Lost the insert race: the first committed row wins.
        try:
            stored = await self.ledger.get_assignment(session_key, experiment.experiment_id)
        except TransientStorageError as exc:
            log.warning("experiments.ledger.reread_failed", error=str(exc))
            stored = None
        if stored is not None and str(stored) in by_id:
            return self._decision(experiment, by_id[str(stored)], AssignmentSource.LEDGER, persisted=True)
        return self._decision(experiment, chosen, AssignmentSource.DRAW)

    def _decision(
        self,
        experiment: Experiment,
        variant: Variant,
        source: AssignmentSource,
        persisted: bool = False,
    ) -> AssignmentDecision:
        return AssignmentDecision(
            experiment_id=experiment.experiment_id,
            variant_id=variant.variant_id,
            variant_url=variant.url,
            source=source,
            cookie=CookieInstruction(
                name=self.cookie_name(experiment.experiment_id),
                value=str(variant.variant_id),
                max_age=self.settings.assignment_cookie_max_age,
            ),
            persisted=persisted,
        )
