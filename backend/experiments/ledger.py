"""
Assignment Ledger — authoritative (session_key, experiment) → variant rows.

Rows are written once and never updated. The write is insert-if-absent:
the unique constraint on (session_key, experiment_id) collapses concurrent
first assignments to one row, and the losing insert reports ALREADY_EXISTS
instead of raising.
"""

import uuid
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import TransientStorageError
from db.models import ExperimentAssignment

logger = structlog.get_logger()


class LedgerWriteResult(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class AssignmentLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_assignment(self, session_key: str, experiment_id: uuid.UUID) -> uuid.UUID | None:
        try:
            result = await self.db.execute(
                select(ExperimentAssignment.variant_id).where(
                    ExperimentAssignment.session_key == session_key,
                    ExperimentAssignment.experiment_id == experiment_id,
                )
            )
        except OperationalError as exc:
            raise TransientStorageError("Assignment ledger unavailable") from exc
        return result.scalar_one_or_none()

    async def create_assignment_if_absent(
        self,
        session_key: str,
        experiment_id: uuid.UUID,
        variant_id: uuid.UUID,
    ) -> LedgerWriteResult:
        try:
            async with self.db.begin_nested():
                self.db.add(
                    ExperimentAssignment(
                        session_key=session_key,
                        experiment_id=experiment_id,
                        variant_id=variant_id,
                    )
                )
                await self.db.flush()
            await self.db.commit()
        except IntegrityError:
            logger.info(
                "experiments.ledger.conflict",
                session_key=session_key,
                experiment_id=str(experiment_id),
            )
            return LedgerWriteResult.ALREADY_EXISTS
        except OperationalError as exc:
            raise TransientStorageError("Assignment ledger write failed") from exc
        return LedgerWriteResult.CREATED
