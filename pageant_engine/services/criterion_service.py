"""
Criterion edits guarded by certification state.

A criterion's name and maximum score define what its stored scores mean.
Once any judge has certified the subcategory, criteria that scores
reference are frozen until every judge certification there is revoked.
"""
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.core.locks import certification_locks
from pageant_engine.errors import EngineError, ErrorCode, LockedError, NotFoundError, ValidationError
from pageant_engine.orm.contest import Criterion
from pageant_engine.orm.score import Score
from pageant_engine.services.certification_queries import get_active_judge_certifications
from pageant_engine.services.score_store import to_decimal

logger = logging.getLogger(__name__)


class CriterionService:

    @staticmethod
    async def count_scores(db: AsyncSession, criterion_id: int) -> int:
        result = await db.execute(
            select(func.count(Score.id)).where(Score.criterion_id == criterion_id)
        )
        return result.scalar() or 0

    @staticmethod
    async def update_criterion(
        db: AsyncSession,
        criterion_id: int,
        name: Optional[str] = None,
        max_score: Any = None
    ) -> Criterion:
        """
        Rename a criterion or change its maximum score.

        Raises:
            NotFoundError: Unknown criterion
            ValidationError: Blank name, non-positive max score, or a max
                score below an already stored score
            LockedError: A judge certification is active in the subcategory
                and scores reference the criterion
        """
        try:
            criterion = await db.get(Criterion, criterion_id)
            if criterion is None:
                raise NotFoundError("Criterion", criterion_id)

            if name is not None and not name.strip():
                raise ValidationError("Criterion name cannot be blank")
            new_max = None
            if max_score is not None:
                new_max = to_decimal(max_score, "max_score")
                if new_max <= 0:
                    raise ValidationError("max_score must be greater than 0", details={"max_score": str(new_max)})
        except EngineError:
            await db.rollback()
            raise
        subcategory_id = criterion.subcategory_id

        async with certification_locks.hold(subcategory_id):
            try:
                certified = await get_active_judge_certifications(db, subcategory_id)
                score_count = await CriterionService.count_scores(db, criterion_id)
                if certified and score_count > 0:
                    logger.warning(
                        f"[CRITERION LOCKED] criterion={criterion_id} subcategory={subcategory_id} "
                        f"certified_judges={len(certified)} scores={score_count}"
                    )
                    raise LockedError(
                        f"Criterion {criterion_id} is referenced by certified scores",
                        code=ErrorCode.CRITERION_LOCKED,
                        details={
                            "criterion_id": criterion_id,
                            "certified_judge_ids": [c.judge_id for c in certified],
                        }
                    )

                if new_max is not None and score_count > 0:
                    result = await db.execute(
                        select(func.max(Score.value)).where(Score.criterion_id == criterion_id)
                    )
                    highest = result.scalar()
                    if highest is not None and Decimal(str(highest)) > new_max:
                        raise ValidationError(
                            f"max_score {new_max} is below an existing score of {highest}",
                            code=ErrorCode.SCORE_OUT_OF_RANGE,
                            details={"criterion_id": criterion_id, "highest_score": str(highest)}
                        )

                if name is not None:
                    criterion.name = name.strip()
                if new_max is not None:
                    criterion.max_score = new_max
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"Criterion {criterion_id} updated (subcategory={subcategory_id})")
        return criterion
