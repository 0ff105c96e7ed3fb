"""
Read helpers shared by the score store, the state machine and projections.
"""
from typing import List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.orm.certification import (
    SubcategoryCertification, JudgeCertification, CertificationState
)
from pageant_engine.orm.contest import SubcategoryJudge


async def get_certification_record(
    db: AsyncSession,
    subcategory_id: int,
    for_update: bool = False
) -> Optional[SubcategoryCertification]:
    query = select(SubcategoryCertification).where(
        SubcategoryCertification.subcategory_id == subcategory_id
    )
    if for_update:
        # Refresh an already-loaded row with what the lock observed
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_certification_state(db: AsyncSession, subcategory_id: int) -> CertificationState:
    result = await db.execute(
        select(SubcategoryCertification.state).where(
            SubcategoryCertification.subcategory_id == subcategory_id
        )
    )
    state = result.scalar_one_or_none()
    return state or CertificationState.OPEN


async def get_assigned_judge_ids(db: AsyncSession, subcategory_id: int) -> List[int]:
    result = await db.execute(
        select(SubcategoryJudge.judge_id)
        .where(SubcategoryJudge.subcategory_id == subcategory_id)
        .order_by(SubcategoryJudge.judge_id)
    )
    return list(result.scalars().all())


async def lock_judge_assignment(db: AsyncSession, subcategory_id: int, judge_id: int) -> bool:
    """
    Row-lock the judge's roster entry for the rest of the transaction.

    Score writes and judge certification both take this lock, so they
    serialize per (judge, subcategory) across worker processes too.
    Returns False when the judge is not on the roster.
    """
    result = await db.execute(
        select(SubcategoryJudge.id)
        .where(
            and_(
                SubcategoryJudge.subcategory_id == subcategory_id,
                SubcategoryJudge.judge_id == judge_id
            )
        )
        .with_for_update()
    )
    return result.scalar_one_or_none() is not None


async def get_active_judge_certifications(
    db: AsyncSession,
    subcategory_id: int
) -> List[JudgeCertification]:
    result = await db.execute(
        select(JudgeCertification)
        .where(
            and_(
                JudgeCertification.subcategory_id == subcategory_id,
                JudgeCertification.revoked_at.is_(None)
            )
        )
        .order_by(JudgeCertification.judge_id)
    )
    return list(result.scalars().all())


async def get_active_judge_certification(
    db: AsyncSession,
    subcategory_id: int,
    judge_id: int
) -> Optional[JudgeCertification]:
    result = await db.execute(
        select(JudgeCertification).where(
            and_(
                JudgeCertification.subcategory_id == subcategory_id,
                JudgeCertification.judge_id == judge_id,
                JudgeCertification.revoked_at.is_(None)
            )
        )
    )
    return result.scalars().first()
