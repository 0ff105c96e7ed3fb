"""
Query / Projection Layer

Read-side views for dashboards and the score review table. Every view is
recomputed from the store on each call; nothing is cached, so a score write
or a certification is visible on the next read.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.errors import NotFoundError
from pageant_engine.orm.audit_log import AuditAction, CertificationAuditEntry
from pageant_engine.orm.certification import CertificationState
from pageant_engine.orm.contest import (
    Category, Contestant, Criterion, Subcategory, SubcategoryContestant
)
from pageant_engine.orm.score import Score, OverallDeduction
from pageant_engine.orm.user import User
from pageant_engine.schemas.certification import (
    CertificationDashboard, CertificationStatus, JudgeSignoff, SignerInfo
)
from pageant_engine.schemas.score_review import (
    ContestantReview, CriterionScore, JudgeScoreRow, ScoreReview
)
from pageant_engine.services.certification_queries import (
    get_active_judge_certifications, get_assigned_judge_ids, get_certification_record
)
from pageant_engine.services.tabulator import Tabulator, TabulationScope

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


async def _user_names(db: AsyncSession, user_ids: Iterable[int]) -> Dict[int, str]:
    ids = sorted(set(user_ids))
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {user.id: user.signature_name for user in result.scalars().all()}


async def _count_revocations(db: AsyncSession, subcategory_id: int) -> int:
    result = await db.execute(
        select(func.count(CertificationAuditEntry.id)).where(
            CertificationAuditEntry.subcategory_id == subcategory_id,
            CertificationAuditEntry.action == AuditAction.CERTIFICATION_REVOKED
        )
    )
    return result.scalar() or 0


async def get_certification_status(db: AsyncSession, subcategory_id: int) -> CertificationStatus:
    """
    Current state, per-judge sign-off list and signer metadata.

    A subcategory that was never certified reports OPEN with version 0.
    """
    subcategory = await db.get(Subcategory, subcategory_id)
    if subcategory is None:
        raise NotFoundError("Subcategory", subcategory_id)

    record = await get_certification_record(db, subcategory_id)
    assigned = await get_assigned_judge_ids(db, subcategory_id)
    active = {c.judge_id: c for c in await get_active_judge_certifications(db, subcategory_id)}
    names = await _user_names(db, assigned)

    judges = []
    for judge_id in assigned:
        certification = active.get(judge_id)
        judges.append(JudgeSignoff(
            judge_id=judge_id,
            judge_name=names.get(judge_id),
            certified=certification is not None,
            certified_at=certification.certified_at if certification else None,
            signature_name=certification.signature_name if certification else None
        ))

    configuration_errors = []
    if not assigned:
        configuration_errors.append("No judges assigned")
    category = await db.get(Category, subcategory.category_id)
    if category is not None and category.cap_required and category.score_cap is None:
        configuration_errors.append("Score cap required but not configured")

    status = CertificationStatus(
        subcategory_id=subcategory_id,
        subcategory_name=subcategory.name,
        category_id=subcategory.category_id,
        judges=judges,
        certified_judge_count=sum(1 for j in judges if j.certified),
        assigned_judge_count=len(assigned),
        revocation_count=await _count_revocations(db, subcategory_id),
        configuration_errors=configuration_errors
    )

    if record is not None:
        status.state = record.state
        status.version = record.version
        if record.tally_certified_at is not None:
            status.tally = SignerInfo(
                signer_id=record.tally_signer_id,
                signer_role="tally_master",
                signature_name=record.tally_signature_name,
                certified_at=record.tally_certified_at
            )
        if record.final_certified_at is not None:
            status.final = SignerInfo(
                signer_id=record.final_signer_id,
                signer_role=record.final_signer_role,
                signature_name=record.final_signature_name,
                certified_at=record.final_certified_at
            )

    return status


async def certification_dashboard(db: AsyncSession, category_id: int) -> CertificationDashboard:
    """Status of every subcategory in a category, in display order."""
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category", category_id)

    result = await db.execute(
        select(Subcategory.id)
        .where(Subcategory.category_id == category_id)
        .order_by(Subcategory.order_index, Subcategory.id)
    )
    statuses = [
        await get_certification_status(db, subcategory_id)
        for subcategory_id in result.scalars().all()
    ]

    return CertificationDashboard(
        category_id=category_id,
        category_name=category.name,
        subcategories=statuses,
        fully_certified=bool(statuses) and all(
            s.state == CertificationState.FINAL_CERTIFIED for s in statuses
        )
    )


async def score_review(db: AsyncSession, subcategory_id: int) -> ScoreReview:
    """
    Every contestant's raw scores per judge, with judge subtotal, percentage
    of the maximum possible, sign-off flag, deductions and tabulated rank.
    """
    subcategory = await db.get(Subcategory, subcategory_id)
    if subcategory is None:
        raise NotFoundError("Subcategory", subcategory_id)

    criteria_result = await db.execute(
        select(Criterion)
        .where(Criterion.subcategory_id == subcategory_id)
        .order_by(Criterion.order_index, Criterion.id)
    )
    criteria: List[Criterion] = list(criteria_result.scalars().all())
    max_possible = sum((Decimal(str(c.max_score)) for c in criteria), ZERO)

    score_result = await db.execute(select(Score).where(Score.subcategory_id == subcategory_id))
    scores: Dict[tuple, Score] = {
        (s.contestant_id, s.judge_id, s.criterion_id): s
        for s in score_result.scalars().all()
    }

    enrolled_result = await db.execute(
        select(SubcategoryContestant.contestant_id)
        .where(SubcategoryContestant.subcategory_id == subcategory_id)
    )
    contestant_ids = sorted(set(enrolled_result.scalars().all()) | {k[0] for k in scores})
    contestants: Dict[int, Contestant] = {}
    if contestant_ids:
        result = await db.execute(select(Contestant).where(Contestant.id.in_(contestant_ids)))
        contestants = {c.id: c for c in result.scalars().all()}

    assigned = await get_assigned_judge_ids(db, subcategory_id)
    judge_ids = sorted(set(assigned) | {k[1] for k in scores})
    names = await _user_names(db, judge_ids)
    active = {c.judge_id: c for c in await get_active_judge_certifications(db, subcategory_id)}

    deduction_result = await db.execute(
        select(OverallDeduction.contestant_id, func.sum(OverallDeduction.amount))
        .where(OverallDeduction.subcategory_id == subcategory_id)
        .group_by(OverallDeduction.contestant_id)
    )
    deductions = {cid: Decimal(str(amount)) for cid, amount in deduction_result.all() if amount is not None}

    results = await Tabulator.tabulate(db, TabulationScope.for_subcategories([subcategory_id]))
    by_contestant = {r.contestant_id: r for r in results}

    record = await get_certification_record(db, subcategory_id)

    reviews = []
    for contestant_id in contestant_ids:
        rows = []
        for judge_id in judge_ids:
            criterion_scores = []
            subtotal = ZERO
            for criterion in criteria:
                score = scores.get((contestant_id, judge_id, criterion.id))
                value = Decimal(str(score.value)) if score is not None else None
                if value is not None:
                    subtotal += value
                criterion_scores.append(CriterionScore(
                    criterion_id=criterion.id,
                    criterion_name=criterion.name,
                    value=value,
                    max_score=Decimal(str(criterion.max_score)),
                    comment=score.comment if score is not None else None
                ))

            percentage = None
            if max_possible > 0:
                percentage = (subtotal / max_possible * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)

            certification = active.get(judge_id)
            rows.append(JudgeScoreRow(
                judge_id=judge_id,
                judge_name=names.get(judge_id),
                scores=criterion_scores,
                subtotal=subtotal,
                max_possible=max_possible,
                percentage=percentage,
                certified=certification is not None,
                certified_at=certification.certified_at if certification else None
            ))

        contestant = contestants.get(contestant_id)
        reviews.append(ContestantReview(
            contestant_id=contestant_id,
            contestant_name=contestant.name if contestant else None,
            contestant_number=contestant.contestant_number if contestant else None,
            judges=rows,
            deductions=deductions.get(contestant_id, ZERO),
            result=by_contestant.get(contestant_id)
        ))

    reviews.sort(key=lambda r: (r.result.rank if r.result else len(reviews) + 1, r.contestant_id))

    return ScoreReview(
        subcategory_id=subcategory_id,
        subcategory_name=subcategory.name,
        state=record.state if record is not None else CertificationState.OPEN,
        contestants=reviews
    )
