"""
Score Store

Holds raw per-criterion judge scores and signed overall deductions.

Rules:
- 0 <= value <= criterion.max_score
- One row per (judge, contestant, criterion): a resubmission overwrites
- A judge's scores are read-only to that judge once they certified the
  subcategory; a correction needs an explicit revocation first
- No tabulation on write; readers tabulate lazily
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Any

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.core.locks import certification_locks, judge_scope_locks
from pageant_engine.errors import (
    EngineError, ErrorCode, ValidationError, LockedError, NotAssignedError,
    NotFoundError, SignatureMismatchError
)
from pageant_engine.orm.audit_log import AuditAction
from pageant_engine.orm.base import SCORE_PRECISION, SCORE_SCALE, utcnow
from pageant_engine.orm.certification import CertificationState
from pageant_engine.orm.contest import Criterion, Contestant, Subcategory
from pageant_engine.orm.score import Score, OverallDeduction
from pageant_engine.orm.user import User
from pageant_engine.rbac import require_account_role, require_role
from pageant_engine.services.audit_service import append_audit_entry
from pageant_engine.services.certification_queries import (
    get_active_judge_certification, get_certification_state, lock_judge_assignment
)
from pageant_engine.services.signature_verifier import SignatureVerifier

logger = logging.getLogger(__name__)

STORED_QUANTUM = Decimal(1).scaleb(-SCORE_SCALE)
MAX_STORED_VALUE = Decimal(10) ** (SCORE_PRECISION - SCORE_SCALE)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Coerce a numeric input to a Decimal the score columns store exactly.

    Raises:
        ValidationError: For booleans, non-numbers, NaN and infinities, more
            than SCORE_SCALE decimal places, or more digits than the column holds
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", details={"field": field, "value": repr(value)})
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", details={"field": field, "value": repr(value)})
    if not number.is_finite():
        raise ValidationError(f"{field} must be finite", details={"field": field, "value": repr(value)})

    if abs(number) >= MAX_STORED_VALUE:
        raise ValidationError(
            f"{field} must be below {MAX_STORED_VALUE}",
            code=ErrorCode.SCORE_OUT_OF_RANGE,
            details={"field": field, "value": str(number)}
        )
    if number != number.quantize(STORED_QUANTUM):
        raise ValidationError(
            f"{field} allows at most {SCORE_SCALE} decimal places",
            code=ErrorCode.TOO_MANY_DECIMALS,
            details={"field": field, "value": str(number), "decimal_places": SCORE_SCALE}
        )
    return number


class ScoreStore:
    """Score and deduction writes. Every method owns its transaction."""

    @staticmethod
    async def submit_score(
        db: AsyncSession,
        judge_id: int,
        contestant_id: int,
        criterion_id: int,
        value: Any,
        comment: Optional[str] = None
    ) -> Score:
        """
        Create or overwrite a judge's score for one criterion.

        Raises:
            ValidationError: Value outside [0, criterion.max_score]
            NotFoundError: Unknown criterion or contestant
            NotAssignedError: Judge not on the subcategory roster
            LockedError: Judge already certified the subcategory
        """
        number = to_decimal(value)

        criterion = await db.get(Criterion, criterion_id)
        if criterion is None:
            raise NotFoundError("Criterion", criterion_id)

        max_score = Decimal(str(criterion.max_score))
        if number < 0 or number > max_score:
            raise ValidationError(
                f"Score must be between 0 and {max_score}",
                code=ErrorCode.SCORE_OUT_OF_RANGE,
                details={"criterion_id": criterion_id, "value": str(number), "max_score": str(max_score)}
            )

        subcategory_id = criterion.subcategory_id

        async with judge_scope_locks.hold((subcategory_id, judge_id)):
            try:
                score = await ScoreStore._write_score(
                    db, judge_id, contestant_id, criterion_id, subcategory_id, number, comment
                )
                await db.commit()
            except IntegrityError:
                # A concurrent writer in another process inserted the same key first
                await db.rollback()
                logger.info(
                    f"Score insert raced for judge={judge_id} contestant={contestant_id} "
                    f"criterion={criterion_id}; retrying as overwrite"
                )
                try:
                    score = await ScoreStore._write_score(
                        db, judge_id, contestant_id, criterion_id, subcategory_id, number, comment
                    )
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
            except EngineError:
                await db.rollback()
                raise
            except Exception:
                await db.rollback()
                logger.exception(f"Failed to store score for judge {judge_id}")
                raise

        logger.info(
            f"Score stored: judge={judge_id} contestant={contestant_id} "
            f"criterion={criterion_id} value={number}"
        )
        return score

    @staticmethod
    async def _write_score(
        db: AsyncSession,
        judge_id: int,
        contestant_id: int,
        criterion_id: int,
        subcategory_id: int,
        number: Decimal,
        comment: Optional[str]
    ) -> Score:
        if await db.get(Contestant, contestant_id) is None:
            raise NotFoundError("Contestant", contestant_id)

        if not await lock_judge_assignment(db, subcategory_id, judge_id):
            raise NotAssignedError(
                f"Judge {judge_id} is not assigned to subcategory {subcategory_id}",
                details={"judge_id": judge_id, "subcategory_id": subcategory_id}
            )

        subcategory = await db.get(Subcategory, subcategory_id)

        result = await db.execute(
            select(Score).where(
                and_(
                    Score.judge_id == judge_id,
                    Score.contestant_id == contestant_id,
                    Score.criterion_id == criterion_id
                )
            )
        )
        score = result.scalar_one_or_none()
        now = utcnow()

        if score is None:
            score = Score(
                judge_id=judge_id,
                contestant_id=contestant_id,
                criterion_id=criterion_id,
                subcategory_id=subcategory_id,
                category_id=subcategory.category_id,
                value=number,
                comment=comment,
                created_at=now,
                updated_at=now
            )
            db.add(score)
        else:
            score.value = number
            score.comment = comment
            score.updated_at = now

        await db.flush()

        # Checked after the flush: the pending write now holds the database
        # write lock, so a certification committed by another worker is visible
        if await get_active_judge_certification(db, subcategory_id, judge_id) is not None:
            logger.warning(
                f"[SCORE LOCKED] judge={judge_id} subcategory={subcategory_id} "
                f"contestant={contestant_id}"
            )
            raise LockedError(
                f"Judge {judge_id} has certified subcategory {subcategory_id}; scores are locked",
                details={"judge_id": judge_id, "subcategory_id": subcategory_id}
            )
        return score

    @staticmethod
    async def get_score(
        db: AsyncSession,
        judge_id: int,
        contestant_id: int,
        criterion_id: int
    ) -> Optional[Score]:
        result = await db.execute(
            select(Score).where(
                and_(
                    Score.judge_id == judge_id,
                    Score.contestant_id == contestant_id,
                    Score.criterion_id == criterion_id
                )
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_scores(
        db: AsyncSession,
        subcategory_id: int,
        judge_id: Optional[int] = None,
        contestant_id: Optional[int] = None
    ) -> List[Score]:
        query = select(Score).where(Score.subcategory_id == subcategory_id)
        if judge_id is not None:
            query = query.where(Score.judge_id == judge_id)
        if contestant_id is not None:
            query = query.where(Score.contestant_id == contestant_id)
        query = query.order_by(Score.contestant_id, Score.judge_id, Score.criterion_id)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def add_deduction(
        db: AsyncSession,
        actor_id: int,
        actor_role_claim: str,
        subcategory_id: int,
        contestant_id: int,
        amount: Any,
        comment: Optional[str],
        signature_name: Optional[str]
    ) -> OverallDeduction:
        """
        Record a signed overall deduction for a contestant.

        Organizers and head judges only. Rejected once the subcategory's
        totals are certified.

        Raises:
            RoleError: Claim not permitted, or judge who is not head judge
            ValidationError: Non-positive amount, blank comment or signature
            SignatureMismatchError: Signature does not match the actor
            LockedError: Subcategory is TALLY_CERTIFIED or later
        """
        role = require_role(actor_role_claim, "add_deduction")
        number = to_decimal(amount, "amount")
        if number <= 0:
            raise ValidationError("Deduction must be greater than 0", details={"amount": str(number)})
        if not comment or not comment.strip():
            raise ValidationError("Deduction comment is required")
        if not signature_name or not signature_name.strip():
            raise ValidationError("Signature required for deductions")

        actor = await db.get(User, actor_id)
        if actor is None:
            raise NotFoundError("User", actor_id)
        require_account_role(actor, role, "add_deduction")
        if not SignatureVerifier.verify(actor, signature_name):
            raise SignatureMismatchError(
                "Signature must match the signer's name on file",
                details={"actor_id": actor_id}
            )
        if await db.get(Contestant, contestant_id) is None:
            raise NotFoundError("Contestant", contestant_id)

        async with certification_locks.hold(subcategory_id):
            try:
                state = await get_certification_state(db, subcategory_id)
                if state.at_least(CertificationState.TALLY_CERTIFIED):
                    raise LockedError(
                        f"Subcategory {subcategory_id} totals are certified; deductions are locked",
                        code=ErrorCode.DEDUCTION_LOCKED,
                        details={"subcategory_id": subcategory_id, "state": state.value}
                    )

                now = utcnow()
                deduction = OverallDeduction(
                    subcategory_id=subcategory_id,
                    contestant_id=contestant_id,
                    amount=number,
                    comment=comment.strip(),
                    signature_name=signature_name.strip(),
                    signed_at=now,
                    created_by=actor_id
                )
                db.add(deduction)
                await db.flush()

                await append_audit_entry(
                    db,
                    subcategory_id=subcategory_id,
                    action=AuditAction.DEDUCTION_ADDED,
                    actor_id=actor_id,
                    actor_role=role.value,
                    event_data={
                        "deduction_id": deduction.id,
                        "contestant_id": contestant_id,
                        "amount": str(number),
                    },
                    reason=comment.strip()
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(
            f"Deduction added: subcategory={subcategory_id} contestant={contestant_id} "
            f"amount={number} by={actor_id}"
        )
        return deduction

    @staticmethod
    async def list_deductions(
        db: AsyncSession,
        subcategory_id: int,
        contestant_id: Optional[int] = None
    ) -> List[OverallDeduction]:
        query = select(OverallDeduction).where(OverallDeduction.subcategory_id == subcategory_id)
        if contestant_id is not None:
            query = query.where(OverallDeduction.contestant_id == contestant_id)
        result = await db.execute(query.order_by(OverallDeduction.id))
        return list(result.scalars().all())
