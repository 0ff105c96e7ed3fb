"""
Judge Score Removal

A board member opens a reasoned request to strike one judge's scores from a
subcategory. An auditor, a tally master and the head judge each co-sign with
their typed name. The last signature completes the request:

- the judge's active certification is revoked, which clears tally and final
- every score the judge entered in the subcategory is deleted
- each step is appended to the subcategory's audit trail

Writes hold the subcategory's certification lock, then the judge's scope
lock, in the same order as the certification state machine.
"""
import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy import select, func, delete, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.core.locks import certification_locks, judge_scope_locks
from pageant_engine.errors import (
    AlreadyCertifiedError, EngineError, ErrorCode, NotFoundError, PreconditionError,
    RoleError, SignatureMismatchError, ValidationError
)
from pageant_engine.orm.audit_log import AuditAction
from pageant_engine.orm.base import utcnow
from pageant_engine.orm.certification import CertificationLevel, CertificationState
from pageant_engine.orm.contest import Subcategory
from pageant_engine.orm.score import Score
from pageant_engine.orm.score_removal import RemovalStatus, ScoreRemovalRequest
from pageant_engine.orm.user import User, UserRole
from pageant_engine.rbac import require_account_role, require_role
from pageant_engine.services.audit_service import append_audit_entry
from pageant_engine.services.certification_queries import (
    get_active_judge_certification, get_certification_state, lock_judge_assignment
)
from pageant_engine.services.signature_verifier import SignatureVerifier
from pageant_engine.state_machines.certification_state import (
    CertificationStateMachine, StaleRecordError
)

logger = logging.getLogger(__name__)

# Column prefix of the signature slot each co-signing role fills
SIGNATURE_SLOTS = {
    UserRole.auditor: "auditor",
    UserRole.tally_master: "tally_master",
    UserRole.judge: "head_judge",
}


class ScoreRemovalService:

    # ================= INTERNALS =================

    @staticmethod
    async def _load_actor(
        db: AsyncSession,
        actor_id: int,
        role_claim: Any,
        action: str
    ) -> Tuple[User, UserRole]:
        role = require_role(role_claim, action)
        actor = await db.get(User, actor_id)
        if actor is None:
            raise NotFoundError("User", actor_id)
        require_account_role(actor, role, action)
        return actor, role

    @staticmethod
    async def _load_request(
        db: AsyncSession,
        request_id: int,
        for_update: bool = False
    ) -> ScoreRemovalRequest:
        query = select(ScoreRemovalRequest).where(ScoreRemovalRequest.id == request_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("ScoreRemovalRequest", request_id)
        return request

    @staticmethod
    def _require_pending(request: ScoreRemovalRequest) -> None:
        if request.status != RemovalStatus.PENDING:
            raise PreconditionError(
                f"Score removal request {request.id} is {request.status.value}",
                code=ErrorCode.REMOVAL_NOT_PENDING,
                details={"request_id": request.id, "status": request.status.value}
            )

    @staticmethod
    async def _compare_and_set(
        db: AsyncSession,
        request: ScoreRemovalRequest,
        **values: Any
    ) -> None:
        expected_version = request.version
        result = await db.execute(
            update(ScoreRemovalRequest)
            .where(
                ScoreRemovalRequest.id == request.id,
                ScoreRemovalRequest.version == expected_version
            )
            .values(version=expected_version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PreconditionError(
                f"Score removal request {request.id} changed concurrently; retry",
                details={"request_id": request.id, "expected_version": expected_version}
            )
        await db.refresh(request)

    @staticmethod
    async def count_judge_scores(db: AsyncSession, subcategory_id: int, judge_id: int) -> int:
        result = await db.execute(
            select(func.count(Score.id)).where(
                and_(Score.subcategory_id == subcategory_id, Score.judge_id == judge_id)
            )
        )
        return result.scalar() or 0

    # ================= REQUEST =================

    @classmethod
    async def request_removal(
        cls,
        db: AsyncSession,
        board_id: int,
        board_role_claim: Any,
        subcategory_id: int,
        judge_id: int,
        reason: Optional[str]
    ) -> ScoreRemovalRequest:
        """
        Open a removal request for one judge's scores in a subcategory.

        Raises:
            RoleError: Claim is not board or the account does not hold it
            ValidationError: Blank reason
            NotFoundError: Unknown subcategory or judge
            PreconditionError: A request is already pending, or the judge
                has no scores to remove
        """
        try:
            board, role = await cls._load_actor(db, board_id, board_role_claim, "request_score_removal")
            if not reason or not reason.strip():
                raise ValidationError(
                    "A reason is required to remove a judge's scores",
                    code=ErrorCode.REASON_REQUIRED,
                    details={"subcategory_id": subcategory_id, "judge_id": judge_id}
                )
            if await db.get(Subcategory, subcategory_id) is None:
                raise NotFoundError("Subcategory", subcategory_id)
            if await db.get(User, judge_id) is None:
                raise NotFoundError("User", judge_id)
        except EngineError:
            await db.rollback()
            raise
        reason = reason.strip()

        async with certification_locks.hold(subcategory_id):
            try:
                result = await db.execute(
                    select(func.count(ScoreRemovalRequest.id)).where(
                        and_(
                            ScoreRemovalRequest.subcategory_id == subcategory_id,
                            ScoreRemovalRequest.judge_id == judge_id,
                            ScoreRemovalRequest.status == RemovalStatus.PENDING
                        )
                    )
                )
                if result.scalar():
                    raise PreconditionError(
                        f"A score removal for judge {judge_id} is already pending",
                        code=ErrorCode.REMOVAL_ALREADY_PENDING,
                        details={"subcategory_id": subcategory_id, "judge_id": judge_id}
                    )

                score_count = await cls.count_judge_scores(db, subcategory_id, judge_id)
                if score_count == 0:
                    raise PreconditionError(
                        f"Judge {judge_id} has no scores in subcategory {subcategory_id}",
                        code=ErrorCode.NO_SCORES_TO_REMOVE,
                        details={"subcategory_id": subcategory_id, "judge_id": judge_id}
                    )

                now = utcnow()
                request = ScoreRemovalRequest(
                    subcategory_id=subcategory_id,
                    judge_id=judge_id,
                    requested_by=board_id,
                    reason=reason,
                    status=RemovalStatus.PENDING,
                    version=0,
                    created_at=now,
                    updated_at=now
                )
                db.add(request)
                await db.flush()

                await append_audit_entry(
                    db,
                    subcategory_id=subcategory_id,
                    action=AuditAction.SCORE_REMOVAL_REQUESTED,
                    actor_id=board_id,
                    actor_role=role.value,
                    reason=reason,
                    event_data={
                        "request_id": request.id,
                        "judge_id": judge_id,
                        "score_count": score_count,
                    }
                )
                await db.commit()
            except EngineError as e:
                await db.rollback()
                logger.warning(
                    f"[SCORE REMOVAL REJECTED] subcategory={subcategory_id} judge={judge_id} code={e.code}"
                )
                raise
            except Exception:
                await db.rollback()
                logger.exception(f"Score removal request failed for subcategory {subcategory_id}")
                raise

        logger.info(
            f"[SCORE REMOVAL REQUESTED] request={request.id} subcategory={subcategory_id} "
            f"judge={judge_id} scores={score_count} by={board.id}"
        )
        return request

    # ================= CO-SIGN =================

    @classmethod
    async def sign_removal(
        cls,
        db: AsyncSession,
        signer_id: int,
        signer_role_claim: Any,
        request_id: int,
        signature_name: Optional[str]
    ) -> ScoreRemovalRequest:
        """
        Add an auditor, tally master or head judge signature.

        The third distinct signature completes the request in the same
        transaction.

        Raises:
            RoleError: Claim not permitted, account does not hold it, judge
                who is not head judge, or the judge whose scores are removed
            NotFoundError: Unknown request
            PreconditionError: Request is no longer pending
            AlreadyCertifiedError: This role already signed the request
            SignatureMismatchError: Typed name does not match the signer
        """
        try:
            signer, role = await cls._load_actor(db, signer_id, signer_role_claim, "sign_score_removal")
            request = await cls._load_request(db, request_id)
            if signer_id == request.judge_id:
                raise RoleError(
                    f"Judge {signer_id} cannot co-sign the removal of their own scores",
                    details={"user_id": signer_id, "request_id": request_id}
                )
        except EngineError:
            await db.rollback()
            raise
        subcategory_id, judge_id = request.subcategory_id, request.judge_id
        slot = SIGNATURE_SLOTS[role]

        async with certification_locks.hold(subcategory_id):
            async with judge_scope_locks.hold((subcategory_id, judge_id)):
                try:
                    request = await cls._load_request(db, request_id, for_update=True)
                    cls._require_pending(request)

                    if getattr(request, f"{slot}_signed_at") is not None:
                        raise AlreadyCertifiedError(
                            f"Score removal request {request_id} already carries a {slot} signature",
                            code=ErrorCode.ALREADY_SIGNED,
                            details={"request_id": request_id, "slot": slot}
                        )
                    if not SignatureVerifier.verify(signer, signature_name):
                        raise SignatureMismatchError(
                            "Typed signature does not match the signer's name on file",
                            details={"user_id": signer_id}
                        )

                    signature = " ".join(signature_name.split())
                    await append_audit_entry(
                        db,
                        subcategory_id=subcategory_id,
                        action=AuditAction.SCORE_REMOVAL_SIGNED,
                        actor_id=signer_id,
                        actor_role=role.value,
                        event_data={
                            "request_id": request_id,
                            "judge_id": judge_id,
                            "slot": slot,
                            "signature_name": signature,
                        }
                    )
                    await cls._compare_and_set(db, request, **{
                        f"{slot}_id": signer_id,
                        f"{slot}_signature": signature,
                        f"{slot}_signed_at": utcnow(),
                    })

                    if request.is_fully_signed:
                        await cls._complete(db, request, signer)
                    await db.commit()

                except StaleRecordError:
                    await db.rollback()
                    state = await get_certification_state(db, subcategory_id)
                    raise PreconditionError(
                        f"Subcategory {subcategory_id} changed concurrently to {state.value}; retry",
                        details={"subcategory_id": subcategory_id, "state": state.value}
                    )
                except EngineError as e:
                    await db.rollback()
                    logger.warning(
                        f"[SCORE REMOVAL SIGN REJECTED] request={request_id} signer={signer_id} code={e.code}"
                    )
                    raise
                except Exception:
                    await db.rollback()
                    logger.exception(f"Score removal signature failed for request {request_id}")
                    raise

        logger.info(
            f"[SCORE REMOVAL SIGNED] request={request_id} slot={slot} signer={signer_id} "
            f"status={request.status.value}"
        )
        return request

    @staticmethod
    async def _complete(db: AsyncSession, request: ScoreRemovalRequest, actor: User) -> None:
        """Revoke the judge's sign-off and delete their scores. Caller holds both locks."""
        subcategory_id, judge_id = request.subcategory_id, request.judge_id
        await lock_judge_assignment(db, subcategory_id, judge_id)
        revoke_reason = f"Score removal request {request.id}: {request.reason}"
        link = {"score_removal_request_id": request.id}

        if await get_active_judge_certification(db, subcategory_id, judge_id) is not None:
            await CertificationStateMachine.revoke_in_transaction(
                db, subcategory_id, CertificationLevel.JUDGE, revoke_reason,
                actor.id, actor.role.value, judge_id=judge_id, event_data=link
            )
        elif (await get_certification_state(db, subcategory_id)).at_least(CertificationState.TALLY_CERTIFIED):
            # Judge left the roster after tally; certified totals still include their scores
            await CertificationStateMachine.revoke_in_transaction(
                db, subcategory_id, CertificationLevel.TALLY, revoke_reason,
                actor.id, actor.role.value, event_data=link
            )

        result = await db.execute(
            delete(Score).where(
                and_(Score.subcategory_id == subcategory_id, Score.judge_id == judge_id)
            )
        )
        removed = result.rowcount

        await append_audit_entry(
            db,
            subcategory_id=subcategory_id,
            action=AuditAction.SCORES_REMOVED,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=request.reason,
            event_data={
                "request_id": request.id,
                "judge_id": judge_id,
                "removed_scores": removed,
            }
        )
        await ScoreRemovalService._compare_and_set(
            db, request,
            status=RemovalStatus.COMPLETED,
            completed_at=utcnow(),
            removed_score_count=removed
        )
        logger.info(
            f"[SCORES REMOVED] request={request.id} subcategory={subcategory_id} "
            f"judge={judge_id} removed={removed}"
        )

    # ================= CANCEL =================

    @classmethod
    async def cancel_removal(
        cls,
        db: AsyncSession,
        board_id: int,
        board_role_claim: Any,
        request_id: int,
        reason: Optional[str]
    ) -> ScoreRemovalRequest:
        """
        Withdraw a pending request. Collected signatures stay on the audit trail.

        Raises:
            RoleError: Claim is not board or the account does not hold it
            ValidationError: Blank reason
            NotFoundError: Unknown request
            PreconditionError: Request is no longer pending
        """
        try:
            board, role = await cls._load_actor(db, board_id, board_role_claim, "cancel_score_removal")
            if not reason or not reason.strip():
                raise ValidationError(
                    "A reason is required to cancel a score removal",
                    code=ErrorCode.REASON_REQUIRED,
                    details={"request_id": request_id}
                )
            request = await cls._load_request(db, request_id)
        except EngineError:
            await db.rollback()
            raise
        reason = reason.strip()
        subcategory_id = request.subcategory_id

        async with certification_locks.hold(subcategory_id):
            try:
                request = await cls._load_request(db, request_id, for_update=True)
                cls._require_pending(request)

                await append_audit_entry(
                    db,
                    subcategory_id=subcategory_id,
                    action=AuditAction.SCORE_REMOVAL_CANCELLED,
                    actor_id=board_id,
                    actor_role=role.value,
                    reason=reason,
                    event_data={"request_id": request_id, "judge_id": request.judge_id}
                )
                await cls._compare_and_set(
                    db, request,
                    status=RemovalStatus.CANCELLED,
                    cancelled_at=utcnow(),
                    cancel_reason=reason
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(f"[SCORE REMOVAL CANCELLED] request={request_id} by={board.id} reason={reason!r}")
        return request

    # ================= READS =================

    @staticmethod
    async def get_request(db: AsyncSession, request_id: int) -> Optional[ScoreRemovalRequest]:
        return await db.get(ScoreRemovalRequest, request_id)

    @staticmethod
    async def list_requests(
        db: AsyncSession,
        subcategory_id: int,
        status: Optional[RemovalStatus] = None
    ) -> List[ScoreRemovalRequest]:
        query = select(ScoreRemovalRequest).where(ScoreRemovalRequest.subcategory_id == subcategory_id)
        if status is not None:
            query = query.where(ScoreRemovalRequest.status == status)
        result = await db.execute(query.order_by(ScoreRemovalRequest.id))
        return list(result.scalars().all())
