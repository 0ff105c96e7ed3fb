"""
Certification State Machine

Strict, auditable, concurrency-safe sign-off per subcategory.

State flow:
    OPEN → JUDGES_CERTIFIED → TALLY_CERTIFIED → FINAL_CERTIFIED

Rules:
- The record reaches JUDGES_CERTIFIED only when every assigned judge holds an
  active certification, and at least one judge is assigned
- Tally certification needs JUDGES_CERTIFIED; final needs TALLY_CERTIFIED
- A certified level is never re-certified silently: it must be revoked first
- Revocation clears the target level and every level above it, and is
  always written to the audit trail

Every write runs in one transaction that:
1. holds the subcategory's in-process lock
2. loads the record with SELECT ... FOR UPDATE
3. bumps ``version`` with UPDATE ... WHERE version = :expected
"""
import logging
from typing import Any, List, Optional, Sequence, Tuple, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.core.locks import certification_locks, judge_scope_locks
from pageant_engine.errors import (
    AlreadyCertifiedError, ConfigurationError, EngineError, ErrorCode, NotAssignedError,
    NotFoundError, PreconditionError, RoleError, SignatureMismatchError, ValidationError
)
from pageant_engine.orm.audit_log import AuditAction
from pageant_engine.orm.base import utcnow
from pageant_engine.orm.certification import (
    CertificationLevel, CertificationState, JudgeCertification, SubcategoryCertification
)
from pageant_engine.orm.contest import Category, Subcategory
from pageant_engine.orm.user import User, UserRole
from pageant_engine.rbac import allowed_roles, require_role
from pageant_engine.schemas.certification import CertificationStatus
from pageant_engine.services import projection_service
from pageant_engine.services.audit_service import append_audit_entry
from pageant_engine.services.certification_queries import (
    get_active_judge_certification, get_active_judge_certifications,
    get_assigned_judge_ids, get_certification_record, get_certification_state,
    lock_judge_assignment
)
from pageant_engine.services.signature_verifier import SignatureVerifier

logger = logging.getLogger(__name__)


class StaleRecordError(Exception):
    """Compare-and-set lost: the record changed after it was read."""

    def __init__(self, subcategory_id: int, expected_version: int):
        self.subcategory_id = subcategory_id
        self.expected_version = expected_version
        super().__init__(
            f"Certification record for subcategory {subcategory_id} "
            f"moved past version {expected_version}"
        )


def _parse_level(target_level: Union[str, CertificationLevel]) -> CertificationLevel:
    if isinstance(target_level, CertificationLevel):
        return target_level
    try:
        return CertificationLevel(str(target_level).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown certification level {target_level!r}",
            details={"allowed": [level.value for level in CertificationLevel]}
        )


def _judge_level_state(assigned: Sequence[int], certified: Sequence[int]) -> CertificationState:
    """State implied by judge sign-offs alone."""
    if assigned and set(assigned) <= set(certified):
        return CertificationState.JUDGES_CERTIFIED
    return CertificationState.OPEN


class CertificationStateMachine:

    # ================= INTERNALS =================

    @staticmethod
    async def _load_subcategory(db: AsyncSession, subcategory_id: int) -> Subcategory:
        subcategory = await db.get(Subcategory, subcategory_id)
        if subcategory is None:
            raise NotFoundError("Subcategory", subcategory_id)
        return subcategory

    @staticmethod
    async def _require_judges(db: AsyncSession, subcategory_id: int) -> List[int]:
        assigned = await get_assigned_judge_ids(db, subcategory_id)
        if not assigned:
            logger.warning(f"[CERTIFY CONFIG] subcategory={subcategory_id} has no judges assigned")
            raise ConfigurationError(
                f"Subcategory {subcategory_id} has no judges assigned",
                code=ErrorCode.NO_JUDGES_ASSIGNED,
                details={"subcategory_id": subcategory_id}
            )
        return assigned

    @staticmethod
    async def _get_or_create_record(
        db: AsyncSession,
        subcategory: Subcategory
    ) -> SubcategoryCertification:
        record = await get_certification_record(db, subcategory.id, for_update=True)
        if record is not None:
            return record

        category = await db.get(Category, subcategory.category_id)
        now = utcnow()
        record = SubcategoryCertification(
            contest_id=category.contest_id,
            category_id=category.id,
            subcategory_id=subcategory.id,
            state=CertificationState.OPEN,
            version=0,
            created_at=now,
            updated_at=now
        )
        db.add(record)
        await db.flush()
        logger.info(f"Certification record created for subcategory {subcategory.id}")
        return record

    @staticmethod
    async def _compare_and_set(
        db: AsyncSession,
        record: SubcategoryCertification,
        **values: Any
    ) -> None:
        """
        Write ``values`` and bump the version, only if nobody else did first.

        Raises:
            StaleRecordError: The stored version no longer matches
        """
        expected_version = record.version
        result = await db.execute(
            update(SubcategoryCertification)
            .where(
                SubcategoryCertification.id == record.id,
                SubcategoryCertification.version == expected_version
            )
            .values(version=expected_version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleRecordError(record.subcategory_id, expected_version)
        await db.refresh(record)

    @staticmethod
    async def _load_signer(
        db: AsyncSession,
        signer_id: int,
        role_claim: Any,
        action: str
    ) -> User:
        """The claim must be permitted for ``action`` and held by the account."""
        require_role(role_claim, action)
        signer = await db.get(User, signer_id)
        if not SignatureVerifier.has_role(signer, role_claim, allowed_roles(action)):
            logger.warning(
                f"[RBAC DENIED] action={action} user={signer_id} "
                f"role_claim={role_claim!r} does not match account"
            )
            raise RoleError(
                f"User {signer_id} does not hold role '{role_claim}'",
                details={"user_id": signer_id, "role_claim": str(role_claim), "action": action}
            )
        return signer

    @staticmethod
    def _check_signature(signer: User, asserted_name: Optional[str]) -> None:
        if not SignatureVerifier.verify(signer, asserted_name):
            raise SignatureMismatchError(
                "Typed signature does not match the signer's name on file",
                details={"user_id": signer.id}
            )

    @staticmethod
    async def _report_lost_race(
        db: AsyncSession,
        subcategory_id: int,
        target: CertificationState
    ) -> None:
        """Re-read after a lost compare-and-set and raise what the winner caused."""
        await db.rollback()
        state = await get_certification_state(db, subcategory_id)
        logger.warning(
            f"[CERTIFY CONFLICT] subcategory={subcategory_id} target={target.value} "
            f"current={state.value}"
        )
        if state.at_least(target):
            raise AlreadyCertifiedError(
                f"Subcategory {subcategory_id} is already {state.value}",
                details={"subcategory_id": subcategory_id, "state": state.value}
            )
        raise PreconditionError(
            f"Subcategory {subcategory_id} changed concurrently to {state.value}",
            details={"subcategory_id": subcategory_id, "state": state.value}
        )

    # ================= JUDGE LEVEL =================

    @classmethod
    async def certify_as_judge(
        cls,
        db: AsyncSession,
        judge_id: int,
        subcategory_id: int,
        signature_name: Optional[str] = None
    ) -> JudgeCertification:
        """
        Record one judge's sign-off for a subcategory.

        Completing the roster advances the record to JUDGES_CERTIFIED.
        From here on the judge's scores in the subcategory are locked.

        Raises:
            NotFoundError: Unknown subcategory
            ConfigurationError: No judges assigned
            NotAssignedError: Judge not on the roster
            AlreadyCertifiedError: Judge already holds an active certification
            SignatureMismatchError: A typed signature was given and does not match
        """
        async with certification_locks.hold(subcategory_id):
            async with judge_scope_locks.hold((subcategory_id, judge_id)):
                try:
                    subcategory = await cls._load_subcategory(db, subcategory_id)
                    assigned = await cls._require_judges(db, subcategory_id)

                    if judge_id not in assigned or not await lock_judge_assignment(db, subcategory_id, judge_id):
                        raise NotAssignedError(
                            f"Judge {judge_id} is not assigned to subcategory {subcategory_id}",
                            details={"judge_id": judge_id, "subcategory_id": subcategory_id}
                        )

                    if await get_active_judge_certification(db, subcategory_id, judge_id) is not None:
                        raise AlreadyCertifiedError(
                            f"Judge {judge_id} has already certified subcategory {subcategory_id}",
                            details={"judge_id": judge_id, "subcategory_id": subcategory_id}
                        )

                    judge = await db.get(User, judge_id)
                    if judge is None:
                        raise NotFoundError("User", judge_id)
                    if signature_name is not None:
                        cls._check_signature(judge, signature_name)

                    record = await cls._get_or_create_record(db, subcategory)
                    from_state = record.state

                    now = utcnow()
                    certification = JudgeCertification(
                        certification_id=record.id,
                        subcategory_id=subcategory_id,
                        judge_id=judge_id,
                        signature_name=signature_name.strip() if signature_name else None,
                        certified_at=now,
                        created_at=now,
                        updated_at=now
                    )
                    db.add(certification)
                    await db.flush()

                    active = await get_active_judge_certifications(db, subcategory_id)
                    certified_ids = [c.judge_id for c in active]

                    to_state = from_state
                    if not from_state.at_least(CertificationState.TALLY_CERTIFIED):
                        to_state = _judge_level_state(assigned, certified_ids)

                    await append_audit_entry(
                        db,
                        subcategory_id=subcategory_id,
                        action=AuditAction.JUDGE_CERTIFIED,
                        actor_id=judge_id,
                        actor_role=UserRole.judge.value,
                        target_level=CertificationLevel.JUDGE.value,
                        event_data={
                            "judge_certification_id": certification.id,
                            "from_state": from_state.value,
                            "to_state": to_state.value,
                            "certified_judges": len(set(certified_ids) & set(assigned)),
                            "assigned_judges": len(assigned),
                        }
                    )
                    await cls._compare_and_set(db, record, state=to_state)
                    await db.commit()

                except StaleRecordError:
                    await cls._report_lost_race(
                        db, subcategory_id, CertificationState.JUDGES_CERTIFIED
                    )
                except EngineError as e:
                    await db.rollback()
                    logger.warning(
                        f"[CERTIFY JUDGE REJECTED] subcategory={subcategory_id} "
                        f"judge={judge_id} code={e.code}"
                    )
                    raise
                except Exception:
                    await db.rollback()
                    logger.exception(f"Judge certification failed for subcategory {subcategory_id}")
                    raise

        logger.info(
            f"[CERTIFY JUDGE] subcategory={subcategory_id} judge={judge_id} "
            f"({len(set(certified_ids) & set(assigned))}/{len(assigned)}) "
            f"{from_state.value} → {to_state.value}"
        )
        return certification

    # ================= TALLY / FINAL LEVELS =================

    @classmethod
    async def _certify_level(
        cls,
        db: AsyncSession,
        signer_id: int,
        signer_role_claim: Any,
        subcategory_id: int,
        asserted_signature_name: Optional[str],
        level: CertificationLevel
    ) -> SubcategoryCertification:
        if level == CertificationLevel.TALLY:
            action, audit_action = "certify_totals", AuditAction.TALLY_CERTIFIED
            required = CertificationState.JUDGES_CERTIFIED
        else:
            action, audit_action = "certify_final", AuditAction.FINAL_CERTIFIED
            required = CertificationState.TALLY_CERTIFIED
        target = level.reached_state

        async with certification_locks.hold(subcategory_id):
            try:
                await cls._load_subcategory(db, subcategory_id)
                record = await get_certification_record(db, subcategory_id, for_update=True)
                from_state = record.state if record is not None else CertificationState.OPEN

                if from_state.at_least(target):
                    raise AlreadyCertifiedError(
                        f"Subcategory {subcategory_id} is already {from_state.value}; "
                        f"revoke before re-certifying",
                        details={"subcategory_id": subcategory_id, "state": from_state.value}
                    )

                assigned = await cls._require_judges(db, subcategory_id)
                active = await get_active_judge_certifications(db, subcategory_id)
                uncertified = sorted(set(assigned) - {c.judge_id for c in active})

                # The roster can change after judge sign-off; below tally the
                # live roster decides, not the stored state
                current = from_state
                if not from_state.at_least(CertificationState.TALLY_CERTIFIED):
                    current = _judge_level_state(assigned, [c.judge_id for c in active])

                if uncertified:
                    raise PreconditionError(
                        f"Assigned judges {uncertified} have not certified subcategory {subcategory_id}",
                        code=ErrorCode.JUDGES_NOT_CERTIFIED,
                        details={
                            "subcategory_id": subcategory_id,
                            "state": from_state.value,
                            "uncertified_judge_ids": uncertified,
                        }
                    )
                if current != required:
                    raise PreconditionError(
                        f"Subcategory {subcategory_id} must be {required.value} "
                        f"to reach {target.value}; it is {current.value}",
                        details={
                            "subcategory_id": subcategory_id,
                            "state": current.value,
                            "required_state": required.value,
                        }
                    )

                signer = await cls._load_signer(db, signer_id, signer_role_claim, action)
                cls._check_signature(signer, asserted_signature_name)

                now = utcnow()
                signature = " ".join(asserted_signature_name.split())
                if level == CertificationLevel.TALLY:
                    values = {
                        "tally_signer_id": signer_id,
                        "tally_signature_name": signature,
                        "tally_certified_at": now,
                    }
                else:
                    values = {
                        "final_signer_id": signer_id,
                        "final_signer_role": signer.role.value,
                        "final_signature_name": signature,
                        "final_certified_at": now,
                    }

                await append_audit_entry(
                    db,
                    subcategory_id=subcategory_id,
                    action=audit_action,
                    actor_id=signer_id,
                    actor_role=signer.role.value,
                    target_level=level.value,
                    event_data={
                        "from_state": from_state.value,
                        "to_state": target.value,
                        "signature_name": signature,
                        "version": record.version + 1,
                    }
                )
                await cls._compare_and_set(db, record, state=target, **values)
                await db.commit()

            except StaleRecordError:
                await cls._report_lost_race(db, subcategory_id, target)
            except EngineError as e:
                await db.rollback()
                logger.warning(
                    f"[CERTIFY {level.name} REJECTED] subcategory={subcategory_id} "
                    f"signer={signer_id} code={e.code}"
                )
                raise
            except Exception:
                await db.rollback()
                logger.exception(f"{level.name} certification failed for subcategory {subcategory_id}")
                raise

        logger.info(
            f"[CERTIFY {level.name}] subcategory={subcategory_id} signer={signer_id} "
            f"{from_state.value} → {target.value}"
        )
        return record

    @classmethod
    async def certify_totals(
        cls,
        db: AsyncSession,
        signer_id: int,
        signer_role_claim: Any,
        subcategory_id: int,
        asserted_signature_name: Optional[str]
    ) -> SubcategoryCertification:
        """
        Tally Master sign-off: JUDGES_CERTIFIED → TALLY_CERTIFIED.

        Raises (first failing check wins):
            AlreadyCertifiedError: Already TALLY_CERTIFIED or later
            ConfigurationError: No judges assigned
            PreconditionError: Not JUDGES_CERTIFIED
            RoleError: Claim is not tally_master or the account does not hold it
            SignatureMismatchError: Typed name does not match the signer
        """
        return await cls._certify_level(
            db, signer_id, signer_role_claim, subcategory_id,
            asserted_signature_name, CertificationLevel.TALLY
        )

    @classmethod
    async def certify_final(
        cls,
        db: AsyncSession,
        signer_id: int,
        signer_role_claim: Any,
        subcategory_id: int,
        asserted_signature_name: Optional[str]
    ) -> SubcategoryCertification:
        """
        Auditor/Board sign-off: TALLY_CERTIFIED → FINAL_CERTIFIED.

        Same checks and ordering as certify_totals.
        """
        return await cls._certify_level(
            db, signer_id, signer_role_claim, subcategory_id,
            asserted_signature_name, CertificationLevel.FINAL
        )

    # ================= REVOCATION =================

    @classmethod
    async def revoke_in_transaction(
        cls,
        db: AsyncSession,
        subcategory_id: int,
        level: CertificationLevel,
        reason: str,
        actor_id: int,
        actor_role: str,
        judge_id: Optional[int] = None,
        event_data: Optional[dict] = None
    ) -> Tuple[SubcategoryCertification, CertificationState, List[JudgeCertification]]:
        """
        Clear ``level`` and everything above it inside the caller's transaction.

        The caller holds the subcategory's certification lock and owns
        commit and rollback.

        Returns:
            (record, from_state, revoked judge certifications)

        Raises:
            PreconditionError: Nothing certified at that level
            StaleRecordError: The record changed after it was locked
        """
        record = await get_certification_record(db, subcategory_id, for_update=True)
        if record is None:
            raise PreconditionError(
                f"Subcategory {subcategory_id} has no certifications to revoke",
                code=ErrorCode.NOTHING_TO_REVOKE,
                details={"subcategory_id": subcategory_id}
            )
        from_state = record.state
        revoked: List[JudgeCertification] = []

        if level == CertificationLevel.JUDGE:
            active = await get_active_judge_certifications(db, subcategory_id)
            if judge_id is not None:
                revoked = [c for c in active if c.judge_id == judge_id]
            else:
                revoked = active
            if not revoked:
                raise PreconditionError(
                    f"No active judge certification to revoke on subcategory {subcategory_id}",
                    code=ErrorCode.NOTHING_TO_REVOKE,
                    details={"subcategory_id": subcategory_id, "judge_id": judge_id}
                )
            assigned = await get_assigned_judge_ids(db, subcategory_id)
            revoked_ids = {c.judge_id for c in revoked}
            remaining = [c.judge_id for c in active if c.judge_id not in revoked_ids]
            to_state = _judge_level_state(assigned, remaining)
        elif level == CertificationLevel.TALLY:
            if not from_state.at_least(CertificationState.TALLY_CERTIFIED):
                raise PreconditionError(
                    f"Subcategory {subcategory_id} totals are not certified",
                    code=ErrorCode.NOTHING_TO_REVOKE,
                    details={"subcategory_id": subcategory_id, "state": from_state.value}
                )
            assigned = await get_assigned_judge_ids(db, subcategory_id)
            active = await get_active_judge_certifications(db, subcategory_id)
            to_state = _judge_level_state(assigned, [c.judge_id for c in active])
        else:
            if from_state != CertificationState.FINAL_CERTIFIED:
                raise PreconditionError(
                    f"Subcategory {subcategory_id} is not final certified",
                    code=ErrorCode.NOTHING_TO_REVOKE,
                    details={"subcategory_id": subcategory_id, "state": from_state.value}
                )
            to_state = CertificationState.TALLY_CERTIFIED

        values = {
            "final_signer_id": None,
            "final_signer_role": None,
            "final_signature_name": None,
            "final_certified_at": None,
        }
        if level != CertificationLevel.FINAL:
            values.update({
                "tally_signer_id": None,
                "tally_signature_name": None,
                "tally_certified_at": None,
            })

        entry = await append_audit_entry(
            db,
            subcategory_id=subcategory_id,
            action=AuditAction.CERTIFICATION_REVOKED,
            actor_id=actor_id,
            actor_role=actor_role,
            target_level=level.value,
            reason=reason,
            event_data={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "revoked_judge_ids": sorted(c.judge_id for c in revoked),
                "cleared_tally": level != CertificationLevel.FINAL and record.tally_signer_id is not None,
                "cleared_final": record.final_signer_id is not None,
                **(event_data or {}),
            }
        )

        now = utcnow()
        for certification in revoked:
            certification.revoked_at = now
            certification.revocation_entry_id = entry.id
            certification.updated_at = now
        await db.flush()

        await cls._compare_and_set(db, record, state=to_state, **values)
        return record, from_state, revoked

    @classmethod
    async def revoke_certification(
        cls,
        db: AsyncSession,
        admin_id: int,
        admin_role_claim: Any,
        subcategory_id: int,
        target_level: Union[str, CertificationLevel],
        reason: Optional[str],
        judge_id: Optional[int] = None
    ) -> SubcategoryCertification:
        """
        Clear ``target_level`` and every level above it.

        ``target_level=judge`` revokes every active judge certification, or
        only ``judge_id``'s when given; that judge can then correct scores
        and certify again.

        Raises:
            RoleError: Claim is not organizer/board or the account does not hold it
            ValidationError: Blank reason or unknown level
            PreconditionError: Nothing certified at that level
        """
        level = _parse_level(target_level)
        try:
            admin = await cls._load_signer(db, admin_id, admin_role_claim, "revoke_certification")
            if not reason or not reason.strip():
                raise ValidationError(
                    "A reason is required to revoke a certification",
                    code=ErrorCode.REASON_REQUIRED,
                    details={"subcategory_id": subcategory_id}
                )
        except EngineError as e:
            await db.rollback()
            logger.warning(
                f"[REVOKE REJECTED] subcategory={subcategory_id} level={level.value} "
                f"admin={admin_id} code={e.code}"
            )
            raise
        reason = reason.strip()

        async with certification_locks.hold(subcategory_id):
            try:
                record, from_state, revoked = await cls.revoke_in_transaction(
                    db, subcategory_id, level, reason, admin_id, admin.role.value, judge_id
                )
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
                    f"[REVOKE REJECTED] subcategory={subcategory_id} level={level.value} "
                    f"admin={admin_id} code={e.code}"
                )
                raise
            except Exception:
                await db.rollback()
                logger.exception(f"Revocation failed for subcategory {subcategory_id}")
                raise

        logger.info(
            f"[REVOKE {level.name}] subcategory={subcategory_id} admin={admin_id} "
            f"judges={sorted(c.judge_id for c in revoked)} {from_state.value} → {record.state.value} "
            f"reason={reason!r}"
        )
        return record

    # ================= READS =================

    @staticmethod
    async def get_state(db: AsyncSession, subcategory_id: int) -> CertificationState:
        return await get_certification_state(db, subcategory_id)

    @staticmethod
    async def get_certification_status(db: AsyncSession, subcategory_id: int) -> CertificationStatus:
        """Current state, per-judge sign-offs and signer metadata."""
        return await projection_service.get_certification_status(db, subcategory_id)
