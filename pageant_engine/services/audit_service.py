"""
Certification Audit Trail (hash chaining)

Tamper-evident, append-only log of every certification, revocation and
deduction. Entries are chained per subcategory:

- Each entry references the previous entry's hash
- The first entry of a subcategory has previous_hash = "GENESIS"
- Event payloads are hashed as canonical JSON (sorted keys, no whitespace)

Entries are added inside the caller's transaction (flush, no commit), so an
action and its audit entry are committed or rolled back together.
"""
import hashlib
import json
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.orm.audit_log import CertificationAuditEntry, AuditAction
from pageant_engine.orm.base import utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"


def compute_entry_hash(
    previous_hash: str,
    subcategory_id: int,
    action: AuditAction,
    actor_id: Optional[int],
    target_level: Optional[str],
    reason: Optional[str],
    event_data: Dict[str, Any],
    timestamp: datetime
) -> str:
    """
    SHA256 over the previous hash and the entry contents. Modifying any
    stored entry breaks its own hash and every later link.
    """
    data = {
        "previous_hash": previous_hash,
        "subcategory_id": subcategory_id,
        "action": action.value,
        "actor_id": actor_id,
        "target_level": target_level,
        "reason": reason,
        "event_data": event_data,
        "timestamp": timestamp.isoformat()
    }
    data_json = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(data_json.encode()).hexdigest()


async def get_last_audit_entry(
    subcategory_id: int,
    db: AsyncSession
) -> Optional[CertificationAuditEntry]:
    result = await db.execute(
        select(CertificationAuditEntry)
        .where(CertificationAuditEntry.subcategory_id == subcategory_id)
        .order_by(CertificationAuditEntry.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def append_audit_entry(
    db: AsyncSession,
    subcategory_id: int,
    action: AuditAction,
    actor_id: Optional[int],
    actor_role: Optional[str],
    event_data: Dict[str, Any],
    target_level: Optional[str] = None,
    reason: Optional[str] = None
) -> CertificationAuditEntry:
    """
    Append an entry to the subcategory's chain.

    Callers hold the subcategory's certification lock, so the chain tail
    cannot move between reading it and flushing the new entry.
    """
    last_entry = await get_last_audit_entry(subcategory_id, db)
    previous_hash = last_entry.entry_hash if last_entry else GENESIS_HASH

    now = utcnow()
    entry_hash = compute_entry_hash(
        previous_hash=previous_hash,
        subcategory_id=subcategory_id,
        action=action,
        actor_id=actor_id,
        target_level=target_level,
        reason=reason,
        event_data=event_data,
        timestamp=now
    )

    entry = CertificationAuditEntry(
        subcategory_id=subcategory_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        target_level=target_level,
        reason=reason,
        event_data_json=json.dumps(event_data, sort_keys=True, default=str),
        previous_hash=previous_hash,
        entry_hash=entry_hash,
        created_at=now,
        updated_at=now
    )
    db.add(entry)
    await db.flush()

    logger.info(
        f"Audit entry appended: subcategory={subcategory_id}, "
        f"action={action.value}, actor={actor_id}, hash={entry_hash[:16]}..."
    )
    return entry


async def list_audit_entries(
    db: AsyncSession,
    subcategory_id: int,
    action: Optional[AuditAction] = None
) -> List[CertificationAuditEntry]:
    query = (
        select(CertificationAuditEntry)
        .where(CertificationAuditEntry.subcategory_id == subcategory_id)
        .order_by(CertificationAuditEntry.id.asc())
    )
    if action is not None:
        query = query.where(CertificationAuditEntry.action == action)
    result = await db.execute(query)
    return list(result.scalars().all())


async def verify_audit_chain(
    db: AsyncSession,
    subcategory_id: int
) -> Tuple[bool, Optional[int]]:
    """
    Walk the chain oldest first and recompute every link.

    Returns:
        Tuple of (is_valid, broken_at_entry_id)
    """
    entries = await list_audit_entries(db, subcategory_id)
    expected_previous = GENESIS_HASH

    for entry in entries:
        if entry.previous_hash != expected_previous:
            logger.error(
                f"Audit chain broken at entry {entry.id}: "
                f"expected previous_hash={expected_previous[:16]}..., "
                f"found={entry.previous_hash[:16]}..."
            )
            return False, entry.id

        computed = compute_entry_hash(
            previous_hash=entry.previous_hash,
            subcategory_id=entry.subcategory_id,
            action=entry.action,
            actor_id=entry.actor_id,
            target_level=entry.target_level,
            reason=entry.reason,
            event_data=entry.event_data,
            timestamp=entry.created_at
        )
        if computed != entry.entry_hash:
            logger.error(
                f"Audit entry hash mismatch at entry {entry.id}: "
                f"stored={entry.entry_hash[:16]}..., computed={computed[:16]}..."
            )
            return False, entry.id

        expected_previous = entry.entry_hash

    return True, None
