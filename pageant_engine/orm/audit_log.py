"""
Append-only audit trail for certification-affecting actions.

Rules:
- No updates, no deletes
- Entries are hash-chained per subcategory
- First entry per subcategory has previous_hash = "GENESIS"
"""
import enum
import json

from sqlalchemy import Column, Integer, String, Text, ForeignKey, Index, Enum as SQLEnum

from pageant_engine.orm.base import BaseModel, iso


class AuditAction(str, enum.Enum):
    JUDGE_CERTIFIED = "judge_certified"
    TALLY_CERTIFIED = "tally_certified"
    FINAL_CERTIFIED = "final_certified"
    CERTIFICATION_REVOKED = "certification_revoked"
    DEDUCTION_ADDED = "deduction_added"
    SCORE_REMOVAL_REQUESTED = "score_removal_requested"
    SCORE_REMOVAL_SIGNED = "score_removal_signed"
    SCORE_REMOVAL_CANCELLED = "score_removal_cancelled"
    SCORES_REMOVED = "scores_removed"


class CertificationAuditEntry(BaseModel):
    __tablename__ = "certification_audit_entries"

    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    action = Column(SQLEnum(AuditAction, native_enum=False, length=32), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_role = Column(String(32), nullable=True)
    target_level = Column(String(16), nullable=True)
    reason = Column(Text, nullable=True)
    event_data_json = Column(Text, nullable=False, default="{}")

    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("idx_audit_entries_subcategory", "subcategory_id", "id"),
    )

    @property
    def event_data(self) -> dict:
        return json.loads(self.event_data_json) if self.event_data_json else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subcategory_id": self.subcategory_id,
            "action": self.action.value if self.action else None,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "target_level": self.target_level,
            "reason": self.reason,
            "event_data_json": self.event_data_json,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
            "created_at": iso(self.created_at),
        }
