"""
Board-initiated removal of one judge's scores from a subcategory.

Status flow: PENDING → COMPLETED (or CANCELLED)

A request needs the typed signatures of an auditor, a tally master and the
head judge. The last signature completes it: the judge's certification is
revoked and their scores in the subcategory are deleted.
"""
import enum

from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Index, Enum as SQLEnum

from pageant_engine.orm.base import BaseModel, iso


class RemovalStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScoreRemovalRequest(BaseModel):
    __tablename__ = "judge_score_removal_requests"

    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    judge_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    requested_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reason = Column(Text, nullable=False)
    status = Column(
        SQLEnum(RemovalStatus, native_enum=False, length=16),
        nullable=False,
        default=RemovalStatus.PENDING
    )
    version = Column(Integer, nullable=False, default=0)

    auditor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    auditor_signature = Column(String(200), nullable=True)
    auditor_signed_at = Column(DateTime, nullable=True)

    tally_master_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    tally_master_signature = Column(String(200), nullable=True)
    tally_master_signed_at = Column(DateTime, nullable=True)

    head_judge_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    head_judge_signature = Column(String(200), nullable=True)
    head_judge_signed_at = Column(DateTime, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    removed_score_count = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_score_removal_subcategory_judge", "subcategory_id", "judge_id"),
        Index("idx_score_removal_status", "status"),
    )

    @property
    def is_fully_signed(self) -> bool:
        return all((
            self.auditor_signed_at is not None,
            self.tally_master_signed_at is not None,
            self.head_judge_signed_at is not None,
        ))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subcategory_id": self.subcategory_id,
            "judge_id": self.judge_id,
            "requested_by": self.requested_by,
            "reason": self.reason,
            "status": self.status.value if self.status else None,
            "auditor_signature": self.auditor_signature,
            "auditor_signed_at": iso(self.auditor_signed_at),
            "tally_master_signature": self.tally_master_signature,
            "tally_master_signed_at": iso(self.tally_master_signed_at),
            "head_judge_signature": self.head_judge_signature,
            "head_judge_signed_at": iso(self.head_judge_signed_at),
            "completed_at": iso(self.completed_at),
            "removed_score_count": self.removed_score_count,
            "cancelled_at": iso(self.cancelled_at),
        }
