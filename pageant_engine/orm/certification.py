"""
Subcategory certification records.

Status flow: OPEN → JUDGES_CERTIFIED → TALLY_CERTIFIED → FINAL_CERTIFIED

A SubcategoryCertification row is created on the first certifying action
and never deleted. Every write bumps ``version`` through a compare-and-set
update so that concurrent writers cannot both succeed.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Index,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from pageant_engine.orm.base import BaseModel, iso


class CertificationState(str, enum.Enum):
    OPEN = "OPEN"
    JUDGES_CERTIFIED = "JUDGES_CERTIFIED"
    TALLY_CERTIFIED = "TALLY_CERTIFIED"
    FINAL_CERTIFIED = "FINAL_CERTIFIED"

    @property
    def rank(self) -> int:
        return _STATE_ORDER[self]

    def at_least(self, other: "CertificationState") -> bool:
        return self.rank >= other.rank


_STATE_ORDER = {
    CertificationState.OPEN: 0,
    CertificationState.JUDGES_CERTIFIED: 1,
    CertificationState.TALLY_CERTIFIED: 2,
    CertificationState.FINAL_CERTIFIED: 3,
}


class CertificationLevel(str, enum.Enum):
    """Sign-off levels, lowest first. Revoking a level clears everything above it."""
    JUDGE = "judge"
    TALLY = "tally"
    FINAL = "final"

    @property
    def reached_state(self) -> CertificationState:
        return {
            CertificationLevel.JUDGE: CertificationState.JUDGES_CERTIFIED,
            CertificationLevel.TALLY: CertificationState.TALLY_CERTIFIED,
            CertificationLevel.FINAL: CertificationState.FINAL_CERTIFIED,
        }[self]


class SubcategoryCertification(BaseModel):
    """Sign-off record for one (contest, category, subcategory)."""
    __tablename__ = "subcategory_certifications"

    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)

    state = Column(
        SQLEnum(CertificationState, native_enum=False, length=32),
        nullable=False,
        default=CertificationState.OPEN
    )
    version = Column(Integer, nullable=False, default=0)

    # Tally Master level
    tally_signer_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    tally_signature_name = Column(String(200), nullable=True)
    tally_certified_at = Column(DateTime, nullable=True)

    # Auditor/Board level
    final_signer_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    final_signer_role = Column(String(32), nullable=True)
    final_signature_name = Column(String(200), nullable=True)
    final_certified_at = Column(DateTime, nullable=True)

    judge_certifications = relationship(
        "JudgeCertification",
        back_populates="certification",
        order_by="JudgeCertification.id"
    )

    __table_args__ = (
        UniqueConstraint("subcategory_id", name="uq_certification_subcategory"),
        Index("idx_certifications_state", "state"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contest_id": self.contest_id,
            "category_id": self.category_id,
            "subcategory_id": self.subcategory_id,
            "state": self.state.value if self.state else None,
            "version": self.version,
            "tally_signer_id": self.tally_signer_id,
            "tally_signature_name": self.tally_signature_name,
            "tally_certified_at": iso(self.tally_certified_at),
            "final_signer_id": self.final_signer_id,
            "final_signer_role": self.final_signer_role,
            "final_signature_name": self.final_signature_name,
            "final_certified_at": iso(self.final_certified_at),
        }


class JudgeCertification(BaseModel):
    """
    One judge's attestation for a subcategory. Revocation stamps
    ``revoked_at`` instead of deleting, so at most one row per
    (subcategory, judge) has ``revoked_at IS NULL``.
    """
    __tablename__ = "judge_certifications"

    certification_id = Column(
        Integer,
        ForeignKey("subcategory_certifications.id", ondelete="CASCADE"),
        nullable=False
    )
    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    judge_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    signature_name = Column(String(200), nullable=True)
    certified_at = Column(DateTime, nullable=False)

    revoked_at = Column(DateTime, nullable=True)
    revocation_entry_id = Column(Integer, ForeignKey("certification_audit_entries.id"), nullable=True)

    certification = relationship("SubcategoryCertification", back_populates="judge_certifications")

    __table_args__ = (
        Index("idx_judge_certifications_lookup", "subcategory_id", "judge_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subcategory_id": self.subcategory_id,
            "judge_id": self.judge_id,
            "signature_name": self.signature_name,
            "certified_at": iso(self.certified_at),
            "revoked_at": iso(self.revoked_at),
        }
