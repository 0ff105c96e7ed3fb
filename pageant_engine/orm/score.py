"""
Raw judge scores and signed overall deductions.

A Score is unique per (judge, contestant, criterion); a later submission
overwrites the stored value in place.
"""
from sqlalchemy import (
    Column, Integer, ForeignKey, DateTime, Numeric, Text, String,
    CheckConstraint, UniqueConstraint, Index
)

from pageant_engine.orm.base import BaseModel, SCORE_PRECISION, SCORE_SCALE, iso


class Score(BaseModel):
    __tablename__ = "scores"

    judge_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    contestant_id = Column(Integer, ForeignKey("contestants.id", ondelete="CASCADE"), nullable=False)
    criterion_id = Column(Integer, ForeignKey("criteria.id", ondelete="CASCADE"), nullable=False)

    # Denormalized from the criterion for scope queries
    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)

    value = Column(Numeric(SCORE_PRECISION, SCORE_SCALE), nullable=False)
    comment = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("judge_id", "contestant_id", "criterion_id", name="uq_score_judge_contestant_criterion"),
        CheckConstraint("value >= 0", name="ck_score_value_non_negative"),
        Index("idx_scores_subcategory", "subcategory_id"),
        Index("idx_scores_category", "category_id"),
        Index("idx_scores_judge_subcategory", "judge_id", "subcategory_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "judge_id": self.judge_id,
            "contestant_id": self.contestant_id,
            "criterion_id": self.criterion_id,
            "subcategory_id": self.subcategory_id,
            "category_id": self.category_id,
            "value": str(self.value) if self.value is not None else None,
            "comment": self.comment,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class OverallDeduction(BaseModel):
    """
    Signed penalty against a contestant's subcategory total.
    Requires a comment and the signer's typed name.
    """
    __tablename__ = "overall_deductions"

    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    contestant_id = Column(Integer, ForeignKey("contestants.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(SCORE_PRECISION, SCORE_SCALE), nullable=False)
    comment = Column(Text, nullable=False)
    signature_name = Column(String(200), nullable=False)
    signed_at = Column(DateTime, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_deduction_amount_positive"),
        Index("idx_deductions_subcategory_contestant", "subcategory_id", "contestant_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subcategory_id": self.subcategory_id,
            "contestant_id": self.contestant_id,
            "amount": str(self.amount),
            "comment": self.comment,
            "signature_name": self.signature_name,
            "signed_at": iso(self.signed_at),
            "created_by": self.created_by,
        }
