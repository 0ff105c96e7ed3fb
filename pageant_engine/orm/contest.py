"""
Contest structure consumed by scoring: contest → category → subcategory →
criterion, plus the judge roster and contestant enrolment per subcategory.

CRUD for these tables belongs to the surrounding application; the engine
reads them and guards criteria once totals are certified.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Numeric,
    CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from pageant_engine.orm.base import BaseModel, SCORE_PRECISION, SCORE_SCALE


class AggregationRule(str, enum.Enum):
    """How per-judge subtotals combine into a contestant total."""
    MEAN = "mean"
    SUM = "sum"


class Contest(BaseModel):
    __tablename__ = "contests"

    name = Column(String(200), nullable=False)

    categories = relationship("Category", back_populates="contest", cascade="all, delete-orphan")


class Category(BaseModel):
    """
    A scored category. ``score_cap`` is the maximum total a contestant may
    reach; ``cap_required`` marks categories that must not tabulate without
    a configured cap.
    """
    __tablename__ = "categories"

    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)

    score_cap = Column(Numeric(SCORE_PRECISION, SCORE_SCALE), nullable=True)
    cap_required = Column(Boolean, nullable=False, default=False)
    aggregation_rule = Column(
        SQLEnum(AggregationRule, native_enum=False, length=16),
        nullable=False,
        default=AggregationRule.MEAN
    )

    contest = relationship("Contest", back_populates="categories")
    subcategories = relationship("Subcategory", back_populates="category", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("score_cap IS NULL OR score_cap > 0", name="ck_category_score_cap_positive"),
    )


class Subcategory(BaseModel):
    """Finest-grained unit that carries its own certification chain."""
    __tablename__ = "subcategories"

    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)

    category = relationship("Category", back_populates="subcategories")
    criteria = relationship(
        "Criterion",
        back_populates="subcategory",
        cascade="all, delete-orphan",
        order_by="Criterion.order_index"
    )


class Criterion(BaseModel):
    __tablename__ = "criteria"

    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    max_score = Column(Numeric(SCORE_PRECISION, SCORE_SCALE), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)

    subcategory = relationship("Subcategory", back_populates="criteria")

    __table_args__ = (
        CheckConstraint("max_score > 0", name="ck_criterion_max_score_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subcategory_id": self.subcategory_id,
            "name": self.name,
            "max_score": str(self.max_score) if self.max_score is not None else None,
            "order_index": self.order_index,
        }


class Contestant(BaseModel):
    __tablename__ = "contestants"

    name = Column(String(200), nullable=False)
    contestant_number = Column(Integer, nullable=True)


class SubcategoryJudge(BaseModel):
    """Roster entry: judge assigned to score and certify a subcategory."""
    __tablename__ = "subcategory_judges"

    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    judge_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("subcategory_id", "judge_id", name="uq_subcategory_judge"),
        Index("idx_subcategory_judges_subcategory", "subcategory_id"),
    )


class SubcategoryContestant(BaseModel):
    """Enrolment: contestant competing in a subcategory."""
    __tablename__ = "subcategory_contestants"

    subcategory_id = Column(Integer, ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False)
    contestant_id = Column(Integer, ForeignKey("contestants.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("subcategory_id", "contestant_id", name="uq_subcategory_contestant"),
        Index("idx_subcategory_contestants_subcategory", "subcategory_id"),
    )
