"""
pageant_engine/schemas/score_review.py
Score review table: every raw score of a subcategory with judge sign-off
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from pageant_engine.orm.certification import CertificationState
from pageant_engine.schemas.tabulation import TabulationResult


class CriterionScore(BaseModel):
    criterion_id: int
    criterion_name: str
    value: Optional[Decimal] = None
    max_score: Decimal
    comment: Optional[str] = None


class JudgeScoreRow(BaseModel):
    """One judge's scores for one contestant."""
    judge_id: int
    judge_name: Optional[str] = None
    scores: List[CriterionScore] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    max_possible: Decimal = Decimal("0")
    percentage: Optional[Decimal] = Field(None, description="Subtotal as a percentage of max possible")
    certified: bool = False
    certified_at: Optional[datetime] = None


class ContestantReview(BaseModel):
    contestant_id: int
    contestant_name: Optional[str] = None
    contestant_number: Optional[int] = None
    judges: List[JudgeScoreRow] = Field(default_factory=list)
    deductions: Decimal = Decimal("0")
    result: Optional[TabulationResult] = None


class ScoreReview(BaseModel):
    subcategory_id: int
    subcategory_name: Optional[str] = None
    state: CertificationState = CertificationState.OPEN
    contestants: List[ContestantReview] = Field(default_factory=list)
