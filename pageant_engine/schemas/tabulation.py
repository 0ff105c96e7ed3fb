"""
pageant_engine/schemas/tabulation.py
Read models produced by the tabulator
"""
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field


class TabulationResult(BaseModel):
    """
    One contestant's standing within a tabulation scope.

    ``raw_total`` is the aggregate after deductions and before the score
    cap; ``total`` is what ranks and reports use. ``clamped`` is True when
    the cap replaced the raw total.
    """
    contestant_id: int
    rank: int
    total: Decimal
    raw_total: Decimal
    clamped: bool = False
    average: Decimal = Field(description="Mean of the per-judge subtotals")
    criterion_average: Decimal = Field(description="Mean of every individual criterion score")
    deductions: Decimal = Decimal("0")
    judge_count: int = 0
    score_count: int = 0
    scores_below_median: int = 0
    judge_subtotals: Dict[int, Decimal] = Field(default_factory=dict)
    tie_break: Optional[str] = Field(
        None,
        description="Rule that ordered this contestant after an equal-total neighbour"
    )
