"""
Tabulator

Deterministic totals and rankings computed from raw judge scores.
Nothing is stored: results are a projection of the current score set and
can be recomputed at any time with identical output.

Algorithm (per scope):
1. Group scores by contestant
2. Per contestant, per judge: sum criterion scores into a subtotal
3. Aggregate subtotals with the category rule (mean by default, rounded
   half-up to SCORE_DECIMAL_PLACES), subtract overall deductions (floor 0),
   clamp to the category score cap (cut down to the output places, so a
   clamped total never exceeds the cap) and flag the clamp
4. Rank by total descending; ties broken by
   (a) higher average per-criterion score,
   (b) fewer individual scores strictly below the scope median,
   (c) lower contestant id
5. One result per scored or enrolled contestant; ranks are 1..n

All arithmetic is Decimal under a fixed local context.
"""
import asyncio
import decimal
import logging
import statistics
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pageant_engine.config.settings import settings
from pageant_engine.errors import ConfigurationError, ErrorCode, NotFoundError, ValidationError
from pageant_engine.orm.contest import (
    AggregationRule, Category, Criterion, Subcategory, SubcategoryContestant
)
from pageant_engine.orm.score import Score, OverallDeduction
from pageant_engine.schemas.tabulation import TabulationResult

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Tie-break labels, in the order they are applied
TIE_BREAK_CRITERION_AVERAGE = "criterion_average"
TIE_BREAK_BELOW_MEDIAN = "below_median"
TIE_BREAK_CONTESTANT_ID = "contestant_id"


@dataclass(frozen=True)
class TabulationScope:
    """A whole category, or an explicit group of its subcategories."""
    category_id: Optional[int] = None
    subcategory_ids: Tuple[int, ...] = ()

    @classmethod
    def for_category(cls, category_id: int) -> "TabulationScope":
        return cls(category_id=category_id)

    @classmethod
    def for_subcategories(cls, subcategory_ids: Iterable[int]) -> "TabulationScope":
        return cls(subcategory_ids=tuple(sorted(set(subcategory_ids))))


@dataclass(frozen=True)
class ScoreRow:
    contestant_id: int
    judge_id: int
    criterion_id: int
    value: Decimal


@dataclass(frozen=True)
class ScoreSnapshot:
    """Everything the pure computation needs, read once from the store."""
    rows: Tuple[ScoreRow, ...] = ()
    deductions: Dict[int, Decimal] = field(default_factory=dict)
    enrolled: Tuple[int, ...] = ()


def _quantum(places: int) -> Decimal:
    return Decimal(1).scaleb(-places)


def _mean(values: Sequence[Decimal]) -> Decimal:
    if not values:
        return ZERO
    return sum(values, ZERO) / len(values)


def compute_results(
    snapshot: ScoreSnapshot,
    rule: AggregationRule = AggregationRule.MEAN,
    score_cap: Optional[Decimal] = None,
    places: int = 1
) -> List[TabulationResult]:
    """
    Pure tabulation over a snapshot. Same snapshot, same output.
    """
    with decimal.localcontext() as ctx:
        ctx.prec = 28
        ctx.rounding = ROUND_HALF_UP
        return _compute(snapshot, rule, score_cap, places)


def _compute(
    snapshot: ScoreSnapshot,
    rule: AggregationRule,
    score_cap: Optional[Decimal],
    places: int
) -> List[TabulationResult]:
    quantum = _quantum(places)
    cap = Decimal(str(score_cap)) if score_cap is not None else None

    rows = sorted(
        snapshot.rows,
        key=lambda r: (r.contestant_id, r.judge_id, r.criterion_id)
    )

    all_values = sorted(r.value for r in rows)
    median = statistics.median(all_values) if all_values else None

    by_contestant: Dict[int, List[ScoreRow]] = {}
    for row in rows:
        by_contestant.setdefault(row.contestant_id, []).append(row)

    contestant_ids = sorted(
        set(by_contestant) | set(snapshot.enrolled) | set(snapshot.deductions)
    )

    standings = []
    for contestant_id in contestant_ids:
        contestant_rows = by_contestant.get(contestant_id, [])

        subtotals: Dict[int, Decimal] = {}
        for row in contestant_rows:
            subtotals[row.judge_id] = subtotals.get(row.judge_id, ZERO) + row.value

        subtotal_values = [subtotals[j] for j in sorted(subtotals)]
        average = _mean(subtotal_values)
        if rule == AggregationRule.SUM:
            aggregate = sum(subtotal_values, ZERO)
        else:
            aggregate = average
        aggregate = aggregate.quantize(quantum)

        deduction = snapshot.deductions.get(contestant_id, ZERO)
        raw_total = max(aggregate - deduction, ZERO).quantize(quantum)

        clamped = cap is not None and raw_total > cap
        total = cap.quantize(quantum, rounding=ROUND_DOWN) if clamped else raw_total

        values = [r.value for r in contestant_rows]
        criterion_average = _mean(values)
        below_median = 0 if median is None else sum(1 for v in values if v < median)

        standings.append({
            "contestant_id": contestant_id,
            "total": total,
            "raw_total": raw_total,
            "clamped": clamped,
            "average": average.quantize(quantum),
            "criterion_average_exact": criterion_average,
            "criterion_average": criterion_average.quantize(Decimal("0.0001")),
            "deductions": deduction,
            "judge_count": len(subtotals),
            "score_count": len(values),
            "scores_below_median": below_median,
            "judge_subtotals": {j: subtotals[j] for j in sorted(subtotals)},
        })

    standings.sort(key=lambda s: (
        -s["total"],
        -s["criterion_average_exact"],
        s["scores_below_median"],
        s["contestant_id"],
    ))

    results = []
    previous = None
    for position, standing in enumerate(standings, start=1):
        tie_break = None
        if previous is not None and previous["total"] == standing["total"]:
            if previous["criterion_average_exact"] != standing["criterion_average_exact"]:
                tie_break = TIE_BREAK_CRITERION_AVERAGE
            elif previous["scores_below_median"] != standing["scores_below_median"]:
                tie_break = TIE_BREAK_BELOW_MEDIAN
            else:
                tie_break = TIE_BREAK_CONTESTANT_ID
        previous = standing

        standing = dict(standing)
        standing.pop("criterion_average_exact")
        results.append(TabulationResult(rank=position, tie_break=tie_break, **standing))

    return results


class Tabulator:
    """Loads a score snapshot for a scope and tabulates it."""

    @staticmethod
    async def _resolve_scope(
        db: AsyncSession,
        scope: TabulationScope
    ) -> Tuple[Category, List[int]]:
        if scope.category_id is not None:
            category = await db.get(Category, scope.category_id)
            if category is None:
                raise NotFoundError("Category", scope.category_id)
            result = await db.execute(
                select(Subcategory.id)
                .where(Subcategory.category_id == category.id)
                .order_by(Subcategory.id)
            )
            return category, list(result.scalars().all())

        if not scope.subcategory_ids:
            raise ValidationError("Tabulation scope needs a category or at least one subcategory")

        result = await db.execute(
            select(Subcategory.id, Subcategory.category_id)
            .where(Subcategory.id.in_(scope.subcategory_ids))
        )
        found = {row.id: row.category_id for row in result.all()}
        missing = [sid for sid in scope.subcategory_ids if sid not in found]
        if missing:
            raise NotFoundError("Subcategory", missing[0])
        category_ids = set(found.values())
        if len(category_ids) != 1:
            raise ValidationError(
                "A subcategory group must belong to a single category",
                details={"category_ids": sorted(category_ids)}
            )
        category = await db.get(Category, category_ids.pop())
        return category, sorted(found)

    @staticmethod
    def _rule_for(category: Category) -> AggregationRule:
        if category.aggregation_rule is not None:
            return AggregationRule(category.aggregation_rule)
        try:
            return AggregationRule(settings.DEFAULT_AGGREGATION_RULE)
        except ValueError:
            raise ConfigurationError(
                f"Unknown aggregation rule {settings.DEFAULT_AGGREGATION_RULE!r}",
                code=ErrorCode.INVALID_AGGREGATION_RULE
            )

    @staticmethod
    async def load_snapshot(db: AsyncSession, subcategory_ids: Sequence[int]) -> ScoreSnapshot:
        """
        Read scores in a single statement so a tabulation never sees half of
        a concurrent write.
        """
        if not subcategory_ids:
            return ScoreSnapshot()

        score_result = await db.execute(
            select(Score.contestant_id, Score.judge_id, Score.criterion_id, Score.value)
            .join(Criterion, Criterion.id == Score.criterion_id)
            .where(Score.subcategory_id.in_(subcategory_ids))
        )
        rows = tuple(
            ScoreRow(
                contestant_id=r.contestant_id,
                judge_id=r.judge_id,
                criterion_id=r.criterion_id,
                value=Decimal(str(r.value)),
            )
            for r in score_result.all()
        )

        deduction_result = await db.execute(
            select(OverallDeduction.contestant_id, func.sum(OverallDeduction.amount))
            .where(OverallDeduction.subcategory_id.in_(subcategory_ids))
            .group_by(OverallDeduction.contestant_id)
        )
        deductions = {
            contestant_id: Decimal(str(amount))
            for contestant_id, amount in deduction_result.all()
            if amount is not None
        }

        enrolled_result = await db.execute(
            select(SubcategoryContestant.contestant_id)
            .where(SubcategoryContestant.subcategory_id.in_(subcategory_ids))
            .distinct()
        )
        enrolled = tuple(sorted(enrolled_result.scalars().all()))

        return ScoreSnapshot(rows=rows, deductions=deductions, enrolled=enrolled)

    @classmethod
    async def tabulate(cls, db: AsyncSession, scope: TabulationScope) -> List[TabulationResult]:
        """
        Ranked results for a category or subcategory group.

        Raises:
            NotFoundError: Unknown category or subcategory
            ValidationError: Empty scope or a group spanning categories
            ConfigurationError: Category requires a score cap and has none
        """
        category, subcategory_ids = await cls._resolve_scope(db, scope)

        if category.cap_required and category.score_cap is None:
            raise ConfigurationError(
                f"Category {category.id} requires a score cap but none is configured",
                code=ErrorCode.SCORE_CAP_MISSING,
                details={"category_id": category.id}
            )

        rule = cls._rule_for(category)
        cap = Decimal(str(category.score_cap)) if category.score_cap is not None else None
        snapshot = await cls.load_snapshot(db, subcategory_ids)

        results = compute_results(snapshot, rule, cap, settings.SCORE_DECIMAL_PLACES)
        logger.debug(
            f"Tabulated category={category.id} subcategories={subcategory_ids} "
            f"contestants={len(results)} scores={len(snapshot.rows)}"
        )
        return results

    @classmethod
    async def tabulate_many(
        cls,
        db: AsyncSession,
        scopes: Iterable[TabulationScope]
    ) -> Dict[TabulationScope, List[TabulationResult]]:
        """
        Tabulate several scopes in turn, e.g. for a full score review.

        Read-only: cancelling the calling task at any point leaves nothing
        behind. Yields to the event loop between scopes so a cancel lands
        promptly.
        """
        results: Dict[TabulationScope, List[TabulationResult]] = {}
        for scope in scopes:
            await asyncio.sleep(0)
            results[scope] = await cls.tabulate(db, scope)
        return results
