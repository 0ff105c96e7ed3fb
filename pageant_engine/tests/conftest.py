"""
Shared fixtures: a fresh file-backed SQLite database per test and a seeded
contest with a judge roster, contestants and sign-off accounts.

A file database (not :memory:) lets separate sessions see each other's
commits, which the concurrency tests rely on.
"""
from decimal import Decimal
from types import SimpleNamespace
from typing import AsyncGenerator, Optional, Sequence, Tuple

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from pageant_engine.database import build_engine, build_sessionmaker, close_db, init_db
from pageant_engine.orm.contest import (
    AggregationRule, Category, Contest, Contestant, Criterion, Subcategory,
    SubcategoryContestant, SubcategoryJudge
)
from pageant_engine.orm.user import User, UserRole


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pageant_test.db'}", echo=False)
    await init_db(engine)

    yield engine

    await close_db(engine)


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


def ref(obj, *fields) -> SimpleNamespace:
    """
    Detached snapshot of a row. A rollback expires every instance in the
    session, so tests hold plain values instead of ORM objects.
    """
    return SimpleNamespace(id=obj.id, **{name: getattr(obj, name) for name in fields})


async def add_user(
    db: AsyncSession,
    full_name: str,
    role: UserRole,
    preferred_name: Optional[str] = None,
    is_head_judge: bool = False
) -> User:
    user = User(
        full_name=full_name,
        preferred_name=preferred_name,
        role=role,
        is_head_judge=is_head_judge
    )
    db.add(user)
    await db.flush()
    return user


async def add_subcategory(
    db: AsyncSession,
    category: Category,
    name: str,
    judges: Sequence[User],
    contestants: Sequence[Contestant],
    criteria: Sequence[Tuple[str, str]] = (("Poise", "10"), ("Presentation", "10"))
) -> SimpleNamespace:
    subcategory = Subcategory(category_id=category.id, name=name)
    db.add(subcategory)
    await db.flush()

    criterion_rows = []
    for index, (criterion_name, max_score) in enumerate(criteria):
        criterion = Criterion(
            subcategory_id=subcategory.id,
            name=criterion_name,
            max_score=Decimal(max_score),
            order_index=index
        )
        db.add(criterion)
        criterion_rows.append(criterion)
    for judge in judges:
        db.add(SubcategoryJudge(subcategory_id=subcategory.id, judge_id=judge.id))
    for contestant in contestants:
        db.add(SubcategoryContestant(subcategory_id=subcategory.id, contestant_id=contestant.id))
    await db.flush()

    return SimpleNamespace(
        id=subcategory.id,
        name=subcategory.name,
        criteria=[ref(c, "name", "max_score") for c in criterion_rows]
    )


async def seed_pageant(
    db: AsyncSession,
    judge_count: int = 3,
    contestant_count: int = 2,
    score_cap: Optional[str] = None,
    cap_required: bool = False,
    aggregation_rule: AggregationRule = AggregationRule.MEAN,
    criteria: Sequence[Tuple[str, str]] = (("Poise", "10"), ("Presentation", "10"))
) -> SimpleNamespace:
    """
    One contest, one category with one subcategory, ``judge_count`` judges
    (the first is head judge) and the sign-off accounts.
    """
    contest = Contest(name="Spring Pageant")
    db.add(contest)
    await db.flush()

    category = Category(
        contest_id=contest.id,
        name="Evening Gown",
        score_cap=Decimal(score_cap) if score_cap is not None else None,
        cap_required=cap_required,
        aggregation_rule=aggregation_rule
    )
    db.add(category)
    await db.flush()

    judges = [
        await add_user(db, f"Judge Number{i + 1}", UserRole.judge, is_head_judge=(i == 0))
        for i in range(judge_count)
    ]
    contestants = []
    for i in range(contestant_count):
        contestant = Contestant(name=f"Contestant {i + 1}", contestant_number=i + 1)
        db.add(contestant)
        contestants.append(contestant)
    await db.flush()

    sub = await add_subcategory(db, category, "Walk", judges, contestants, criteria)

    tally_master = await add_user(db, "John Smith", UserRole.tally_master)
    auditor = await add_user(db, "Avery Auditor", UserRole.auditor)
    board = await add_user(db, "Robert Board", UserRole.board, preferred_name="Bob Board")
    organizer = await add_user(db, "Olive Organizer", UserRole.organizer)

    await db.commit()

    return SimpleNamespace(
        contest=ref(contest, "name"),
        category=ref(category, "name"),
        subcategory_id=sub.id,
        criteria=sub.criteria,
        judges=[ref(j, "full_name") for j in judges],
        contestants=[ref(c, "name") for c in contestants],
        tally_master=ref(tally_master, "full_name"),
        auditor=ref(auditor, "full_name"),
        board=ref(board, "full_name"),
        organizer=ref(organizer, "full_name"),
    )


@pytest_asyncio.fixture
async def pageant(db_session: AsyncSession) -> SimpleNamespace:
    return await seed_pageant(db_session)
