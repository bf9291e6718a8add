"""Dispute case numbers: ``CASE-<year>-<seq>`` from a durable per-year counter.

The counter is bumped with a single upsert inside the caller's unit of work.
The row lock it takes serialises allocations for the same year until the
surrounding transaction ends, and a rollback returns the number, so the
sequence has neither duplicates nor gaps.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.db.base import utcnow
from gigescrow.models.case_counter import CaseCounter

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def format_case_number(year: int, sequence: int) -> str:
    return f"CASE-{year}-{sequence:03d}"


async def allocate_sequence(db: AsyncSession, year: int) -> int:
    dialect = db.get_bind().dialect.name
    try:
        insert = _DIALECT_INSERTS[dialect]
    except KeyError:
        raise RuntimeError(f"Case counter upsert not supported on {dialect!r}") from None

    now = utcnow()
    stmt = (
        insert(CaseCounter)
        .values(year=year, last_value=1, created_at=now, updated_at=now)
        .on_conflict_do_update(
            index_elements=[CaseCounter.year],
            set_={"last_value": CaseCounter.last_value + 1, "updated_at": now},
        )
        .returning(CaseCounter.last_value)
    )
    result = await db.execute(stmt)
    return result.scalar_one()


async def next_case_number(db: AsyncSession, year: int) -> tuple[str, int]:
    """Allocate the next case number for ``year``; returns (case_number, sequence)."""
    sequence = await allocate_sequence(db, year)
    return format_case_number(year, sequence), sequence
