# labflow/domains/rpt/numbering.py

"""
성적서 번호 채번 모듈입니다.

카운터 키는 '{REPORT_COUNTER_KEY}-{연도}' 형식이며 연도마다 1부터 다시 시작합니다.
번호 형식은 '{6자리 일련번호}/{연도}/{접두어}' 입니다. (예: 000042/2026/LABFLOW)

채번은 카운터 행 하나에 대한 원자적 UPDATE ... RETURNING 으로 수행되며,
행 잠금은 호출자의 트랜잭션이 끝날 때까지 유지됩니다. 따라서 번호와 성적서 행은
같은 트랜잭션에서 함께 커밋되거나 함께 롤백됩니다.
"""

import logging
from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.config import settings
from labflow.domains.rpt.models import ReportCounter

logger = logging.getLogger(__name__)

_counters = ReportCounter.__table__


def counter_key_for(year: int, base_key: Optional[str] = None) -> str:
    return f"{base_key or settings.REPORT_COUNTER_KEY}-{year}"


def format_report_no(seq: int, year: int, prefix: str) -> str:
    return f"{seq:06d}/{year}/{prefix}"


async def _seed_counter(db: AsyncSession, counter_key: str) -> None:
    dialect = db.get_bind().dialect.name
    insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = (
        insert_fn(_counters)
        .values(counter_key=counter_key, next_seq=1)
        .on_conflict_do_nothing(index_elements=["counter_key"])
    )
    await db.execute(stmt)


async def allocate(db: AsyncSession, counter_key: str) -> int:
    """
    counter_key의 다음 일련번호를 할당합니다. 커밋은 호출자가 합니다.
    """
    await _seed_counter(db, counter_key)
    stmt = (
        update(_counters)
        .where(_counters.c.counter_key == counter_key)
        .values(next_seq=_counters.c.next_seq + 1)
        .returning(_counters.c.next_seq)
    )
    next_seq = (await db.execute(stmt)).scalar_one()
    return next_seq - 1


async def next_report_no(db: AsyncSession, prefix: Optional[str] = None, *, now: Optional[datetime] = None) -> str:
    year = (now or datetime.now(UTC)).year
    seq = await allocate(db, counter_key_for(year))
    report_no = format_report_no(seq, year, prefix or settings.REPORT_LAB_CODE)
    logger.debug("성적서 번호 할당: %s", report_no)
    return report_no
