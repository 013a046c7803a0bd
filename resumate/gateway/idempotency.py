"""Webhook deduplication backed by the primary key of `BillingEventLog`.

The insert is committed before any side effect runs. A uniqueness violation
means another delivery of the same event already got (or is getting) there
first; that is a normal outcome, not an error.
"""

from enum import StrEnum, auto
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway.domain_models import BillingEventLog


class Admission(StrEnum):
    admit = auto()
    duplicate = auto()


async def admit(db: AsyncSession, event_id: str, event_type: str, payload: dict[str, Any] | None) -> Admission:
    db.add(BillingEventLog(event_id=event_id, type=event_type, payload=payload))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.bind(event_id=event_id, event_type=event_type).info("Duplicate webhook event, skipping")
        return Admission.duplicate
    return Admission.admit


async def release(db: AsyncSession, event_id: str) -> None:
    """Forget an admitted event whose processing failed, so a redelivery is handled again."""
    await db.rollback()
    entry = await db.get(BillingEventLog, event_id)
    if entry is not None:
        await db.delete(entry)
        await db.commit()
