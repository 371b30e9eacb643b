from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import ProcessedWebhookEvent


async def is_event_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(
        select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.event_id == event_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def record_processed_event(
    db: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    handled: bool,
    user_id: int | None = None,
    payload_summary: dict | None = None,
) -> ProcessedWebhookEvent:
    event = ProcessedWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        handled=handled,
        user_id=user_id,
        payload_summary=payload_summary or {},
    )
    db.add(event)
    await db.flush()
    return event
