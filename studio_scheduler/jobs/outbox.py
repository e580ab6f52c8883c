from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.outbox.service import process_outbox
from studio_scheduler.infra.notifications import NotificationAdapter
from studio_scheduler.settings import settings


async def run_outbox_delivery(session: AsyncSession, adapter: NotificationAdapter) -> dict[str, int]:
    return await process_outbox(session, adapter, limit=settings.job_outbox_batch_size)
