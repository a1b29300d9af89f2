"""Celery worker: delivers booking and payment notifications by email."""

import asyncio
import logging

from celery import Celery

from servicehub.core.config import settings
from servicehub.core.database import async_session_factory, engine
from servicehub.repositories.directory import SqlDirectory
from servicehub.services.email import send_notification_email

logger = logging.getLogger(__name__)

celery_app = Celery(
    "servicehub",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="Asia/Kolkata",
    enable_utc=True,
)


async def _deliver(recipient: str, event: str, summary: dict) -> bool:
    try:
        contact = await SqlDirectory(async_session_factory).get_contact(recipient)
    finally:
        # Each task runs in a fresh event loop; pooled connections belong to the old one.
        await engine.dispose()
    if contact is None:
        logger.warning("No active contact for %s, dropping %s notification", recipient, event)
        return False
    await send_notification_email(contact.email, contact.name, event, summary)
    return True


@celery_app.task(name="servicehub.deliver_notification", autoretry_for=(OSError,), retry_backoff=True, max_retries=3)
def deliver_notification(recipient: str, event: str, summary: dict) -> bool:
    return asyncio.run(_deliver(recipient, event, summary))
