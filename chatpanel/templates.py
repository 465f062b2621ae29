"""
Template metadata cache.

Read-through copy of the business account's approved templates. A refresh
fetches the whole remote list first and only then swaps the local copy in one
transaction, so readers never see a mix of old and new rows.
"""

import asyncio
import logging
from typing import Optional

from chatpanel.errors import GatewayError, PersistenceError
from chatpanel.gateway import MessagingGateway, normalize_template_name
from chatpanel.metrics import record_template_refresh
from chatpanel.models import TemplateCacheEntry
from chatpanel.repositories import TemplateRepository
from chatpanel.storage import Database

logger = logging.getLogger(__name__)


class TemplateCache:
    def __init__(self, database: Database, gateway: MessagingGateway):
        self.database = database
        self.gateway = gateway

    async def refresh(self) -> int:
        """
        Replace the cache with the current remote template list.

        Returns:
            Number of cached templates

        Raises:
            GatewayError: the list could not be fetched (cache left untouched)
            PersistenceError: the swap failed and was rolled back
        """
        try:
            templates = await self.gateway.list_templates()
        except GatewayError:
            record_template_refresh("error")
            raise

        for t in templates:
            t["name"] = normalize_template_name(t["name"])

        try:
            async with self.database.session() as session:
                count = await TemplateRepository(session).replace_all(templates)
        except PersistenceError:
            record_template_refresh("error")
            raise

        record_template_refresh("ok")
        logger.info(f"Template cache refreshed: {count} templates")
        return count

    async def languages(self, name: str) -> list[str]:
        async with self.database.session() as session:
            return await TemplateRepository(session).languages(normalize_template_name(name))

    async def lookup(self, name: str) -> Optional[str]:
        """First cached language for a template, or None on a miss."""
        languages = await self.languages(name)
        return languages[0] if languages else None

    async def list_templates(self) -> list[TemplateCacheEntry]:
        async with self.database.session() as session:
            return await TemplateRepository(session).list_templates()


async def run_periodic_refresh(cache: TemplateCache, interval_seconds: int) -> None:
    """Refresh the cache now and then every ``interval_seconds`` until cancelled."""
    logger.info(f"Template refresher started: interval={interval_seconds}s")
    while True:
        try:
            await cache.refresh()
        except (GatewayError, PersistenceError) as e:
            logger.warning(f"Periodic template refresh failed: {e}")
        await asyncio.sleep(interval_seconds)
