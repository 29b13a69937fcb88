"""Notion Writer - exports conversation threads as pages in a Notion database."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from notion_client import AsyncClient

from services.notion_writer.blocks import CHILDREN_LIMIT, RICH_TEXT_LIMIT, build_thread_blocks, chunk_blocks
from services.notion_writer.dispatch_queue import DispatchQueue
from services.notion_writer.rate_limit import notion_errors
from shared.clock import Clock
from shared.errors import SyncError, ValidationError
from shared.models import ThreadDetail

logger = logging.getLogger(__name__)

SCHEMA_TTL = 300.0


def clean_database_id(database_id: str) -> str:
    """
    Clean and extract database ID from various formats.

    Handles:
    - Plain id: 2fb86a4c5fbf806dbeb6f3f2c1b23d10
    - Id with dashes: 2fb86a4c-5fbf-806d-beb6-f3f2c1b23d10
    - Share URL with optional slug: https://www.notion.so/ws/Chats-2fb86a4c5fbf806dbeb6f3f2c1b23d10?v=...

    Raises:
        ValidationError: If no valid id can be found
    """
    segment = (database_id or "").strip().split("?")[0].rstrip("/").split("/")[-1]
    match = re.search(r"([a-fA-F0-9]{32})$", segment.replace("-", ""))
    if not match:
        raise ValidationError(f"Invalid database ID format: {database_id!r}. Expected 32 hex characters.", platform="notion")
    return match.group(1).lower()


class NotionWriter:
    """Handles writing threads to a Notion database through the dispatch queue."""

    def __init__(
        self,
        api_token: str,
        database_id: str,
        queue: Optional[DispatchQueue] = None,
        clock: Optional[Clock] = None,
        client: Optional[AsyncClient] = None
    ):
        """
        Initialize Notion Writer.

        Args:
            api_token: Notion API integration token
            database_id: Target database id or share URL
            queue: Dispatch queue shared by every Notion call
            clock: Time source for schema caching and the page header
            client: Preconfigured Notion client (tests)
        """
        self.client = client or AsyncClient(auth=api_token)
        self.database_id = clean_database_id(database_id)
        self.clock = clock or Clock()
        self.queue = queue or DispatchQueue(clock=self.clock)
        self._schema: Optional[Dict[str, Any]] = None
        self._schema_fetched_at = 0.0

    async def get_schema(self) -> Dict[str, Any]:
        """Database properties, cached for five minutes."""
        now = self.clock.now()
        if self._schema is not None and now - self._schema_fetched_at < SCHEMA_TTL:
            return self._schema

        @notion_errors
        async def retrieve_database():
            return await self.client.databases.retrieve(database_id=self.database_id)

        database = await self.queue.submit(retrieve_database)
        self._schema = database.get("properties", {})
        self._schema_fetched_at = now
        logger.debug(f"Fetched schema for database {self.database_id}: {sorted(self._schema)}")
        return self._schema

    def invalidate_schema(self) -> None:
        self._schema = None

    async def export_thread(self, detail: ThreadDetail) -> Dict[str, Any]:
        """
        Create a Notion page for a thread.

        The page is created with the first 100 blocks; remaining blocks are
        appended in chunks of 100, each as its own queued call.

        Args:
            detail: Thread with its entries

        Returns:
            Dictionary with page_id, url and block count

        Raises:
            SyncError: If any Notion call fails permanently
        """
        schema = await self.get_schema()
        properties = self._build_page_properties(detail, schema)
        blocks = build_thread_blocks(detail, self.clock.now())
        chunks = chunk_blocks(blocks, CHILDREN_LIMIT) or [[]]

        logger.info(f"Creating Notion page for {detail.thread.key}: {detail.thread.title!r} ({len(blocks)} blocks)")

        @notion_errors
        async def create_page():
            return await self.client.pages.create(
                parent={"database_id": self.database_id},
                properties=properties,
                children=chunks[0],
            )

        page = await self.queue.submit(create_page)
        page_id = page["id"]

        try:
            for index, chunk in enumerate(chunks[1:], start=1):
                await self._append_children(page_id, chunk, index)
        except SyncError as e:
            logger.error(f"Appending blocks to {page_id} failed ({e.code}), archiving the partial page")
            await self._archive_page(page_id)
            raise

        logger.info(f"Successfully created Notion page {page_id} for {detail.thread.key}")
        return {"page_id": page_id, "url": page.get("url"), "blocks": len(blocks)}

    async def _archive_page(self, page_id: str) -> bool:
        """Archive a page. Failures are logged; the page then stays in the database."""
        @notion_errors
        async def archive_page():
            return await self.client.pages.update(page_id=page_id, archived=True)

        try:
            await self.queue.submit(archive_page)
        except SyncError as e:
            logger.error(f"Could not archive partial page {page_id}: {e}")
            return False
        logger.info(f"Archived partial page {page_id}")
        return True

    async def _append_children(self, page_id: str, children: List[Dict[str, Any]], index: int) -> None:
        @notion_errors
        async def append_children():
            return await self.client.blocks.children.append(block_id=page_id, children=children)

        logger.debug(f"Appending block chunk {index} ({len(children)} blocks) to {page_id}")
        await self.queue.submit(append_children)

    def _build_page_properties(self, detail: ThreadDetail, schema: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build Notion page properties from thread data.

        Only properties the database defines are filled in, except the title,
        whose name is looked up from the schema.
        """
        thread = detail.thread
        title_property_name = next(
            (name for name, config in schema.items() if config.get("type") == "title"),
            None
        )
        if not title_property_name:
            title_property_name = "Name"
            logger.warning(f"No title property found in database, using default: {title_property_name}")

        properties: Dict[str, Any] = {
            title_property_name: {
                "title": [{"type": "text", "text": {"content": (thread.title or "Untitled Chat")[:RICH_TEXT_LIMIT]}}]
            }
        }

        if "URL" in schema and thread.url:
            properties["URL"] = {"url": thread.url}

        chat_time = thread.last_activity_time or next(
            (e.created_at for e in detail.entries if e.created_at), None
        )
        if "Chat Time" in schema and chat_time:
            properties["Chat Time"] = {
                "date": {"start": datetime.fromtimestamp(chat_time, tz=timezone.utc).isoformat()}
            }

        if "Platform" in schema:
            properties["Platform"] = {"select": {"name": thread.platform}}

        if "Entries" in schema:
            properties["Entries"] = {"number": len(detail.entries)}

        return properties

    async def ping(self) -> bool:
        """Check that the database is reachable."""
        self.invalidate_schema()
        await self.get_schema()
        return True
