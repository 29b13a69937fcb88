"""Unit tests for Notion Writer service."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from notion_client.errors import APIResponseError, RequestTimeoutError

from services.notion_writer.dispatch_queue import DispatchQueue
from services.notion_writer.rate_limit import describe_notion_error, notion_errors, to_sync_error
from services.notion_writer.writer import NotionWriter, clean_database_id
from shared.errors import AuthError, NotFound, RateLimited, TransportError, ValidationError
from shared.models import Entry, Source, Thread, ThreadDetail
from shared.retry import BackoffPolicy

DATABASE_ID = "2fb86a4c5fbf806dbeb6f3f2c1b23d10"


def api_error(status, code, headers=None):
    return APIResponseError(
        response=httpx.Response(status, headers=headers or {}),
        message=f"HTTP {status}",
        code=code
    )


@pytest.fixture
def mock_notion_client():
    """Create a mock async Notion client."""
    client = MagicMock()
    client.databases.retrieve = AsyncMock(return_value={
        "properties": {
            "Title": {"type": "title"},
            "URL": {"type": "url"},
            "Platform": {"type": "select"},
            "Chat Time": {"type": "date"},
        }
    })
    client.pages.create = AsyncMock(return_value={"id": "page123", "url": "https://notion.so/page123"})
    client.blocks.children.append = AsyncMock(return_value={})
    client.pages.update = AsyncMock(return_value={"id": "page123", "archived": True})
    return client


@pytest.fixture
def writer(mock_notion_client, fake_clock):
    """Create a NotionWriter with a mocked client and a fake-clock queue."""
    queue = DispatchQueue(clock=fake_clock, retry_policy=BackoffPolicy(clock=fake_clock))
    return NotionWriter(
        api_token="test_token",
        database_id=DATABASE_ID,
        queue=queue,
        clock=fake_clock,
        client=mock_notion_client
    )


@pytest.fixture
def detail():
    return ThreadDetail(
        thread=Thread(
            id="abc",
            title="Sorting in Python",
            platform="perplexity",
            last_activity_time=1_700_000_000.0,
            url="https://www.perplexity.ai/search/abc"
        ),
        entries=[
            Entry(query="How do I sort?", answer="Use sorted().", sources=[Source("Docs", "https://docs.python.org")]),
            Entry(query="Reverse?", answer="reverse=True"),
        ]
    )


class TestNotionWriter:
    """Tests for NotionWriter.export_thread."""

    @pytest.mark.asyncio
    async def test_export_basic_thread(self, writer, mock_notion_client, detail):
        result = await writer.export_thread(detail)

        assert result["page_id"] == "page123"
        assert result["url"] == "https://notion.so/page123"

        call_args = mock_notion_client.pages.create.call_args
        assert call_args.kwargs["parent"]["database_id"] == DATABASE_ID

        properties = call_args.kwargs["properties"]
        assert properties["Title"]["title"][0]["text"]["content"] == "Sorting in Python"
        assert properties["URL"]["url"] == "https://www.perplexity.ai/search/abc"
        assert properties["Platform"]["select"]["name"] == "perplexity"
        assert properties["Chat Time"]["date"]["start"].startswith("2023-11-14")
        assert "Entries" not in properties

        children = call_args.kwargs["children"]
        assert children[0]["type"] == "callout"
        assert children[1]["heading_2"]["rich_text"][0]["text"]["content"] == "How do I sort?"
        mock_notion_client.blocks.children.append.assert_not_called()

    @pytest.mark.asyncio
    async def test_large_page_created_then_appended(self, writer, mock_notion_client, detail):
        """150 children: create with 100, then append 50."""
        blocks = [{"object": "block", "type": "divider", "divider": {}} for _ in range(150)]

        with patch("services.notion_writer.writer.build_thread_blocks", return_value=blocks):
            result = await writer.export_thread(detail)

        assert result["blocks"] == 150
        assert len(mock_notion_client.pages.create.call_args.kwargs["children"]) == 100
        mock_notion_client.blocks.children.append.assert_called_once()
        append_args = mock_notion_client.blocks.children.append.call_args
        assert append_args.kwargs["block_id"] == "page123"
        assert len(append_args.kwargs["children"]) == 50
        mock_notion_client.pages.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_append_archives_partial_page(self, writer, mock_notion_client, detail):
        """A page left with only its first 100 blocks is archived, so a retry leaves no duplicate."""
        blocks = [{"object": "block", "type": "divider", "divider": {}} for _ in range(150)]
        mock_notion_client.blocks.children.append.side_effect = api_error(400, "validation_error")

        with patch("services.notion_writer.writer.build_thread_blocks", return_value=blocks):
            with pytest.raises(ValidationError):
                await writer.export_thread(detail)

        mock_notion_client.pages.update.assert_awaited_once_with(page_id="page123", archived=True)

    @pytest.mark.asyncio
    async def test_append_error_kept_when_archive_fails(self, writer, mock_notion_client, detail):
        blocks = [{"object": "block", "type": "divider", "divider": {}} for _ in range(150)]
        mock_notion_client.blocks.children.append.side_effect = api_error(400, "validation_error")
        mock_notion_client.pages.update.side_effect = api_error(404, "object_not_found")

        with patch("services.notion_writer.writer.build_thread_blocks", return_value=blocks):
            with pytest.raises(ValidationError):
                await writer.export_thread(detail)

        mock_notion_client.pages.update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_schema_is_cached(self, writer, mock_notion_client, detail, fake_clock):
        await writer.export_thread(detail)
        await writer.export_thread(detail)
        assert mock_notion_client.databases.retrieve.call_count == 1

        fake_clock.advance(301)
        await writer.export_thread(detail)
        assert mock_notion_client.databases.retrieve.call_count == 2

    @pytest.mark.asyncio
    async def test_missing_title_property_falls_back(self, writer, mock_notion_client, detail):
        mock_notion_client.databases.retrieve.return_value = {"properties": {}}

        await writer.export_thread(detail)

        properties = mock_notion_client.pages.create.call_args.kwargs["properties"]
        assert properties["Name"]["title"][0]["text"]["content"] == "Sorting in Python"
        assert "URL" not in properties

    @pytest.mark.asyncio
    async def test_rate_limit_retry_success(self, writer, mock_notion_client, detail, fake_clock):
        """Test successful retry after rate limit."""
        mock_notion_client.pages.create.side_effect = [
            api_error(429, "rate_limited", {"Retry-After": "5"}),
            {"id": "page123", "url": "https://notion.so/page123"},
        ]

        result = await writer.export_thread(detail)

        assert result["page_id"] == "page123"
        assert mock_notion_client.pages.create.call_count == 2
        assert 5.0 in fake_clock.sleeps

    @pytest.mark.asyncio
    async def test_rate_limit_max_retries_exceeded(self, writer, mock_notion_client, detail):
        mock_notion_client.pages.create.side_effect = api_error(429, "rate_limited")

        with pytest.raises(RateLimited):
            await writer.export_thread(detail)

        assert mock_notion_client.pages.create.call_count == 3

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self, writer, mock_notion_client, detail):
        mock_notion_client.pages.create.side_effect = api_error(400, "validation_error")

        with pytest.raises(ValidationError) as exc_info:
            await writer.export_thread(detail)

        assert "Invalid data format" in str(exc_info.value)
        assert mock_notion_client.pages.create.call_count == 1

    @pytest.mark.asyncio
    async def test_ping(self, writer, mock_notion_client):
        assert await writer.ping() is True
        mock_notion_client.databases.retrieve.assert_called_once_with(database_id=DATABASE_ID)


class TestCleanDatabaseId:
    """Tests for clean_database_id."""

    @pytest.mark.parametrize("raw", [
        DATABASE_ID,
        "2fb86a4c-5fbf-806d-beb6-f3f2c1b23d10",
        f"https://www.notion.so/{DATABASE_ID}?v=123",
        f"https://www.notion.so/workspace/Chats-{DATABASE_ID}",
        f"  {DATABASE_ID.upper()}  ",
    ])
    def test_accepted_formats(self, raw):
        assert clean_database_id(raw) == DATABASE_ID

    @pytest.mark.parametrize("raw", ["", "not-an-id", "https://www.notion.so/short"])
    def test_rejected_formats(self, raw):
        with pytest.raises(ValidationError):
            clean_database_id(raw)


class TestErrorMapping:
    """Tests for mapping notion-client errors onto the taxonomy."""

    @pytest.mark.parametrize("status,code,expected", [
        (401, "unauthorized", AuthError),
        (403, "restricted_resource", AuthError),
        (404, "object_not_found", NotFound),
        (429, "rate_limited", RateLimited),
        (400, "validation_error", ValidationError),
        (409, "conflict_error", TransportError),
        (500, "internal_server_error", TransportError),
        (503, "service_unavailable", TransportError),
    ])
    def test_codes(self, status, code, expected):
        mapped = to_sync_error(api_error(status, code))

        assert isinstance(mapped, expected)
        assert mapped.status == status
        assert mapped.platform == "notion"

    def test_retry_after_header(self):
        mapped = to_sync_error(api_error(429, "rate_limited", {"Retry-After": "12"}))
        assert mapped.retry_after == 12.0

    def test_messages(self):
        assert describe_notion_error(api_error(404, "object_not_found")) == (
            "Database not found. Please verify your Database ID."
        )
        assert describe_notion_error(api_error(403, "restricted_resource")) == (
            "This database is not shared with your integration."
        )

    def test_timeout_is_transport(self):
        assert isinstance(to_sync_error(RequestTimeoutError()), TransportError)
        assert isinstance(to_sync_error(httpx.ConnectError("refused")), TransportError)

    @pytest.mark.asyncio
    async def test_decorator_translates(self):
        @notion_errors
        async def call():
            raise api_error(401, "unauthorized")

        with pytest.raises(AuthError):
            await call()
