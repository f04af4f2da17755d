"""
DocBridge - Notion Connector Tests
==================================

Tests for Notion block rendering and the Notion connector against a
mocked Notion API.
"""

import json
from datetime import datetime, timezone
from typing import Dict, List, Set

import httpx
import pytest

from docbridge.services.base import AuthenticationException
from docbridge.services.connectors.base import ConnectorCredentials, SyncOptions
from docbridge.services.connectors.notion import (
    NOTION_API_VERSION,
    NOTION_BASE_URL,
    NotionConfig,
    NotionConnector,
    block_to_markdown,
    blocks_to_markdown,
    extract_rich_text,
    extract_title,
    extract_user_name,
)


def text(content: str, **annotations) -> List[dict]:
    return [{"plain_text": content, "annotations": annotations}]


def block(block_type: str, content: str = "", children=None, **data) -> dict:
    result = {"id": f"blk-{block_type}", "type": block_type, block_type: {"rich_text": text(content), **data}}
    if children:
        result["children"] = children
    return result


def page(page_id: str, edited: str, title: str = None) -> dict:
    return {
        "object": "page",
        "id": page_id,
        "url": f"https://www.notion.so/{page_id}",
        "created_time": "2024-01-01T00:00:00.000Z",
        "last_edited_time": edited,
        "parent": {"type": "workspace", "workspace": True},
        "properties": {"Name": {"type": "title", "title": text(title or f"Page {page_id}")}},
    }


# =============================================================================
# Markdown Rendering
# =============================================================================

class TestRichText:
    """Tests for rich text and title extraction."""

    def test_annotations_and_links(self):
        rich_text = [
            {"plain_text": "bold", "annotations": {"bold": True}},
            {"plain_text": " and ", "annotations": {}},
            {"plain_text": "code", "annotations": {"code": True}},
            {"plain_text": " ", "annotations": {}},
            {"plain_text": "docs", "annotations": {}, "href": "https://example.com"},
        ]

        assert extract_rich_text(rich_text) == "**bold** and `code` [docs](https://example.com)"

    def test_empty_rich_text(self):
        assert extract_rich_text(None) == ""
        assert extract_rich_text([]) == ""

    def test_titles(self):
        assert extract_title(page("p", "2024-01-01T00:00:00Z", "Roadmap")) == "Roadmap"
        assert extract_title({"object": "database", "title": text("Tasks")}) == "Tasks"
        assert extract_title({"properties": {}}) == "Untitled"
        assert extract_title(None) == "Untitled"

    def test_user_names(self):
        assert extract_user_name({"name": "Ada"}) == "Ada"
        assert extract_user_name({"person": {"email": "ada@example.com"}}) == "ada@example.com"
        assert extract_user_name({"bot": {"owner": {"user": {"name": "Owner"}}}}) == "Owner"
        assert extract_user_name({}) == "Unknown User"


class TestBlockRendering:
    """Tests for block to markdown conversion."""

    def test_headings_and_paragraphs(self):
        markdown = blocks_to_markdown([
            block("heading_1", "Title"),
            block("paragraph", "Body"),
            block("heading_3", "Small"),
        ])

        assert markdown == "# Title\n\nBody\n\n### Small\n"

    def test_list_children_are_indented(self):
        parent = block("bulleted_list_item", "Parent", children=[block("bulleted_list_item", "Child")])

        assert block_to_markdown(parent) == "- Parent\n  - Child\n"

    def test_toggle_children_stay_flat(self):
        toggle = block("toggle", "Details", children=[block("paragraph", "Inside")])

        assert block_to_markdown(toggle) == "▶ Details\nInside\n"

    def test_to_do_and_quote(self):
        assert block_to_markdown(block("to_do", "Ship it", checked=True)) == "- [x] Ship it\n"
        assert block_to_markdown(block("to_do", "Later", checked=False)) == "- [ ] Later\n"
        assert block_to_markdown(block("quote", "Wise words")) == "> Wise words\n"

    def test_code_block(self):
        assert block_to_markdown(block("code", "print(1)", language="python")) == "```python\nprint(1)\n```\n"

    def test_callout_uses_icon(self):
        callout = block("callout", "Heads up", icon={"type": "emoji", "emoji": "⚠️"})

        assert block_to_markdown(callout) == "> ⚠️ Heads up\n"

    def test_media_blocks(self):
        image = {
            "type": "image",
            "image": {"type": "external", "external": {"url": "https://img/x.png"}, "caption": text("Diagram")},
        }
        bookmark = {"type": "bookmark", "bookmark": {"url": "https://example.com", "caption": []}}

        assert block_to_markdown(image) == "![Diagram](https://img/x.png)\n"
        assert block_to_markdown(bookmark) == "[https://example.com](https://example.com)\n"
        assert block_to_markdown({"type": "divider", "divider": {}}) == "---\n"

    def test_table_with_header(self):
        table = {
            "type": "table",
            "table": {"has_column_header": True},
            "children": [
                {"type": "table_row", "table_row": {"cells": [text("Name"), text("Role")]}},
                {"type": "table_row", "table_row": {"cells": [text("Ada"), text("Engineer")]}},
            ],
        }

        assert block_to_markdown(table) == "| Name | Role |\n| --- | --- |\n| Ada | Engineer |\n"

    def test_unknown_block_without_text_is_skipped(self):
        assert block_to_markdown({"type": "unsupported", "unsupported": {}}) == ""
        assert block_to_markdown({"type": "paragraph"}) == ""


# =============================================================================
# Connector
# =============================================================================

class FakeNotion:
    """Minimal Notion API with pages, one database and block trees."""

    def __init__(self, pages: List[dict]):
        self.pages = {p["id"]: p for p in pages}
        self.order = [p["id"] for p in pages]
        self.blocks: Dict[str, List[dict]] = {
            p["id"]: [block("paragraph", f"Content of {p['id']}")] for p in pages
        }
        self.databases: Dict[str, dict] = {}
        self.database_rows: Dict[str, List[dict]] = {}
        self.database_page_size = 100
        self.missing: Set[str] = set()
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/v1", "", 1)

        if request.headers.get("Authorization") != "Bearer secret_token":
            return httpx.Response(401, json={"object": "error", "code": "unauthorized", "message": "API token is invalid."})

        if path == "/users/me":
            return httpx.Response(200, json={"object": "user", "id": "bot-1", "type": "bot", "name": "DocBridge"})

        if path == "/search":
            body = json.loads(request.content)
            items = [self.pages[i] for i in self.order] + list(self.databases.values())
            object_filter = (body.get("filter") or {}).get("value")
            if object_filter:
                items = [i for i in items if i["object"] == object_filter]
            start = int(body.get("start_cursor") or 0)
            end = start + body["page_size"]
            return httpx.Response(200, json={
                "results": items[start:end],
                "has_more": end < len(items),
                "next_cursor": str(end) if end < len(items) else None,
            })

        if path.startswith("/blocks/"):
            block_id = path.split("/")[2]
            if block_id in self.missing or block_id not in self.blocks:
                return httpx.Response(404, json={"object": "error", "code": "object_not_found", "message": "nope"})
            return httpx.Response(200, json={"results": self.blocks[block_id], "has_more": False})

        if path.startswith("/pages/"):
            page_id = path.split("/")[2]
            if page_id not in self.pages:
                return httpx.Response(404, json={"object": "error", "code": "object_not_found", "message": "nope"})
            return httpx.Response(200, json=self.pages[page_id])

        if path.startswith("/databases/"):
            database_id = path.split("/")[2]
            if path.endswith("/query"):
                rows = self.database_rows[database_id]
                start = int(json.loads(request.content).get("start_cursor") or 0)
                end = start + self.database_page_size
                return httpx.Response(200, json={
                    "results": rows[start:end],
                    "has_more": end < len(rows),
                    "next_cursor": str(end) if end < len(rows) else None,
                })
            return httpx.Response(200, json=self.databases[database_id])

        return httpx.Response(404, json={"object": "error", "code": "object_not_found", "message": path})


FIVE_PAGES = [
    page("page-1", "2024-03-05T10:00:00.000Z"),
    page("page-2", "2024-03-04T10:00:00.000Z"),
    page("page-3", "2024-03-03T10:00:00.000Z"),
    page("page-4", "2024-03-02T10:00:00.000Z"),
    page("page-5", "2024-03-01T10:00:00.000Z"),
]


def make_connector(notion: FakeNotion, document_store) -> NotionConnector:
    return NotionConnector(
        ConnectorCredentials(access_token="secret_token", extra={"workspace_name": "Acme"}),
        NotionConfig(connector_id="conn-notion", org_id="org-test"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(notion), base_url=NOTION_BASE_URL),
        document_store=document_store,
    )


@pytest.fixture
def notion() -> FakeNotion:
    return FakeNotion(FIVE_PAGES)


@pytest.fixture
def connector(notion, document_store) -> NotionConnector:
    return make_connector(notion, document_store)


class TestNotionConnection:
    """Tests for construction and connection checks."""

    def test_token_is_required(self):
        with pytest.raises(AuthenticationException):
            NotionConnector(ConnectorCredentials())

    def test_authorization_code_is_accepted(self):
        connector = NotionConnector(ConnectorCredentials(extra={"code": "auth-code"}))

        assert connector.credentials.extra["code"] == "auth-code"

    async def test_connection_is_repeatable(self, connector, notion):
        first = await connector.test_connection()
        second = await connector.test_connection()

        assert first.success and second.success
        assert first.message == second.message == "Connected as DocBridge"
        assert first.metadata["workspace_name"] == "Acme"
        assert first.metadata["can_access_pages"] is True
        assert notion.requests[0].headers["Notion-Version"] == NOTION_API_VERSION

    async def test_invalid_token_is_not_refreshed(self, notion, document_store):
        connector = NotionConnector(
            ConnectorCredentials(access_token="revoked"),
            client=httpx.AsyncClient(transport=httpx.MockTransport(notion), base_url=NOTION_BASE_URL),
            document_store=document_store,
        )

        result = await connector.test_connection()

        assert result.success is False
        assert len(notion.requests) == 1

    async def test_refresh_is_not_supported(self, connector):
        with pytest.raises(AuthenticationException):
            await connector.refresh_credentials()


class TestNotionSync:
    """Tests for Notion sync."""

    async def test_sync_stores_pages_as_markdown(self, connector, document_store):
        result = await connector.sync()

        assert result.success is True
        assert result.files_processed == 5
        assert result.files_updated == 5
        row = await document_store.get("conn-notion", "notion-page-page-1")
        assert row.content == "Content of page-1\n"
        assert row.title == "Page page-1"
        assert row.file_type == "text/markdown"
        assert row.source_metadata["notion_id"] == "page-1"

    async def test_second_sync_updates_nothing(self, connector):
        await connector.sync()
        result = await connector.sync()

        assert result.files_processed == 5
        assert result.files_updated == 0

    async def test_since_stops_at_older_edits(self, connector):
        since = datetime(2024, 3, 3, 12, 0, tzinfo=timezone.utc)

        result = await connector.sync(SyncOptions(since=since))

        assert result.files_processed == 2

    async def test_full_sync_ignores_since(self, connector):
        since = datetime(2024, 3, 3, 12, 0, tzinfo=timezone.utc)

        result = await connector.sync(SyncOptions(since=since, full_sync=True))

        assert result.files_processed == 5

    async def test_one_failure_in_five_exceeds_tolerance(self, connector, notion):
        notion.missing.add("page-3")

        result = await connector.sync()

        assert result.files_processed == 5
        assert result.files_failed == 1
        assert result.success is False
        assert result.errors[0].file_id == "page-3"
        assert result.errors[0].retryable is False

    async def test_one_failure_in_twenty_is_tolerated(self, document_store):
        pages = [page(f"page-{i:02d}", f"2024-03-01T10:{59 - i:02d}:00.000Z") for i in range(20)]
        notion = FakeNotion(pages)
        notion.missing.add("page-07")
        connector = make_connector(notion, document_store)

        result = await connector.sync()

        assert result.files_processed == 20
        assert result.files_failed == 1
        assert result.success is True

    async def test_one_failure_in_ten_is_not_tolerated(self, document_store):
        pages = [page(f"page-{i:02d}", f"2024-03-01T10:{59 - i:02d}:00.000Z") for i in range(10)]
        notion = FakeNotion(pages)
        notion.missing.add("page-03")
        connector = make_connector(notion, document_store)

        result = await connector.sync()

        assert result.files_processed == 10
        assert result.files_failed == 1
        assert result.success is False

    async def test_search_pages_through_cursor(self, document_store):
        pages = [page(f"page-{i:03d}", f"2024-03-01T10:00:{59 - (i % 60):02d}.000Z") for i in range(120)]
        connector = make_connector(FakeNotion(pages), document_store)

        files = await connector.list_files()

        assert len(files) == 100
        assert files[0].id == "page-000"

    async def test_nested_blocks_are_fetched(self, connector, notion, document_store):
        notion.blocks["page-1"] = [
            {**block("bulleted_list_item", "Parent"), "id": "parent-1", "has_children": True},
        ]
        notion.blocks["parent-1"] = [block("bulleted_list_item", "Child")]

        await connector.sync(SyncOptions(limit=1))

        row = await document_store.get("conn-notion", "notion-page-page-1")
        assert row.content == "- Parent\n  - Child\n"


class TestNotionDownload:
    """Tests for download_file."""

    async def test_download_page(self, connector):
        content = await connector.download_file("notion://page-2")

        assert content.id == "page-2"
        assert content.content == "Content of page-2\n"
        assert content.mime_type == "text/markdown"

    async def test_download_falls_back_to_database(self, connector, notion):
        notion.databases["db-1"] = {
            "object": "database",
            "id": "db-1",
            "title": text("Tasks"),
            "last_edited_time": "2024-03-01T00:00:00.000Z",
        }
        notion.database_rows["db-1"] = [page("page-4", "2024-03-02T10:00:00.000Z", "Write tests")]

        content = await connector.download_file("db-1")

        assert content.title == "Tasks"
        assert content.content.startswith("# Tasks\n")
        assert "Found 1 pages in this database." in content.content
        assert "## Write tests" in content.content
        assert "Content of page-4" in content.content

    async def test_large_database_stops_after_rendered_rows(self, connector, notion):
        notion.databases["db-big"] = {"object": "database", "id": "db-big", "title": text("Backlog")}
        notion.database_rows["db-big"] = [
            page(f"row-{i:03d}", "2024-03-02T10:00:00.000Z", f"Row {i}") for i in range(130)
        ]
        notion.database_page_size = 30

        content = await connector.download_file("db-big")

        queries = [r for r in notion.requests if r.url.path.endswith("/databases/db-big/query")]
        assert len(queries) == 2
        assert "Found more than 60 pages in this database." in content.content
        assert content.content.count("\n## ") == 50
        assert "## Row 49\n" in content.content
        assert "## Row 50\n" not in content.content
