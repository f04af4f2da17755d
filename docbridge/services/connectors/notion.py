"""
DocBridge - Notion Connector
============================

Connector for importing content from Notion workspaces.

Supports:
- Pages and databases found through the search API
- Nested block trees rendered as markdown
- Incremental sync by last_edited_time
- Internal integration tokens and public OAuth tokens (which never expire)
"""

from datetime import timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog

from docbridge.core.config import settings
from docbridge.services.base import (
    AuthenticationException,
    ConfigurationException,
    NotAuthenticatedException,
    NotFoundException,
    ProviderException,
    ServiceException,
)
from docbridge.services.connectors.base import (
    AuthResult,
    ConnectorConfig,
    ConnectorCredentials,
    ConnectorFile,
    ConnectorType,
    FileContent,
    ListOptions,
    SyncOptions,
    SyncResult,
    TestResult,
    describe_error,
)
from docbridge.services.connectors.oauth import OAuthConnector
from docbridge.services.connectors.registry import ConnectorRegistry
from docbridge.services.connectors.storage import StoreOutcome

logger = structlog.get_logger(__name__)

NOTION_API_VERSION = "2022-06-28"
NOTION_BASE_URL = "https://api.notion.com/v1"
NOTION_AUTH_URL = "https://api.notion.com/v1/oauth/authorize"
NOTION_TOKEN_URL = "https://api.notion.com/v1/oauth/token"

# Pages rendered into a database export
DATABASE_PAGE_LIMIT = 50

# Children of these blocks are rendered at the parent's indentation
FLAT_CHILDREN_BLOCKS = ("toggle", "column_list", "column")


# =============================================================================
# Markdown Rendering
# =============================================================================

def extract_rich_text(rich_text: Optional[List[Dict[str, Any]]]) -> str:
    """Render a Notion rich text array with inline markdown formatting."""
    if not rich_text or not isinstance(rich_text, list):
        return ""

    parts = []
    for text in rich_text:
        content = text.get("plain_text") or ""
        annotations = text.get("annotations") or {}
        if annotations.get("bold"):
            content = f"**{content}**"
        if annotations.get("italic"):
            content = f"*{content}*"
        if annotations.get("strikethrough"):
            content = f"~~{content}~~"
        if annotations.get("code"):
            content = f"`{content}`"
        if text.get("href"):
            content = f"[{content}]({text['href']})"
        parts.append(content)

    return "".join(parts)


def extract_file_url(file_data: Dict[str, Any]) -> str:
    if file_data.get("type") == "external":
        return (file_data.get("external") or {}).get("url") or ""
    if file_data.get("type") == "file":
        return (file_data.get("file") or {}).get("url") or ""
    return file_data.get("url") or ""


def extract_title(item: Optional[Dict[str, Any]]) -> str:
    """Title of a page or database object."""
    if not item:
        return "Untitled"

    if isinstance(item.get("title"), list):
        return extract_rich_text(item["title"]) or "Untitled"

    properties = item.get("properties") or {}
    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return extract_rich_text(prop.get("title")) or "Untitled"

    name = properties.get("Name") or {}
    if name.get("title"):
        return extract_rich_text(name["title"]) or "Untitled"

    return "Untitled"


def extract_user_name(user: Dict[str, Any]) -> str:
    if user.get("name"):
        return user["name"]
    if (user.get("person") or {}).get("email"):
        return user["person"]["email"]
    owner_user = ((user.get("bot") or {}).get("owner") or {}).get("user") or {}
    if owner_user.get("name"):
        return owner_user["name"]
    return "Unknown User"


def table_to_markdown(block: Dict[str, Any]) -> str:
    rows = block.get("children") or []
    if not rows:
        return ""

    has_column_header = (block.get("table") or {}).get("has_column_header")
    lines = []
    for index, row in enumerate(rows):
        if row.get("type") != "table_row":
            continue
        cells = (row.get("table_row") or {}).get("cells") or []
        lines.append("| " + " | ".join(extract_rich_text(cell) for cell in cells) + " |")
        if index == 0 and has_column_header:
            lines.append("| " + " | ".join("---" for _ in cells) + " |")

    return "\n".join(lines) + "\n"


def block_to_markdown(block: Dict[str, Any], indent: int = 0) -> str:
    """Render one block, and its already-fetched children, as markdown."""
    prefix = "  " * indent
    block_type = block.get("type")
    data = block.get(block_type) if block_type else None
    if data is None:
        return ""

    text = extract_rich_text(data.get("rich_text"))
    children = block.get("children") or []

    if block_type == "paragraph":
        markdown = f"{prefix}{text}\n"
    elif block_type == "heading_1":
        markdown = f"{prefix}# {text}\n"
    elif block_type == "heading_2":
        markdown = f"{prefix}## {text}\n"
    elif block_type == "heading_3":
        markdown = f"{prefix}### {text}\n"
    elif block_type == "bulleted_list_item":
        markdown = f"{prefix}- {text}\n"
    elif block_type == "numbered_list_item":
        markdown = f"{prefix}1. {text}\n"
    elif block_type == "to_do":
        checked = "x" if data.get("checked") else " "
        markdown = f"{prefix}- [{checked}] {text}\n"
    elif block_type == "toggle":
        markdown = f"{prefix}▶ {text}\n"
    elif block_type == "quote":
        markdown = f"{prefix}> {text}\n"
    elif block_type == "callout":
        emoji = (data.get("icon") or {}).get("emoji") or "💡"
        markdown = f"{prefix}> {emoji} {text}\n"
    elif block_type == "code":
        markdown = f"{prefix}```{data.get('language') or ''}\n{prefix}{text}\n{prefix}```\n"
    elif block_type == "divider":
        markdown = f"{prefix}---\n"
    elif block_type == "image":
        markdown = f"{prefix}![{extract_rich_text(data.get('caption'))}]({extract_file_url(data)})\n"
    elif block_type == "video":
        url = extract_file_url(data)
        markdown = f"{prefix}[Video: {url}]({url})\n"
    elif block_type == "file":
        name = extract_rich_text(data.get("caption")) or data.get("name") or "File"
        markdown = f"{prefix}[{name}]({extract_file_url(data)})\n"
    elif block_type == "pdf":
        markdown = f"{prefix}[PDF Document]({extract_file_url(data)})\n"
    elif block_type == "bookmark":
        url = data.get("url") or ""
        markdown = f"{prefix}[{extract_rich_text(data.get('caption')) or url}]({url})\n"
    elif block_type == "embed":
        markdown = f"{prefix}[Embedded Content]({data.get('url') or ''})\n"
    elif block_type == "link_preview":
        url = data.get("url") or ""
        markdown = f"{prefix}[{url}]({url})\n"
    elif block_type == "table":
        return table_to_markdown(block)
    elif block_type in ("column_list", "column"):
        markdown = ""
    else:
        markdown = f"{prefix}{text}\n" if data.get("rich_text") else ""

    if children:
        child_indent = indent if block_type in FLAT_CHILDREN_BLOCKS else indent + 1
        markdown += blocks_to_markdown(children, child_indent)

    return markdown


def blocks_to_markdown(blocks: List[Dict[str, Any]], indent: int = 0) -> str:
    parts = []
    for block in blocks:
        rendered = block_to_markdown(block, indent)
        if rendered:
            parts.append(rendered)
    return "\n".join(parts)


# =============================================================================
# Connector
# =============================================================================

class NotionConfig(ConnectorConfig):
    pass


@ConnectorRegistry.register(ConnectorType.NOTION)
class NotionConnector(OAuthConnector):
    """
    Connector for Notion workspaces.

    Notion tokens do not expire, so there is no refresh grant: a 401 is
    final and the workspace has to be re-authorized.
    """

    connector_type = ConnectorType.NOTION
    display_name = "Notion"
    description = "Sync Notion pages, databases, and embedded content"
    icon = "file-text"

    config_class = NotionConfig
    api_base_url = NOTION_BASE_URL
    provider_name = "notion"
    supports_token_refresh = False

    # Up to 10% of pages may fail while the sync still counts as successful
    failure_tolerance = 0.1

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[NotionConfig] = None,
        **kwargs,
    ):
        if credentials is None or not (credentials.access_token or credentials.extra.get("code")):
            raise AuthenticationException("Notion access token is required")
        super().__init__(credentials, config, **kwargs)

    def _default_headers(self) -> Dict[str, str]:
        return {"Notion-Version": NOTION_API_VERSION}

    def _require_token(self) -> None:
        if not self.credentials.access_token:
            raise NotAuthenticatedException()

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def get_authorization_url(self, state: Optional[str] = None) -> Optional[str]:
        """Get Notion OAuth URL."""
        if not settings.NOTION_CLIENT_ID or not settings.NOTION_REDIRECT_URI:
            return None

        params = {
            "client_id": settings.NOTION_CLIENT_ID,
            "response_type": "code",
            "owner": "user",
            "redirect_uri": settings.NOTION_REDIRECT_URI,
        }
        if state:
            params["state"] = state
        return f"{NOTION_AUTH_URL}?{urlencode(params)}"

    async def _exchange_code(self, code: str) -> ConnectorCredentials:
        if not settings.NOTION_CLIENT_ID or not settings.NOTION_CLIENT_SECRET:
            raise ConfigurationException("Notion OAuth client is not configured")

        response = await self.client.post(
            NOTION_TOKEN_URL,
            auth=httpx.BasicAuth(settings.NOTION_CLIENT_ID, settings.NOTION_CLIENT_SECRET),
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.NOTION_REDIRECT_URI,
            },
        )
        if response.status_code != 200:
            raise ProviderException(
                self.provider_name,
                f"OAuth token exchange failed: {response.text[:200]}",
                status_code=response.status_code,
            )

        data = response.json()
        return ConnectorCredentials(
            access_token=data["access_token"],
            extra={
                "workspace_id": data.get("workspace_id"),
                "workspace_name": data.get("workspace_name"),
                "workspace_icon": data.get("workspace_icon"),
                "bot_id": data.get("bot_id"),
            },
        )

    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        credentials = credentials or self.credentials
        code = credentials.extra.get("code")

        try:
            if code:
                self._set_credentials(await self._exchange_code(code))
            elif credentials.access_token:
                self._set_credentials(credentials)
            else:
                auth_url = self.get_authorization_url()
                return AuthResult(
                    success=False,
                    error=f"Please visit this URL to authorize: {auth_url}" if auth_url else "Notion access token is required",
                    auth_url=auth_url,
                )

            user = await self._get_json("/users/me", resource_type="User")
            self._authenticated = True
            return AuthResult(success=True, user_id=user.get("id"), user_name=extract_user_name(user))

        except (ServiceException, httpx.HTTPError) as e:
            self._authenticated = False
            self.log_error("Notion authentication failed", error=e)
            return AuthResult(success=False, error=describe_error(e))

    async def test_connection(self) -> TestResult:
        if not self.credentials.access_token:
            return TestResult(success=False, message="Not authenticated")

        try:
            user = await self._get_json("/users/me", resource_type="User")
            search = await self._search_page(page_size=1, object_type="page")
        except (ServiceException, httpx.HTTPError) as e:
            self.log_warning("Notion connection test failed", error=describe_error(e))
            return TestResult(success=False, message=describe_error(e))

        return TestResult(
            success=True,
            message=f"Connected as {extract_user_name(user)}",
            metadata={
                "user_id": user.get("id"),
                "workspace_name": self.credentials.extra.get("workspace_name"),
                "can_access_pages": len(search.get("results", [])) > 0,
            },
        )

    # -------------------------------------------------------------------------
    # API helpers
    # -------------------------------------------------------------------------

    async def _search_page(
        self,
        page_size: int = 100,
        start_cursor: Optional[str] = None,
        object_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "page_size": page_size,
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
        }
        if start_cursor:
            body["start_cursor"] = start_cursor
        if object_type:
            body["filter"] = {"property": "object", "value": object_type}

        response = await self._request("POST", "/search", json=body, resource_type="Search")
        return response.json()

    async def _search(self, limit: Optional[int] = None, since=None) -> List[Dict[str, Any]]:
        """
        Search pages and databases, newest edits first.

        Results are sorted by last_edited_time, so paging stops at the
        first item older than since.
        """
        items: List[Dict[str, Any]] = []
        cursor = None
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        while True:
            page_size = min(100, limit - len(items)) if limit else 100
            data = await self._search_page(page_size=page_size, start_cursor=cursor)

            for item in data.get("results", []):
                if item.get("object") not in ("page", "database"):
                    continue
                edited = self._parse_datetime(item.get("last_edited_time"))
                if since and edited and edited < since:
                    return items
                items.append(item)
                if limit and len(items) >= limit:
                    return items

            if not data.get("has_more"):
                return items
            cursor = data.get("next_cursor")

    async def _get_block_children(self, block_id: str) -> List[Dict[str, Any]]:
        """Fetch a block's children, recursively attaching grandchildren."""
        blocks: List[Dict[str, Any]] = []
        cursor = None

        while True:
            params: Dict[str, Any] = {"page_size": 100}
            if cursor:
                params["start_cursor"] = cursor
            data = await self._get_json(
                f"/blocks/{block_id}/children",
                params=params,
                resource_type="Block",
                resource_id=block_id,
            )
            blocks.extend(data.get("results", []))
            if not data.get("has_more"):
                break
            cursor = data.get("next_cursor")

        for block in blocks:
            if block.get("has_children"):
                try:
                    block["children"] = await self._get_block_children(block["id"])
                except NotFoundException:
                    self.log_debug("Child blocks not accessible", block_id=block["id"])

        return blocks

    async def _page_markdown(self, page_id: str) -> str:
        return blocks_to_markdown(await self._get_block_children(page_id))

    async def _database_markdown(self, database: Dict[str, Any]) -> str:
        database_id = database["id"]
        pages: List[Dict[str, Any]] = []
        cursor = None
        has_more = False

        while len(pages) < DATABASE_PAGE_LIMIT:
            body: Dict[str, Any] = {"page_size": 100}
            if cursor:
                body["start_cursor"] = cursor
            response = await self._request(
                "POST",
                f"/databases/{database_id}/query",
                json=body,
                resource_type="Database",
                resource_id=database_id,
            )
            data = response.json()
            pages.extend(data.get("results", []))
            has_more = bool(data.get("has_more"))
            if not has_more:
                break
            cursor = data.get("next_cursor")

        # Rows past the rendered ones are not fetched, so the count is a lower bound
        count = f"more than {len(pages)}" if has_more else str(len(pages))
        parts = [f"# {extract_title(database)}\n", f"Found {count} pages in this database.\n"]
        for page in pages[:DATABASE_PAGE_LIMIT]:
            parts.append(f"## {extract_title(page)}\n")
            try:
                parts.append(await self._page_markdown(page["id"]))
            except ServiceException as e:
                self.log_warning("Failed to render database page", page_id=page["id"], error=e.message)

        return "\n".join(parts)

    # -------------------------------------------------------------------------
    # Connector operations
    # -------------------------------------------------------------------------

    def _to_connector_file(self, item: Dict[str, Any]) -> ConnectorFile:
        return ConnectorFile(
            id=item["id"],
            name=extract_title(item),
            type=item.get("object", "page"),
            mime_type="text/markdown",
            modified_at=self._parse_datetime(item.get("last_edited_time")),
            created_at=self._parse_datetime(item.get("created_time")),
            url=item.get("url"),
            metadata={
                "notion_id": item["id"],
                "object_type": item.get("object"),
                "parent": item.get("parent"),
            },
        )

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        self._require_token()
        options = options or ListOptions()

        limit = options.limit or 100
        items = await self._search(limit=options.offset + limit, since=options.since)
        return [self._to_connector_file(item) for item in items[options.offset:]]

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        self._require_token()
        options = options or SyncOptions()

        since = None if options.full_sync else options.since
        items = await self._search(limit=options.limit, since=since)
        self.log_info("Notion items found for sync", count=len(items), connector_id=self.connector_id)

        result = SyncResult(metadata={"total_items": len(items)})
        await self._run_in_batches(
            result,
            items,
            self._sync_item,
            lambda item: (item["id"], extract_title(item)),
        )
        return self._build_result(result)

    async def _sync_item(self, item: Dict[str, Any]) -> StoreOutcome:
        object_type = item.get("object")
        if object_type == "database":
            content = await self._database_markdown(item)
        else:
            content = await self._page_markdown(item["id"])

        metadata = {
            "notion_id": item["id"],
            "object_type": object_type,
            "created_time": item.get("created_time"),
            "last_edited_time": item.get("last_edited_time"),
            "properties": item.get("properties"),
        }
        if object_type == "page":
            metadata["parent"] = item.get("parent")

        return await self._store(
            external_id=f"notion-{object_type}-{item['id']}",
            title=extract_title(item),
            content=content,
            file_type="text/markdown",
            file_size=len(content.encode("utf-8")),
            external_url=item.get("url"),
            source_metadata=metadata,
        )

    async def download_file(self, file_id: str) -> FileContent:
        """Render a page, or failing that a database, as markdown."""
        self._require_token()
        notion_id = file_id.replace("notion://", "")

        try:
            item = await self._get_json(f"/pages/{notion_id}", resource_type="Page", resource_id=notion_id)
            content = await self._page_markdown(notion_id)
        except NotFoundException:
            item = await self._get_json(
                f"/databases/{notion_id}",
                resource_type="Notion page or database",
                resource_id=notion_id,
            )
            content = await self._database_markdown(item)

        return FileContent(
            id=item["id"],
            title=extract_title(item),
            content=content,
            mime_type="text/markdown",
            size=len(content.encode("utf-8")),
            metadata={
                "url": item.get("url"),
                "created_time": item.get("created_time"),
                "last_edited_time": item.get("last_edited_time"),
                "parent": item.get("parent"),
            },
        )

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_credentials_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["access_token"],
            "properties": {
                "access_token": {
                    "type": "string",
                    "description": "Notion integration token or OAuth access token",
                },
            },
        }
