"""
DocBridge - URL Import Connector
================================

Fetches web pages, strips boilerplate and converts the main content to
markdown, then writes the result to blob storage.

Failures are classified for retry:
- HTTP 5xx, 429, timeouts and network errors are retryable
- Other 4xx responses and oversize pages are not
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import structlog
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from docbridge.core.config import settings
from docbridge.services.base import (
    NotFoundException,
    ProviderException,
    ValidationException,
)
from docbridge.services.blob_storage import BlobStorage, get_blob_storage
from docbridge.services.connectors.base import (
    AuthResult,
    Connector,
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
from docbridge.services.connectors.markdown import html_to_markdown, strip_boilerplate
from docbridge.services.connectors.registry import ConnectorRegistry
from docbridge.services.connectors.storage import ImportedDocumentStore, StoreOutcome

logger = structlog.get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; DocBridge/1.0)"
TEST_URL = "https://www.example.com"

DEFAULT_REMOVE_SELECTORS = [
    ".advertisement",
    ".ad",
    ".ads",
    ".cookie-banner",
    ".social-share",
]

MAIN_CONTENT_SELECTORS = [
    "main",
    "article",
    "[role=main]",
    ".content",
    ".post-content",
    ".article-content",
    "#content",
]


class URLStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ExtractionOptions(BaseModel):
    """Per-URL content extraction overrides."""
    remove_selectors: List[str] = Field(default_factory=list)
    main_content_selector: Optional[str] = None
    include_images: bool = False
    include_links: bool = False


class QueuedURL(BaseModel):
    id: str
    url: str
    status: URLStatus = URLStatus.PENDING
    title: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    markdown: Optional[str] = None
    storage_path: Optional[str] = None
    error: Optional[str] = None
    fetched_at: Optional[datetime] = None
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AddURLResult(BaseModel):
    success: bool
    url_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None


class ExtractedPage(BaseModel):
    title: str
    description: str = ""
    content: str
    markdown: str


class URLImportConfig(ConnectorConfig):
    batch_id: Optional[str] = None
    bucket: str = Field(default_factory=lambda: settings.STORAGE_BUCKET)
    timeout_seconds: float = Field(default_factory=lambda: float(settings.URL_IMPORT_TIMEOUT_SECONDS))
    max_content_bytes: int = Field(default_factory=lambda: settings.URL_IMPORT_MAX_CONTENT_MB * 1024 * 1024)
    user_agent: str = USER_AGENT


def validate_url(url: str) -> Optional[str]:
    """Error message for an unusable URL, or None."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "Invalid URL format"
    if not parsed.scheme or not parsed.netloc:
        return "Invalid URL format"
    if parsed.scheme not in ("http", "https"):
        return "Only HTTP and HTTPS URLs are supported"
    return None


def _meta_content(soup: BeautifulSoup, **attrs) -> str:
    tag = soup.find("meta", attrs=attrs)
    return (tag.get("content") or "").strip() if tag else ""


def extract_page(html: str, options: Optional[ExtractionOptions] = None) -> ExtractedPage:
    """
    Pull title, description and main content out of an HTML page.

    Title and description are read before boilerplate removal, since
    headers often hold the only h1.
    """
    options = options or ExtractionOptions()
    soup = BeautifulSoup(html, "html.parser")

    h1 = soup.find("h1")
    title = (
        (soup.title.get_text(strip=True) if soup.title else "")
        or _meta_content(soup, property="og:title")
        or (h1.get_text(strip=True) if h1 else "")
        or "Untitled"
    )
    description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")

    strip_boilerplate(soup, DEFAULT_REMOVE_SELECTORS + options.remove_selectors)

    main = None
    if options.main_content_selector:
        main = soup.select_one(options.main_content_selector)
    else:
        for selector in MAIN_CONTENT_SELECTORS:
            main = soup.select_one(selector)
            if main is not None:
                break
    if main is None:
        main = soup.body or soup

    body = html_to_markdown(
        str(main),
        include_links=options.include_links,
        include_images=options.include_images,
    )

    markdown = f"# {title}\n\n"
    if description:
        markdown += f"> {description}\n\n"
    markdown += body

    return ExtractedPage(
        title=title,
        description=description,
        content=main.get_text(separator="\n", strip=True),
        markdown=markdown,
    )


@ConnectorRegistry.register(ConnectorType.URL_IMPORT)
class URLImportConnector(Connector):
    """
    Queue of URLs fetched and converted by sync().

    Each entry moves pending -> success or pending -> failed;
    retry_failed() moves failed entries back to pending.
    """

    connector_type = ConnectorType.URL_IMPORT
    display_name = "URL Import"
    description = "Import content from web URLs with HTML to markdown conversion"
    icon = "globe"

    requires_oauth = False
    config_class = URLImportConfig

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[URLImportConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        blob_storage: Optional[BlobStorage] = None,
        document_store: Optional[ImportedDocumentStore] = None,
        organization_id=None,
        user_id=None,
        **kwargs,
    ):
        super().__init__(
            credentials,
            config,
            document_store=document_store,
            organization_id=organization_id,
            user_id=user_id,
        )
        self._client = client
        self.blob_storage = blob_storage or get_blob_storage()
        self._urls: Dict[str, QueuedURL] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def add_url(self, url: str, options: Optional[ExtractionOptions] = None) -> AddURLResult:
        error = validate_url(url)
        if error:
            return AddURLResult(success=False, url=url, error=error)

        url_id = uuid.uuid4().hex
        self._urls[url_id] = QueuedURL(id=url_id, url=url, options=options or ExtractionOptions())
        return AddURLResult(success=True, url_id=url_id, url=url)

    def add_urls(self, urls: List[str], options: Optional[ExtractionOptions] = None) -> List[AddURLResult]:
        return [self.add_url(url, options) for url in urls]

    def remove_url(self, url_id: str) -> bool:
        return self._urls.pop(url_id, None) is not None

    def clear_queue(self) -> None:
        self._urls.clear()

    def get_queue_size(self) -> int:
        return len(self._urls)

    def get_queue_stats(self) -> Dict[str, int]:
        stats = {"total": len(self._urls)}
        for status in URLStatus:
            stats[status.value] = sum(1 for u in self._urls.values() if u.status == status)
        return stats

    def retry_failed(self) -> int:
        """Move failed URLs back to pending; returns how many were reset."""
        count = 0
        for queued in self._urls.values():
            if queued.status == URLStatus.FAILED:
                queued.status = URLStatus.PENDING
                queued.error = None
                count += 1
        return count

    def storage_path(self, queued: QueuedURL) -> str:
        prefix = f"org_{self.organization_id}/imports"
        if self.config.batch_id:
            prefix = f"{prefix}/{self.config.batch_id}"
        return f"{prefix}/{queued.id}.md"

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch(self, url: str) -> str:
        """
        GET a page, enforcing the size ceiling while streaming.

        Raises:
            ProviderException: non-2xx status (retryable for 5xx and 429)
            ValidationException: response larger than max_content_bytes
        """
        limit = self.config.max_content_bytes
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }

        async with self.client.stream("GET", url, headers=headers) as response:
            if not response.is_success:
                raise ProviderException(
                    "url_import",
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    status_code=response.status_code,
                )

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > limit:
                raise ValidationException(f"Content too large: {declared} bytes")

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > limit:
                    raise ValidationException(f"Content too large: more than {limit} bytes")
                chunks.append(chunk)

            encoding = response.encoding or "utf-8"

        return b"".join(chunks).decode(encoding, errors="replace")

    async def _process(self, queued: QueuedURL) -> StoreOutcome:
        try:
            html = await self.fetch(queued.url)
            page = extract_page(html, queued.options)

            path = self.storage_path(queued)
            await self.blob_storage.upload(self.config.bucket, path, page.markdown, content_type="text/markdown")
        except Exception as e:
            queued.status = URLStatus.FAILED
            queued.error = describe_error(e)
            raise

        queued.title = page.title
        queued.description = page.description
        queued.content = page.content
        queued.markdown = page.markdown
        queued.storage_path = path
        queued.fetched_at = datetime.now(timezone.utc)
        queued.status = URLStatus.SUCCESS
        queued.metadata.update({
            "content_length": len(page.content),
            "markdown_length": len(page.markdown),
            "description": page.description,
        })
        self.log_info("URL imported", url_id=queued.id, url=queued.url, path=path)
        return StoreOutcome.CREATED

    # -------------------------------------------------------------------------
    # Connector operations
    # -------------------------------------------------------------------------

    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        self._authenticated = True
        return AuthResult(
            success=True,
            user_id=str(self.user_id) if self.user_id else None,
            user_name="URL Import User",
        )

    async def test_connection(self) -> TestResult:
        try:
            response = await self.client.head(
                TEST_URL,
                headers={"User-Agent": self.config.user_agent},
                timeout=5.0,
            )
        except httpx.HTTPError as e:
            return TestResult(success=False, message=f"Connection test failed: {describe_error(e)}")

        return TestResult(
            success=response.status_code == 200,
            message="URL fetching is working" if response.status_code == 200 else f"HTTP {response.status_code}",
            metadata={"status_code": response.status_code},
        )

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = options or SyncOptions()

        pending = [u for u in self._urls.values() if u.status == URLStatus.PENDING]
        if options.limit:
            pending = pending[:options.limit]

        result = SyncResult()
        await self._run_in_batches(result, pending, self._process, lambda u: (u.id, u.url))
        result.metadata = {
            "batch_id": self.config.batch_id,
            "remaining_urls": self.get_queue_stats()[URLStatus.PENDING.value],
        }
        return self._build_result(result)

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        options = options or ListOptions()

        urls = list(self._urls.values())
        status = options.filters.get("status")
        if status:
            urls = [u for u in urls if u.status == status]

        limit = options.limit or 100
        return [
            ConnectorFile(
                id=u.id,
                name=u.title or u.url,
                type="url",
                mime_type="text/html",
                size=len(u.markdown or ""),
                modified_at=u.fetched_at,
                created_at=u.fetched_at,
                url=u.url,
                path=u.storage_path,
                metadata={"status": u.status.value, "error": u.error, **u.metadata},
            )
            for u in urls[options.offset:options.offset + limit]
        ]

    async def download_file(self, file_id: str) -> FileContent:
        queued = self._urls.get(file_id)
        if queued is None:
            raise NotFoundException("URL", file_id)
        if queued.status != URLStatus.SUCCESS:
            raise ValidationException(f"URL not processed: {queued.status.value}")
        if not queued.markdown:
            raise ValidationException("No markdown content available")

        return FileContent(
            id=queued.id,
            title=queued.title or queued.url,
            content=queued.markdown,
            mime_type="text/markdown",
            size=len(queued.markdown.encode("utf-8")),
            metadata={
                "url": queued.url,
                "fetched_at": queued.fetched_at.isoformat() if queued.fetched_at else None,
                **queued.metadata,
            },
        )

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        schema = super().get_config_schema()
        schema["properties"].update({
            "batch_id": {"type": "string"},
            "timeout_seconds": {
                "type": "number",
                "default": settings.URL_IMPORT_TIMEOUT_SECONDS,
                "description": "Per-request fetch timeout",
            },
            "max_content_bytes": {
                "type": "integer",
                "default": settings.URL_IMPORT_MAX_CONTENT_MB * 1024 * 1024,
                "description": "Reject pages larger than this",
            },
        })
        return schema
