"""
DocBridge - Google Drive Connector
==================================

Connects to Google Drive for document import and publishing.

Features:
- OAuth 2.0 authentication (authorization code or existing tokens)
- Incremental sync with modifiedTime filtering
- Google Docs/Sheets/Slides export (Docs become markdown)
- Folder browsing for the import UI
- Publishing, updating and trashing documents with the drive.file scope
"""

import asyncio
import io
from datetime import timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload
from pydantic import Field

from docbridge.core.config import settings
from docbridge.services.base import (
    NotAuthenticatedException,
    NotFoundException,
    ProviderException,
    RateLimitException,
    ServiceException,
    UnauthorizedException,
    ValidationException,
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
from docbridge.services.connectors.markdown import html_to_markdown
from docbridge.services.connectors.oauth import OAuthConnector
from docbridge.services.connectors.publishing import (
    ConnectorPublishOptions,
    ConnectorPublishResult,
    ConnectorUpdateOptions,
    CreateFolderRequest,
    CreateFolderResponse,
    ExternalDocumentInfo,
    FolderInfo,
    FolderListRequest,
    FolderListResponse,
    PublishableConnector,
    PublishFormat,
    content_to_bytes,
)
from docbridge.services.connectors.registry import ConnectorRegistry
from docbridge.services.connectors.storage import StoreOutcome
from docbridge.services.connectors.token_manager import exchange_google_code, refresh_google_token

logger = structlog.get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"

GOOGLE_DOCUMENT = "application/vnd.google-apps.document"
GOOGLE_SPREADSHEET = "application/vnd.google-apps.spreadsheet"
GOOGLE_PRESENTATION = "application/vnd.google-apps.presentation"
GOOGLE_FOLDER = "application/vnd.google-apps.folder"

# Workspace files have no binary content and must be exported
EXPORT_FORMATS = {
    GOOGLE_DOCUMENT: "text/html",
    GOOGLE_SPREADSHEET: "text/csv",
    GOOGLE_PRESENTATION: "text/plain",
}

SUPPORTED_MIME_TYPES = [
    *EXPORT_FORMATS.keys(),
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
    "text/plain",
    "text/markdown",
    "text/html",
    "text/csv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/quicktime",
    "video/webm",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "video/mpeg",
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/ogg",
    "audio/x-m4a",
    "audio/mp4",
]

READ_ONLY_SCOPES = [
    "https://www.googleapis.com/auth/drive.readonly",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]
WRITE_SCOPE = "https://www.googleapis.com/auth/drive.file"
FULL_DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"

FORMAT_MIME_TYPES = {
    PublishFormat.NATIVE: GOOGLE_DOCUMENT,
    PublishFormat.MARKDOWN: "text/markdown",
    PublishFormat.PDF: "application/pdf",
    PublishFormat.HTML: "text/html",
}

FORMAT_EXTENSIONS = {
    PublishFormat.NATIVE: "",
    PublishFormat.MARKDOWN: ".md",
    PublishFormat.PDF: ".pdf",
    PublishFormat.HTML: ".html",
}

FILE_FIELDS = "id, name, mimeType, size, modifiedTime, createdTime, parents, webViewLink, owners"


def escape_search_term(term: str) -> str:
    """Escape a user value for a Drive query string literal."""
    return term.replace("\\", "\\\\").replace("'", "\\'")


def get_file_type(mime_type: str) -> str:
    """Map a Drive MIME type to a coarse file category."""
    if mime_type == GOOGLE_FOLDER:
        return "folder"
    if mime_type == GOOGLE_DOCUMENT:
        return "google_doc"
    if mime_type == GOOGLE_SPREADSHEET:
        return "google_sheet"
    if mime_type == GOOGLE_PRESENTATION:
        return "google_slide"

    if mime_type == "application/pdf":
        return "pdf"
    if "wordprocessingml" in mime_type or mime_type == "application/msword":
        return "word"
    if "spreadsheetml" in mime_type or mime_type == "application/vnd.ms-excel":
        return "excel"
    if mime_type == "text/csv":
        return "csv"
    if mime_type == "text/markdown":
        return "markdown"
    if mime_type == "text/html":
        return "html"
    if mime_type == "text/plain":
        return "text"

    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    if mime_type.startswith("image/"):
        return "image"

    if mime_type in (
        "application/zip",
        "application/x-zip-compressed",
        "application/x-rar-compressed",
        "application/vnd.rar",
        "application/x-7z-compressed",
        "application/gzip",
        "application/x-tar",
    ):
        return "archive"

    if mime_type in (
        "application/json",
        "application/javascript",
        "text/javascript",
        "application/xml",
        "text/xml",
    ):
        return "code"

    if mime_type.startswith("text/"):
        return "text"

    return "file"


def is_file_type_supported(mime_type: str) -> bool:
    return (
        mime_type in SUPPORTED_MIME_TYPES
        or mime_type.startswith("text/")
        or mime_type.startswith("video/")
        or mime_type.startswith("audio/")
    )


def _format_from_mime_type(mime_type: str) -> PublishFormat:
    if mime_type == "application/pdf":
        return PublishFormat.PDF
    if mime_type == "text/html":
        return PublishFormat.HTML
    if mime_type == GOOGLE_DOCUMENT:
        return PublishFormat.NATIVE
    return PublishFormat.MARKDOWN


def _read_media(request) -> bytes:
    buffer = io.BytesIO()
    downloader = MediaIoBaseDownload(buffer, request)
    done = False
    while not done:
        _, done = downloader.next_chunk()
    return buffer.getvalue()


class GoogleDriveConfig(ConnectorConfig):
    folder_ids: List[str] = Field(default_factory=list)
    include_shared_drives: bool = False


@ConnectorRegistry.register(ConnectorType.GOOGLE_DRIVE)
class GoogleDriveConnector(OAuthConnector, PublishableConnector):
    """
    Google Drive connector for document import and publishing.

    Drive API calls go through google-api-python-client and run in the
    default executor. Token refresh is owned by the TokenManager, so the
    google-auth credentials carry only the access token.
    """

    connector_type = ConnectorType.GOOGLE_DRIVE
    display_name = "Google Drive"
    description = "Sync documents from Google Drive including Google Docs, Sheets, and Slides"
    icon = "google-drive"

    config_class = GoogleDriveConfig
    api_base_url = "https://www.googleapis.com"
    provider_name = "google"

    write_scopes = [WRITE_SCOPE, FULL_DRIVE_SCOPE]

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[GoogleDriveConfig] = None,
        *,
        service=None,
        **kwargs,
    ):
        super().__init__(credentials, config, **kwargs)
        self._injected_service = service
        self._service = None
        self._service_token: Optional[str] = None

    # -------------------------------------------------------------------------
    # Drive service
    # -------------------------------------------------------------------------

    def _get_service(self, token: str):
        if self._injected_service is not None:
            return self._injected_service

        if self._service is None or self._service_token != token:
            self._service = build(
                "drive",
                "v3",
                credentials=Credentials(token=token),
                cache_discovery=False,
            )
            self._service_token = token
        return self._service

    @staticmethod
    def _translate_error(error: HttpError, resource_type: str, resource_id: Optional[str]) -> ServiceException:
        status = int(error.resp.status)
        reason = getattr(error, "reason", None) or str(error)
        if status == 401:
            return UnauthorizedException("google", f"{status}: {reason}")
        if status == 404:
            return NotFoundException(resource_type, resource_id or "unknown")
        if status == 429:
            return RateLimitException("google rate limit exceeded")
        return ProviderException("google", f"{status}: {reason}", status_code=status)

    async def _execute(
        self,
        make_request: Callable[[Any], Any],
        resource_type: str = "File",
        resource_id: Optional[str] = None,
        runner: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Build a Drive request and execute it off the event loop, with 401 retry."""

        async def call(token: str) -> Any:
            request = make_request(self._get_service(token))
            run = partial(runner, request) if runner else request.execute
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, run)
            except HttpError as e:
                raise self._translate_error(e, resource_type, resource_id) from e

        return await self.token_manager.with_token_refresh(call)

    def _require_token(self) -> None:
        if not self.credentials.access_token:
            raise NotAuthenticatedException()

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def get_authorization_url(self, state: Optional[str] = None) -> Optional[str]:
        """Get Google OAuth authorization URL."""
        if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_REDIRECT_URI:
            return None

        params = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(READ_ONLY_SCOPES + [WRITE_SCOPE]),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
        }
        if state:
            params["state"] = state

        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        """Exchange an authorization code, or validate existing tokens."""
        credentials = credentials or self.credentials
        code = credentials.extra.get("code")

        try:
            if code:
                self._set_credentials(await exchange_google_code(code, client=self.client))
            elif credentials.access_token:
                self._set_credentials(credentials)
            else:
                auth_url = self.get_authorization_url()
                if not auth_url:
                    return AuthResult(success=False, error="Google OAuth client is not configured")
                return AuthResult(
                    success=False,
                    error=f"Please visit this URL to authorize: {auth_url}",
                    auth_url=auth_url,
                )

            about = await self._execute(lambda s: s.about().get(fields="user"), "User", "me")
            user = about.get("user") or {}

            self._authenticated = True
            self.log_info("Google Drive authentication successful", email=user.get("emailAddress"))
            return AuthResult(
                success=True,
                user_id=user.get("emailAddress"),
                user_name=user.get("displayName"),
            )

        except (ServiceException, httpx.HTTPError) as e:
            self._authenticated = False
            self.log_error("Google Drive authentication failed", error=e)
            return AuthResult(success=False, error=describe_error(e))

    async def refresh_tokens(self, refresh_token: str) -> ConnectorCredentials:
        return await refresh_google_token(refresh_token, client=self.client)

    async def test_connection(self) -> TestResult:
        if not self.credentials.access_token:
            return TestResult(success=False, message="Not authenticated")

        try:
            about = await self._execute(lambda s: s.about().get(fields="user,storageQuota"), "User", "me")
        except (ServiceException, httpx.HTTPError) as e:
            self.log_warning("Google Drive connection test failed", error=describe_error(e))
            return TestResult(success=False, message=describe_error(e))

        user = about.get("user") or {}
        quota = about.get("storageQuota") or {}
        return TestResult(
            success=True,
            message=f"Connected as {user.get('displayName') or user.get('emailAddress')}",
            metadata={
                "user": {"name": user.get("displayName"), "email": user.get("emailAddress")},
                "storage": {"used": quota.get("usage"), "total": quota.get("limit")},
                "supports_publish": self.supports_publish(),
                "granted_scopes": self.credentials.scope or [],
            },
        )

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    def _build_query(
        self,
        since=None,
        folder_ids: Optional[List[str]] = None,
        mime_types: Optional[List[str]] = None,
    ) -> str:
        conditions = ["trashed = false"]

        mime_conditions = " or ".join(f"mimeType='{m}'" for m in (mime_types or SUPPORTED_MIME_TYPES))
        conditions.append(f"({mime_conditions})")

        if since:
            timestamp = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
            conditions.append(f"modifiedTime > '{timestamp}'")

        folder_ids = folder_ids or self.config.folder_ids
        if folder_ids:
            folder_conditions = " or ".join(f"'{escape_search_term(folder_id)}' in parents" for folder_id in folder_ids)
            conditions.append(f"({folder_conditions})")

        return " and ".join(conditions)

    async def _list_all_files(self, query: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        files: List[Dict[str, Any]] = []
        page_token = None

        while True:
            page_size = self.config.page_size
            if limit:
                page_size = min(page_size, limit - len(files))

            response = await self._execute(lambda s: s.files().list(
                q=query,
                pageSize=page_size,
                pageToken=page_token,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                includeItemsFromAllDrives=self.config.include_shared_drives,
                supportsAllDrives=self.config.include_shared_drives,
            ))

            files.extend(response.get("files", []))
            page_token = response.get("nextPageToken")

            if not page_token or (limit and len(files) >= limit):
                break

        return files[:limit] if limit else files

    def _to_connector_file(self, file: Dict[str, Any]) -> ConnectorFile:
        mime_type = file.get("mimeType") or "application/octet-stream"
        return ConnectorFile(
            id=file["id"],
            name=file.get("name") or file["id"],
            type=get_file_type(mime_type),
            mime_type=mime_type,
            size=int(file.get("size") or 0),
            modified_at=self._parse_datetime(file.get("modifiedTime")),
            created_at=self._parse_datetime(file.get("createdTime")),
            url=file.get("webViewLink"),
            parent_id=(file.get("parents") or [None])[0],
            metadata={
                "owners": file.get("owners"),
                "is_google_workspace": mime_type.startswith("application/vnd.google-apps."),
                "thumbnail_link": file.get("thumbnailLink"),
            },
        )

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        self._require_token()
        options = options or ListOptions()

        query = self._build_query(
            since=options.since,
            folder_ids=[options.folder_id] if options.folder_id else None,
            mime_types=options.filters.get("mime_types"),
        )
        limit = options.offset + options.limit if options.limit else None
        files = await self._list_all_files(query, limit)
        return [self._to_connector_file(f) for f in files[options.offset:]]

    async def list_files_for_browser(
        self,
        folder_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List every file type in one folder for the import browser.

        Unlike list_files() this does not filter by supported MIME type, so
        folders, archives and other items show up. Folders sort first.
        """
        self._require_token()

        conditions = ["trashed = false"]
        if folder_id and folder_id != "root":
            conditions.append(f"'{escape_search_term(folder_id)}' in parents")
        elif not search:
            conditions.append("'root' in parents")
        if search:
            conditions.append(f"name contains '{escape_search_term(search)}'")

        response = await self._execute(lambda s: s.files().list(
            q=" and ".join(conditions),
            pageSize=min(limit or 100, 100),
            pageToken=page_token,
            fields=f"nextPageToken, files({FILE_FIELDS}, thumbnailLink)",
            includeItemsFromAllDrives=self.config.include_shared_drives,
            supportsAllDrives=self.config.include_shared_drives,
            orderBy="folder,name",
        ))

        return {
            "files": [self._to_connector_file(f) for f in response.get("files", [])],
            "next_page_token": response.get("nextPageToken"),
        }

    # -------------------------------------------------------------------------
    # Sync and download
    # -------------------------------------------------------------------------

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        self._require_token()
        options = options or SyncOptions()

        query = self._build_query(
            since=None if options.full_sync else options.since,
            folder_ids=options.paths,
            mime_types=options.file_types,
        )
        files = [self._to_connector_file(f) for f in await self._list_all_files(query, options.limit)]
        self.log_info("Google Drive files found for sync", count=len(files), connector_id=self.connector_id)

        result = SyncResult(metadata={"total_files": len(files)})
        await self._run_in_batches(result, files, self._sync_file, lambda f: (f.id, f.name))
        return self._build_result(result)

    async def _sync_file(self, file: ConnectorFile) -> Optional[StoreOutcome]:
        if file.mime_type == GOOGLE_FOLDER:
            return None

        if file.size > self.config.max_file_size_bytes:
            raise ValidationException(f"File too large: {file.size} bytes")

        content = await self.download_file(file.id)
        return await self._store(
            external_id=file.id,
            title=content.title,
            content=self._as_text(content.content, content.mime_type),
            file_type=get_file_type(content.metadata.get("original_mime_type") or content.mime_type),
            file_size=content.size,
            external_url=file.url,
            source_metadata={
                "mime_type": content.mime_type,
                "modified_time": content.metadata.get("modified_time"),
                "owners": content.metadata.get("owners"),
            },
        )

    async def download_file(self, file_id: str) -> FileContent:
        self._require_token()

        file = await self._execute(
            lambda s: s.files().get(
                fileId=file_id,
                fields="id, name, mimeType, size, modifiedTime, createdTime, webViewLink, owners",
                supportsAllDrives=True,
            ),
            resource_id=file_id,
        )
        mime_type = file.get("mimeType") or "application/octet-stream"

        if mime_type in EXPORT_FORMATS:
            export_mime_type = EXPORT_FORMATS[mime_type]
            data = await self._execute(
                lambda s: s.files().export(fileId=file_id, mimeType=export_mime_type),
                resource_id=file_id,
            )
            text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
            if mime_type == GOOGLE_DOCUMENT:
                content = html_to_markdown(text)
                export_mime_type = "text/markdown"
            else:
                content = text
        else:
            export_mime_type = mime_type
            content = await self._execute(
                lambda s: s.files().get_media(fileId=file_id, supportsAllDrives=True),
                resource_id=file_id,
                runner=_read_media,
            )

        return FileContent(
            id=file["id"],
            title=file.get("name") or file_id,
            content=content,
            mime_type=export_mime_type,
            size=len(content),
            metadata={
                "web_view_link": file.get("webViewLink"),
                "modified_time": file.get("modifiedTime"),
                "created_time": file.get("createdTime"),
                "owners": file.get("owners"),
                "original_mime_type": mime_type,
            },
        )

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def list_folders(self, request: FolderListRequest) -> FolderListResponse:
        self._require_token()

        conditions = [f"mimeType='{GOOGLE_FOLDER}'", "trashed=false"]
        if request.parent_id:
            conditions.append(f"'{escape_search_term(request.parent_id)}' in parents")
        if request.search:
            conditions.append(f"name contains '{escape_search_term(request.search)}'")

        response = await self._execute(lambda s: s.files().list(
            q=" and ".join(conditions),
            pageSize=request.page_size or 50,
            pageToken=request.page_token,
            fields="nextPageToken, files(id, name, parents, webViewLink, modifiedTime, mimeType)",
            includeItemsFromAllDrives=self.config.include_shared_drives,
            supportsAllDrives=self.config.include_shared_drives,
            orderBy="name",
        ))

        # Drive has no cheap way to resolve full paths or child counts
        folders = [
            FolderInfo(
                id=f["id"],
                name=f["name"],
                path=f["name"],
                has_children=True,
                parent_id=(f.get("parents") or [None])[0],
                web_url=f.get("webViewLink"),
                modified_at=self._parse_datetime(f.get("modifiedTime")),
            )
            for f in response.get("files", [])
        ]
        next_page_token = response.get("nextPageToken")
        return FolderListResponse(folders=folders, next_page_token=next_page_token, has_more=bool(next_page_token))

    async def create_folder(self, request: CreateFolderRequest) -> CreateFolderResponse:
        self._require_token()
        self._ensure_publish_permission()

        body: Dict[str, Any] = {"name": request.name, "mimeType": GOOGLE_FOLDER}
        if request.parent_id:
            body["parents"] = [request.parent_id]

        file = await self._execute(lambda s: s.files().create(
            body=body,
            fields="id, name, parents, webViewLink, modifiedTime",
        ), "Folder")

        folder = FolderInfo(
            id=file["id"],
            name=file["name"],
            path=file["name"],
            has_children=False,
            parent_id=(file.get("parents") or [None])[0],
            web_url=file.get("webViewLink"),
            modified_at=self._parse_datetime(file.get("modifiedTime")),
        )
        self.log_info("Created Google Drive folder", folder_id=folder.id, name=folder.name)
        return CreateFolderResponse(folder=folder)

    async def publish_document(self, options: ConnectorPublishOptions) -> ConnectorPublishResult:
        """
        Publish a document to Google Drive.

        native converts uploaded HTML into a Google Doc and keeps the bare
        title. Other formats upload as files with their extension appended.
        """
        self._require_token()
        self._ensure_publish_permission()

        fmt = options.format
        body: Dict[str, Any] = {
            "name": options.title if fmt == PublishFormat.NATIVE else f"{options.title}{FORMAT_EXTENSIONS[fmt]}",
        }
        if fmt == PublishFormat.NATIVE:
            body["mimeType"] = FORMAT_MIME_TYPES[PublishFormat.NATIVE]
        if options.folder_id:
            body["parents"] = [options.folder_id]
        if options.metadata:
            body["properties"] = {key: str(value) for key, value in options.metadata.items()}

        upload_mime_type = "text/html" if fmt == PublishFormat.NATIVE else FORMAT_MIME_TYPES[fmt]
        data = content_to_bytes(options.content, fmt)

        file = await self._execute(lambda s: s.files().create(
            body=body,
            media_body=MediaIoBaseUpload(io.BytesIO(data), mimetype=upload_mime_type, resumable=False),
            fields="id, name, webViewLink, webContentLink, parents",
        ))

        parent = (file.get("parents") or [None])[0]
        self.log_info("Published document to Google Drive", external_id=file["id"], name=file.get("name"))
        return ConnectorPublishResult(
            external_id=file["id"],
            external_url=file.get("webViewLink") or f"https://drive.google.com/file/d/{file['id']}/view",
            external_path=f"/{parent}/{file.get('name')}" if parent else f"/{file.get('name')}",
        )

    async def update_document(self, options: ConnectorUpdateOptions) -> None:
        self._require_token()
        self._ensure_publish_permission()

        external_id = options.external_id
        current = await self._execute(
            lambda s: s.files().get(fileId=external_id, fields="id, name, mimeType"),
            resource_id=external_id,
        )

        body: Dict[str, Any] = {}
        if options.title:
            body["name"] = options.title

        if options.content is not None:
            mime_type = current.get("mimeType") or "text/plain"
            upload_mime_type = "text/html" if mime_type == GOOGLE_DOCUMENT else mime_type
            data = content_to_bytes(options.content, _format_from_mime_type(mime_type))
            await self._execute(lambda s: s.files().update(
                fileId=external_id,
                body=body or None,
                media_body=MediaIoBaseUpload(io.BytesIO(data), mimetype=upload_mime_type, resumable=False),
            ), resource_id=external_id)
        elif body:
            await self._execute(
                lambda s: s.files().update(fileId=external_id, body=body),
                resource_id=external_id,
            )

        self.log_info("Updated Google Drive document", external_id=external_id)

    async def delete_document(self, external_id: str) -> None:
        """Move the file to the trash."""
        self._require_token()
        self._ensure_publish_permission()

        await self._execute(
            lambda s: s.files().update(fileId=external_id, body={"trashed": True}),
            resource_id=external_id,
        )
        self.log_info("Trashed Google Drive document", external_id=external_id)

    async def permanently_delete_document(self, external_id: str) -> None:
        """Delete the file for good; this cannot be undone."""
        self._require_token()
        self._ensure_publish_permission()

        await self._execute(lambda s: s.files().delete(fileId=external_id), resource_id=external_id)
        self.log_info("Permanently deleted Google Drive document", external_id=external_id)

    async def get_document_info(self, external_id: str) -> ExternalDocumentInfo:
        self._require_token()

        try:
            file = await self._execute(
                lambda s: s.files().get(
                    fileId=external_id,
                    fields="id, name, modifiedTime, webViewLink, version, trashed",
                ),
                resource_id=external_id,
            )
        except NotFoundException:
            return ExternalDocumentInfo(exists=False)

        modified_at = self._parse_datetime(file.get("modifiedTime"))
        if file.get("trashed"):
            return ExternalDocumentInfo(exists=False, title=file.get("name"), modified_at=modified_at)

        return ExternalDocumentInfo(
            exists=True,
            title=file.get("name"),
            modified_at=modified_at,
            web_url=file.get("webViewLink") or f"https://drive.google.com/file/d/{file['id']}/view",
            version=str(file["version"]) if file.get("version") is not None else None,
        )

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """Get configuration schema."""
        schema = super().get_config_schema()
        schema["properties"].update({
            "folder_ids": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Google Drive folder IDs to sync",
            },
            "include_shared_drives": {
                "type": "boolean",
                "default": False,
                "description": "Include files from shared drives",
            },
        })
        return schema

    @classmethod
    def get_credentials_schema(cls) -> Dict[str, Any]:
        """Get credentials schema."""
        return {
            "type": "object",
            "required": ["access_token"],
            "properties": {
                "access_token": {
                    "type": "string",
                    "description": "OAuth access token",
                },
                "refresh_token": {
                    "type": "string",
                    "description": "OAuth refresh token",
                },
            },
        }
