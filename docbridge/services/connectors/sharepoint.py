"""
DocBridge - SharePoint/OneDrive Connector
=========================================

Connector for importing from and publishing to Microsoft SharePoint
document libraries and OneDrive, using Microsoft Graph.

Supports:
- SharePoint sites and specific document libraries
- Personal OneDrive and OneDrive for Business (OneDrive mode)
- Paged listing with @odata.nextLink and incremental filters
- Simple uploads and chunked upload sessions for large files
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx
import structlog

from docbridge.core.config import settings
from docbridge.services.base import (
    NotAuthenticatedException,
    NotFoundException,
    ProviderException,
    ServiceException,
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
    raise_for_status,
)
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
from docbridge.services.connectors.token_manager import exchange_microsoft_code, refresh_microsoft_token

logger = structlog.get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"

WORD_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
EXCEL_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
POWERPOINT_MIME_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

FORMAT_EXTENSIONS = {
    PublishFormat.NATIVE: ".docx",
    PublishFormat.MARKDOWN: ".md",
    PublishFormat.PDF: ".pdf",
    PublishFormat.HTML: ".html",
}

FORMAT_MIME_TYPES = {
    PublishFormat.NATIVE: WORD_MIME_TYPE,
    PublishFormat.MARKDOWN: "text/markdown",
    PublishFormat.PDF: "application/pdf",
    PublishFormat.HTML: "text/html",
}

SUPPORTED_MIME_TYPES = [
    WORD_MIME_TYPE,
    EXCEL_MIME_TYPE,
    POWERPOINT_MIME_TYPE,
    "application/pdf",
    "text/markdown",
    "text/html",
    "text/plain",
    "image/jpeg",
    "image/png",
    "video/mp4",
    "audio/mpeg",
]

WRITE_SCOPES = ["Files.ReadWrite", "Files.ReadWrite.All", "Sites.ReadWrite.All"]

AUTH_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "Files.ReadWrite.All",
    "Sites.ReadWrite.All",
    "User.Read",
]

ITEM_SELECT = "id,name,size,file,folder,parentReference,webUrl,createdDateTime,lastModifiedDateTime"
FOLDER_SELECT = "id,name,folder,parentReference,webUrl,lastModifiedDateTime"

# Upload session chunks must be multiples of 320 KiB
UPLOAD_CHUNK_SIZE = 10 * 320 * 1024


def get_file_type(item: Dict[str, Any]) -> str:
    if item.get("folder") is not None:
        return "folder"

    mime_type = (item.get("file") or {}).get("mimeType") or ""
    if mime_type == WORD_MIME_TYPE:
        return "word"
    if mime_type == EXCEL_MIME_TYPE:
        return "excel"
    if mime_type == POWERPOINT_MIME_TYPE:
        return "powerpoint"
    if mime_type == "application/pdf":
        return "pdf"
    for prefix in ("image", "video", "audio", "text"):
        if mime_type.startswith(f"{prefix}/"):
            return prefix
    return "file"


class SharePointConfig(ConnectorConfig):
    site_id: Optional[str] = None
    drive_id: Optional[str] = None
    use_one_drive: bool = False
    recursive: bool = False


class OneDriveConfig(SharePointConfig):
    use_one_drive: bool = True


@ConnectorRegistry.register(ConnectorType.SHAREPOINT)
class SharePointConnector(OAuthConnector, PublishableConnector):
    """
    Connector for SharePoint document libraries (and OneDrive in OneDrive mode).

    Uses Microsoft Graph for listing, download and publishing.
    """

    connector_type = ConnectorType.SHAREPOINT
    display_name = "SharePoint"
    description = "Sync and publish documents to Microsoft SharePoint document libraries"
    icon = "sharepoint"

    config_class = SharePointConfig
    api_base_url = GRAPH_BASE_URL
    provider_name = "microsoft"

    write_scopes = WRITE_SCOPES

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[SharePointConfig] = None,
        **kwargs,
    ):
        super().__init__(credentials, config, **kwargs)
        if self.config.use_one_drive:
            self.connector_type = ConnectorType.ONEDRIVE
            self.display_name = "OneDrive"
            self.description = "Sync and publish documents to Microsoft OneDrive personal or business"

    def supports_publish(self) -> bool:
        """Graph scopes may come back fully qualified, so match by substring."""
        granted = self.credentials.scope or []
        return any(
            write_scope.lower() in scope.lower()
            for scope in granted
            for write_scope in self.write_scopes
        )

    @property
    def drive_path(self) -> str:
        if self.config.use_one_drive:
            return "/me/drive"
        if self.config.site_id and self.config.drive_id:
            return f"/sites/{self.config.site_id}/drives/{self.config.drive_id}"
        if self.config.site_id:
            return f"/sites/{self.config.site_id}/drive"
        if self.config.drive_id:
            return f"/drives/{self.config.drive_id}"
        return "/me/drive"

    def _require_token(self) -> None:
        if not self.credentials.access_token:
            raise NotAuthenticatedException()

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    @property
    def tenant_id(self) -> str:
        return self.credentials.extra.get("tenant_id") or settings.MICROSOFT_TENANT_ID

    def get_authorization_url(self, state: Optional[str] = None) -> Optional[str]:
        """Get Microsoft OAuth authorization URL."""
        if not settings.MICROSOFT_CLIENT_ID:
            return None

        params = {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": settings.MICROSOFT_REDIRECT_URI,
            "scope": " ".join(AUTH_SCOPES),
            "response_mode": "query",
            "prompt": "consent",
        }
        if state:
            params["state"] = state

        return f"{MICROSOFT_AUTH_URL.format(tenant=self.tenant_id)}?{urlencode(params)}"

    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        credentials = credentials or self.credentials
        code = credentials.extra.get("code")

        try:
            if code:
                tokens = await exchange_microsoft_code(
                    code,
                    tenant_id=credentials.extra.get("tenant_id"),
                    client=self.client,
                )
                self._set_credentials(tokens)
            elif credentials.access_token:
                self._set_credentials(credentials)
            else:
                auth_url = self.get_authorization_url()
                if not auth_url:
                    return AuthResult(success=False, error="Microsoft OAuth client is not configured")
                return AuthResult(
                    success=False,
                    error=f"Please visit this URL to authorize: {auth_url}",
                    auth_url=auth_url,
                )

            user = await self._get_json("/me", resource_type="User")
            self._authenticated = True
            self.log_info("Authenticated with Microsoft", user=user.get("displayName"))
            return AuthResult(
                success=True,
                user_id=user.get("mail") or user.get("userPrincipalName"),
                user_name=user.get("displayName"),
            )

        except (ServiceException, httpx.HTTPError) as e:
            self._authenticated = False
            self.log_error("Microsoft authentication failed", error=e)
            return AuthResult(success=False, error=describe_error(e))

    async def refresh_tokens(self, refresh_token: str) -> ConnectorCredentials:
        return await refresh_microsoft_token(refresh_token, tenant_id=self.tenant_id, client=self.client)

    async def test_connection(self) -> TestResult:
        if not self.credentials.access_token:
            return TestResult(success=False, message="Not authenticated")

        try:
            # Sequential so a token refresh happens at most once
            user = await self._get_json("/me", resource_type="User")
            drive = await self._get_json(self.drive_path, resource_type="Drive")
        except (ServiceException, httpx.HTTPError) as e:
            message = describe_error(e)
            self.log_warning("Microsoft connection test failed", error=message)
            return TestResult(success=False, message=message)

        return TestResult(
            success=True,
            message=f"Connected as {user.get('displayName')}",
            metadata={
                "user": {
                    "name": user.get("displayName"),
                    "email": user.get("mail") or user.get("userPrincipalName"),
                },
                "drive": {
                    "id": drive.get("id"),
                    "name": drive.get("name"),
                    "type": drive.get("driveType"),
                    "quota": drive.get("quota"),
                },
                "supports_publish": self.supports_publish(),
            },
        )

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    def _children_path(self, folder_id: Optional[str]) -> str:
        if folder_id:
            return f"{self.drive_path}/items/{folder_id}/children"
        return f"{self.drive_path}/root/children"

    async def _list_items(
        self,
        folder_id: Optional[str] = None,
        since=None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Page through a folder's children, descending into subfolders when recursive."""
        items: List[Dict[str, Any]] = []
        pending = [folder_id]

        while pending:
            params = {"$top": self.config.page_size, "$select": ITEM_SELECT}
            if since:
                params["$filter"] = f"lastModifiedDateTime gt {since.isoformat()}"

            url: Optional[str] = self._children_path(pending.pop(0))
            while url:
                data = await self._get_json(url, params=params, resource_type="Folder")
                params = None  # nextLink already carries the query

                for item in data.get("value", []):
                    items.append(item)
                    if self.config.recursive and item.get("folder") is not None:
                        pending.append(item["id"])
                    if limit and len(items) >= limit:
                        return items[:limit]

                url = data.get("@odata.nextLink")

        return items

    def _to_connector_file(self, item: Dict[str, Any]) -> ConnectorFile:
        parent = item.get("parentReference") or {}
        return ConnectorFile(
            id=item["id"],
            name=item.get("name") or item["id"],
            type=get_file_type(item),
            mime_type=(item.get("file") or {}).get("mimeType") or "application/octet-stream",
            size=item.get("size") or 0,
            modified_at=self._parse_datetime(item.get("lastModifiedDateTime")),
            created_at=self._parse_datetime(item.get("createdDateTime")),
            url=item.get("webUrl"),
            path=parent.get("path"),
            parent_id=parent.get("id"),
            metadata={
                "drive_id": parent.get("driveId"),
                "is_folder": item.get("folder") is not None,
            },
        )

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        """List files (folders excluded)."""
        self._require_token()
        options = options or ListOptions()

        items = await self._list_items(folder_id=options.folder_id, since=options.since)
        files = [self._to_connector_file(item) for item in items if item.get("folder") is None]
        end = options.offset + options.limit if options.limit else None
        return files[options.offset:end]

    # -------------------------------------------------------------------------
    # Sync and download
    # -------------------------------------------------------------------------

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        self._require_token()
        options = options or SyncOptions()
        since = None if options.full_sync else options.since

        folder_ids = options.paths or [None]
        items: List[Dict[str, Any]] = []
        for folder_id in folder_ids:
            items.extend(await self._list_items(folder_id=folder_id, since=since, limit=options.limit))
        if options.limit:
            items = items[:options.limit]

        files = [self._to_connector_file(item) for item in items]
        if options.file_types:
            files = [
                f for f in files
                if f.metadata["is_folder"] or f.mime_type in options.file_types or f.type in options.file_types
            ]
        self.log_info("SharePoint items found for sync", count=len(files), connector_id=self.connector_id)

        result = SyncResult(metadata={"total_files": len(files)})
        await self._run_in_batches(result, files, self._sync_file, lambda f: (f.id, f.name))
        return self._build_result(result)

    async def _sync_file(self, file: ConnectorFile) -> Optional[StoreOutcome]:
        if file.metadata.get("is_folder"):
            return None

        if file.size > self.config.max_file_size_bytes:
            raise ValidationException(f"File too large: {file.size} bytes")

        content = await self.download_file(file.id)
        return await self._store(
            external_id=file.id,
            title=content.title,
            content=self._as_text(content.content, content.mime_type),
            file_type=file.type,
            file_size=content.size,
            external_url=file.url,
            source_metadata={
                "mime_type": content.mime_type,
                "modified_time": content.metadata.get("modified_time"),
                "parent_path": content.metadata.get("parent_path"),
            },
        )

    async def download_file(self, file_id: str) -> FileContent:
        self._require_token()

        item = await self._get_json(
            f"{self.drive_path}/items/{file_id}",
            resource_type="File",
            resource_id=file_id,
        )
        if not item.get("file"):
            raise ValidationException("Item is not a file")

        download_url = item.get("@microsoft.graph.downloadUrl")
        if not download_url:
            raise ProviderException(self.provider_name, "Download URL not available")

        # Pre-authenticated URL; no bearer token
        response = await self.client.get(download_url)
        raise_for_status(response, self.provider_name, "File", file_id)
        data = response.content

        return FileContent(
            id=item["id"],
            title=item.get("name") or file_id,
            content=data,
            mime_type=item["file"].get("mimeType") or "application/octet-stream",
            size=item.get("size") or len(data),
            metadata={
                "web_url": item.get("webUrl"),
                "modified_time": item.get("lastModifiedDateTime"),
                "created_time": item.get("createdDateTime"),
                "parent_path": (item.get("parentReference") or {}).get("path"),
            },
        )

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def _folder_info(self, item: Dict[str, Any]) -> FolderInfo:
        parent = item.get("parentReference") or {}
        path = f"{parent['path']}/{item['name']}" if parent.get("path") else f"/{item['name']}"
        return FolderInfo(
            id=item["id"],
            name=item["name"],
            path=path,
            has_children=((item.get("folder") or {}).get("childCount") or 0) > 0,
            parent_id=parent.get("id"),
            web_url=item.get("webUrl"),
            modified_at=self._parse_datetime(item.get("lastModifiedDateTime")),
        )

    @staticmethod
    def _publish_result(item: Dict[str, Any]) -> ConnectorPublishResult:
        parent_path = (item.get("parentReference") or {}).get("path")
        return ConnectorPublishResult(
            external_id=item["id"],
            external_url=item.get("webUrl") or "",
            external_path=f"{parent_path}/{item['name']}" if parent_path else f"/{item['name']}",
        )

    async def list_folders(self, request: FolderListRequest) -> FolderListResponse:
        self._require_token()

        if request.page_token:
            # page_token is the full @odata.nextLink
            url, params = request.page_token, None
        else:
            params = {
                "$filter": "folder ne null",
                "$top": request.page_size or self.config.page_size,
                "$select": FOLDER_SELECT,
            }
            if request.search:
                search = request.search.replace("'", "''")
                url = f"{self.drive_path}/root/search(q='{search}')"
            else:
                url = self._children_path(request.parent_id)
                params["$orderby"] = "name"

        data = await self._get_json(url, params=params, resource_type="Folder", resource_id=request.parent_id)
        folders = [self._folder_info(item) for item in data.get("value", []) if item.get("folder") is not None]
        next_link = data.get("@odata.nextLink")
        return FolderListResponse(folders=folders, next_page_token=next_link, has_more=bool(next_link))

    async def create_folder(self, request: CreateFolderRequest) -> CreateFolderResponse:
        self._require_token()
        self._ensure_publish_permission()

        response = await self._request(
            "POST",
            self._children_path(request.parent_id),
            json={
                "name": request.name,
                "folder": {},
                "@microsoft.graph.conflictBehavior": "rename",
            },
            resource_type="Folder",
            resource_id=request.parent_id,
        )
        folder = self._folder_info(response.json())
        self.log_info("Created SharePoint folder", folder_id=folder.id, name=folder.name)
        return CreateFolderResponse(folder=folder)

    def _item_path(self, folder_id: Optional[str], file_name: str, action: str) -> str:
        name = quote(file_name)
        if folder_id:
            return f"{self.drive_path}/items/{folder_id}:/{name}:/{action}"
        return f"{self.drive_path}/root:/{name}:/{action}"

    async def publish_document(self, options: ConnectorPublishOptions) -> ConnectorPublishResult:
        """
        Upload a document.

        Below the simple-upload limit a single PUT is used; larger payloads
        go through a Graph upload session in 320 KiB-aligned chunks.
        """
        self._require_token()
        self._ensure_publish_permission()

        extension = FORMAT_EXTENSIONS[options.format]
        file_name = options.title if options.title.endswith(extension) else f"{options.title}{extension}"
        data = content_to_bytes(options.content, options.format)

        if len(data) < settings.SHAREPOINT_SIMPLE_UPLOAD_LIMIT_MB * 1024 * 1024:
            response = await self._request(
                "PUT",
                self._item_path(options.folder_id, file_name, "content"),
                content=data,
                headers={"Content-Type": FORMAT_MIME_TYPES[options.format]},
                resource_type="Folder",
                resource_id=options.folder_id,
            )
            item = response.json()
        else:
            item = await self._upload_large_file(options.folder_id, file_name, data)

        self.log_info("Published document to SharePoint", external_id=item["id"], name=item.get("name"))
        return self._publish_result(item)

    async def _upload_large_file(self, folder_id: Optional[str], file_name: str, data: bytes) -> Dict[str, Any]:
        session = await self._request(
            "POST",
            self._item_path(folder_id, file_name, "createUploadSession"),
            json={"item": {"@microsoft.graph.conflictBehavior": "replace", "name": file_name}},
            resource_type="Folder",
            resource_id=folder_id,
        )
        upload_url = session.json()["uploadUrl"]

        total = len(data)
        offset = 0
        item: Optional[Dict[str, Any]] = None

        while offset < total:
            end = min(offset + UPLOAD_CHUNK_SIZE, total)
            # The upload URL is pre-authenticated
            response = await self.client.put(
                upload_url,
                content=data[offset:end],
                headers={
                    "Content-Length": str(end - offset),
                    "Content-Range": f"bytes {offset}-{end - 1}/{total}",
                },
            )
            if response.status_code in (200, 201):
                item = response.json()
            elif response.status_code != 202:
                raise_for_status(response, self.provider_name, "Upload session")

            offset = end
            self.log_debug("Uploaded chunk", uploaded=offset, total=total)

        if item is None:
            raise ProviderException(self.provider_name, "Upload completed but no item was returned")
        return item

    async def update_document(self, options: ConnectorUpdateOptions) -> None:
        self._require_token()
        self._ensure_publish_permission()

        item_path = f"{self.drive_path}/items/{options.external_id}"
        if options.content is not None:
            await self._request(
                "PUT",
                f"{item_path}/content",
                content=content_to_bytes(options.content),
                headers={"Content-Type": "application/octet-stream"},
                resource_type="File",
                resource_id=options.external_id,
            )
        if options.title:
            await self._request(
                "PATCH",
                item_path,
                json={"name": options.title},
                resource_type="File",
                resource_id=options.external_id,
            )

        self.log_info("Updated SharePoint document", external_id=options.external_id)

    async def delete_document(self, external_id: str) -> None:
        """Delete the item; Graph moves it to the site recycle bin."""
        self._require_token()
        self._ensure_publish_permission()

        await self._request(
            "DELETE",
            f"{self.drive_path}/items/{external_id}",
            resource_type="File",
            resource_id=external_id,
        )
        self.log_info("Deleted SharePoint document", external_id=external_id)

    async def get_document_info(self, external_id: str) -> ExternalDocumentInfo:
        self._require_token()

        try:
            item = await self._get_json(
                f"{self.drive_path}/items/{external_id}",
                params={"$select": "id,name,lastModifiedDateTime,webUrl,eTag"},
                resource_type="File",
                resource_id=external_id,
            )
        except NotFoundException:
            return ExternalDocumentInfo(exists=False)

        return ExternalDocumentInfo(
            exists=True,
            title=item.get("name"),
            modified_at=self._parse_datetime(item.get("lastModifiedDateTime")),
            web_url=item.get("webUrl"),
            version=item.get("eTag") or item.get("@odata.etag"),
        )

    # -------------------------------------------------------------------------
    # Sites and drives
    # -------------------------------------------------------------------------

    async def list_sites(self, search: str = "*") -> List[Dict[str, Any]]:
        """List SharePoint sites visible to the user."""
        data = await self._get_json("/sites", params={"search": search}, resource_type="Site")
        return [
            {"id": site["id"], "name": site.get("displayName") or site.get("name"), "url": site.get("webUrl")}
            for site in data.get("value", [])
        ]

    async def list_drives(self, site_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List document libraries of a site, or the user's drives."""
        path = f"/sites/{site_id}/drives" if site_id else "/me/drives"
        data = await self._get_json(path, resource_type="Drive", resource_id=site_id)
        return [
            {"id": drive["id"], "name": drive.get("name"), "type": drive.get("driveType")}
            for drive in data.get("value", [])
        ]

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        schema = super().get_config_schema()
        schema["properties"].update({
            "site_id": {"type": "string", "description": "SharePoint site ID"},
            "drive_id": {"type": "string", "description": "Document library (drive) ID"},
            "use_one_drive": {
                "type": "boolean",
                "default": False,
                "description": "Use the signed-in user's OneDrive",
            },
            "recursive": {
                "type": "boolean",
                "default": False,
                "description": "Descend into subfolders when listing",
            },
        })
        return schema

    @classmethod
    def get_credentials_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["access_token"],
            "properties": {
                "access_token": {"type": "string", "description": "Microsoft Graph access token"},
                "refresh_token": {"type": "string", "description": "OAuth refresh token"},
                "tenant_id": {
                    "type": "string",
                    "default": "common",
                    "description": "Azure AD tenant ID (stored in extra)",
                },
            },
        }


@ConnectorRegistry.register(ConnectorType.ONEDRIVE)
class OneDriveConnector(SharePointConnector):
    """SharePoint connector pinned to the signed-in user's OneDrive."""

    connector_type = ConnectorType.ONEDRIVE
    display_name = "OneDrive"
    description = "Sync and publish documents to Microsoft OneDrive personal or business"
    icon = "cloud"

    config_class = OneDriveConfig
