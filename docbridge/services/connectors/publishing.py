"""
DocBridge - Publishing Support
==============================

Types and mixin for connectors that can write documents back to the
external system (Google Drive, SharePoint/OneDrive).

Every write operation re-checks supports_publish() itself; a caller-side
check is never enough.
"""

import base64
import binascii
from abc import abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from docbridge.services.base import PermissionException


class PublishFormat(str, Enum):
    """Output format for published documents."""
    NATIVE = "native"
    MARKDOWN = "markdown"
    PDF = "pdf"
    HTML = "html"


class FolderInfo(BaseModel):
    id: str
    name: str
    path: str
    has_children: bool = False
    parent_id: Optional[str] = None
    web_url: Optional[str] = None
    modified_at: Optional[datetime] = None


class FolderListRequest(BaseModel):
    parent_id: Optional[str] = None
    search: Optional[str] = None
    page_token: Optional[str] = None
    page_size: Optional[int] = None


class FolderListResponse(BaseModel):
    folders: List[FolderInfo] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    has_more: bool = False


class CreateFolderRequest(BaseModel):
    name: str
    parent_id: Optional[str] = None


class CreateFolderResponse(BaseModel):
    folder: FolderInfo


class ConnectorPublishOptions(BaseModel):
    """
    Document to publish.

    Text formats take a UTF-8 string. PDF takes bytes, or a string that is
    base64-decoded when it validates as base64 and used as-is otherwise.
    """
    title: str
    content: Union[bytes, str]
    format: PublishFormat = PublishFormat.MARKDOWN
    folder_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConnectorPublishResult(BaseModel):
    external_id: str
    external_url: str
    external_path: Optional[str] = None


class ConnectorUpdateOptions(BaseModel):
    external_id: str
    title: Optional[str] = None
    content: Optional[Union[bytes, str]] = None


class ExternalDocumentInfo(BaseModel):
    exists: bool
    title: Optional[str] = None
    modified_at: Optional[datetime] = None
    web_url: Optional[str] = None
    version: Optional[str] = None


def content_to_bytes(content: Union[bytes, str], format: Optional[PublishFormat] = None) -> bytes:
    """Normalize publish content to the bytes that get uploaded."""
    if isinstance(content, bytes):
        return content
    if format == PublishFormat.PDF:
        try:
            return base64.b64decode(content.strip(), validate=True)
        except (binascii.Error, ValueError):
            return content.encode("utf-8")
    return content.encode("utf-8")


class PublishableConnector:
    """
    Mixin for connectors with write support.

    Subclasses define write_scopes and implement the publish operations.
    """

    write_scopes: List[str] = []

    def supports_publish(self) -> bool:
        """True iff a write scope was granted."""
        granted = (self.credentials.scope or []) if self.credentials else []
        return any(scope in self.write_scopes for scope in granted)

    def _ensure_publish_permission(self) -> None:
        if not self.supports_publish():
            raise PermissionException(
                f"{self.display_name} connector does not have write permissions. "
                "Please re-authorize with publish access.",
                details={"required_scopes": list(self.write_scopes)},
            )

    @abstractmethod
    async def list_folders(self, request: FolderListRequest) -> FolderListResponse:
        """List folders in the external system."""

    @abstractmethod
    async def create_folder(self, request: CreateFolderRequest) -> CreateFolderResponse:
        """Create a folder."""

    @abstractmethod
    async def publish_document(self, options: ConnectorPublishOptions) -> ConnectorPublishResult:
        """Publish a new document."""

    @abstractmethod
    async def update_document(self, options: ConnectorUpdateOptions) -> None:
        """Replace content and/or title of a published document."""

    @abstractmethod
    async def delete_document(self, external_id: str) -> None:
        """Trash the document where the vendor supports it."""

    @abstractmethod
    async def get_document_info(self, external_id: str) -> ExternalDocumentInfo:
        """Look up a published document; exists=False when gone."""
