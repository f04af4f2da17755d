"""
DocBridge - File Upload Connector
=================================

Direct file uploads from users, validated and queued in memory, then
written to blob storage on sync.

Supports PDF, Word, text, markdown, images, JSON, CSV and Excel files.
"""

import mimetypes
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from docbridge.core.config import settings
from docbridge.services.base import NotFoundException, ServiceException
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
)
from docbridge.services.connectors.registry import ConnectorRegistry
from docbridge.services.connectors.storage import ImportedDocumentStore, StoreOutcome

logger = structlog.get_logger(__name__)

# Office and markdown types missing from some platform mime tables
mimetypes.add_type("text/markdown", ".md")
mimetypes.add_type("application/vnd.openxmlformats-officedocument.wordprocessingml.document", ".docx")
mimetypes.add_type("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", ".xlsx")
mimetypes.add_type("image/webp", ".webp")

SUPPORTED_MIME_TYPES = [
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
    "text/plain",
    "text/markdown",
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "application/json",
    "text/csv",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
]

FILE_CATEGORIES = {
    "documents": [
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
        "text/plain",
        "text/markdown",
    ],
    "images": ["image/png", "image/jpeg", "image/gif", "image/webp"],
    "spreadsheets": [
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/csv",
    ],
    "data": ["application/json", "text/csv"],
}


def get_file_category(mime_type: str) -> str:
    for category, types in FILE_CATEGORIES.items():
        if mime_type in types:
            return category
    return "other"


def is_supported(mime_type: str) -> bool:
    return mime_type in SUPPORTED_MIME_TYPES


class FileUploadConfig(ConnectorConfig):
    batch_id: Optional[str] = None
    bucket: str = Field(default_factory=lambda: settings.STORAGE_BUCKET)


class QueuedFile(BaseModel):
    """One buffer waiting in the upload queue."""
    id: str
    name: str
    content: bytes
    mime_type: str
    size: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AddFileResult(BaseModel):
    success: bool
    file_id: Optional[str] = None
    error: Optional[str] = None


@ConnectorRegistry.register(ConnectorType.FILE_UPLOAD)
class FileUploadConnector(Connector):
    """
    Queue of uploaded buffers flushed to blob storage by sync().

    Authentication happens at a higher layer, so authenticate() always
    succeeds. A buffer leaves the queue only after its upload succeeded.
    """

    connector_type = ConnectorType.FILE_UPLOAD
    display_name = "File Upload"
    description = "Direct file upload connector supporting PDFs, documents, images, and more"
    icon = "upload"

    requires_oauth = False
    config_class = FileUploadConfig

    def __init__(
        self,
        credentials: Optional[ConnectorCredentials] = None,
        config: Optional[FileUploadConfig] = None,
        *,
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
        self.blob_storage = blob_storage or get_blob_storage()
        self._queue: Dict[str, QueuedFile] = {}

    @property
    def max_file_size(self) -> int:
        return self.config.max_file_size_bytes

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def add_file(
        self,
        name: str,
        content: bytes,
        mime_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AddFileResult:
        """
        Validate a buffer and add it to the queue.

        Returns a failed result (never raises) for oversize or unsupported files.
        """
        if len(content) > self.max_file_size:
            return AddFileResult(
                success=False,
                error=(
                    f"File too large: {len(content) / 1024 / 1024:.2f}MB. "
                    f"Maximum size is {self.max_file_size // (1024 * 1024)}MB"
                ),
            )

        detected = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
        if not is_supported(detected):
            return AddFileResult(success=False, error=f"Unsupported file type: {detected}")

        file_id = uuid.uuid4().hex
        self._queue[file_id] = QueuedFile(
            id=file_id,
            name=name,
            content=content,
            mime_type=detected,
            size=len(content),
            metadata=metadata or {},
        )
        self.log_debug("File queued for upload", file_id=file_id, name=name, mime_type=detected)
        return AddFileResult(success=True, file_id=file_id)

    def remove_file(self, file_id: str) -> bool:
        return self._evict(file_id)

    def _evict(self, file_id: str) -> bool:
        """Drop a buffer from memory."""
        return self._queue.pop(file_id, None) is not None

    def clear_queue(self) -> None:
        self._queue.clear()

    def get_queued_files(self) -> List[QueuedFile]:
        return list(self._queue.values())

    def get_queue_size(self) -> int:
        return len(self._queue)

    def get_queue_bytes(self) -> int:
        return sum(f.size for f in self._queue.values())

    @staticmethod
    def get_supported_types() -> List[str]:
        return list(SUPPORTED_MIME_TYPES)

    @staticmethod
    def get_extensions(category: Optional[str] = None) -> List[str]:
        """File extensions (without the dot) for a category, or for every supported type."""
        types = FILE_CATEGORIES[category] if category else SUPPORTED_MIME_TYPES
        extensions = []
        for mime_type in types:
            extension = mimetypes.guess_extension(mime_type)
            if extension and extension[1:] not in extensions:
                extensions.append(extension[1:])
        return extensions

    def storage_path(self, queued: QueuedFile) -> str:
        prefix = f"org_{self.organization_id}/uploads"
        if self.config.batch_id:
            prefix = f"{prefix}/{self.config.batch_id}"
        return f"{prefix}/{queued.id}-{queued.name}"

    # -------------------------------------------------------------------------
    # Connector operations
    # -------------------------------------------------------------------------

    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        self._authenticated = True
        return AuthResult(
            success=True,
            user_id=str(self.user_id) if self.user_id else None,
            user_name="File Upload User",
        )

    async def test_connection(self) -> TestResult:
        bucket = self.config.bucket
        try:
            exists = await self.blob_storage.bucket_exists(bucket)
        except ServiceException as e:
            return TestResult(success=False, message=f"Storage connection failed: {e.message}")

        if not exists:
            return TestResult(success=False, message=f"Storage bucket not found: {bucket}")

        return TestResult(
            success=True,
            message="Storage connection successful",
            metadata={"bucket": bucket},
        )

    async def _upload(self, queued: QueuedFile) -> StoreOutcome:
        path = self.storage_path(queued)
        await self.blob_storage.upload(self.config.bucket, path, queued.content, content_type=queued.mime_type)
        self._evict(queued.id)
        self.log_info("Uploaded file", file_id=queued.id, path=path, size=queued.size)
        return StoreOutcome.CREATED

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """Upload queued buffers; failed ones stay queued for another sync."""
        options = options or SyncOptions()

        files = list(self._queue.values())
        if options.file_types:
            files = [f for f in files if f.mime_type in options.file_types]
        if options.limit:
            files = files[:options.limit]

        result = SyncResult()
        await self._run_in_batches(result, files, self._upload, lambda f: (f.id, f.name))
        result.metadata = {
            "batch_id": self.config.batch_id,
            "remaining_files": self.get_queue_size(),
        }
        return self._build_result(result)

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        options = options or ListOptions()
        limit = options.limit or 100
        files = list(self._queue.values())[options.offset:options.offset + limit]

        return [
            ConnectorFile(
                id=f.id,
                name=f.name,
                type=get_file_category(f.mime_type),
                mime_type=f.mime_type,
                size=f.size,
                modified_at=f.added_at,
                created_at=f.added_at,
                metadata=f.metadata,
            )
            for f in files
        ]

    async def download_file(self, file_id: str) -> FileContent:
        queued = self._queue.get(file_id)
        if queued is None:
            raise NotFoundException("File", file_id)

        return FileContent(
            id=queued.id,
            title=queued.name,
            content=queued.content,
            mime_type=queued.mime_type,
            size=queued.size,
            metadata=queued.metadata,
        )

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        schema = super().get_config_schema()
        schema["properties"].update({
            "batch_id": {
                "type": "string",
                "description": "Groups uploads under one storage folder",
            },
            "bucket": {
                "type": "string",
                "default": settings.STORAGE_BUCKET,
            },
        })
        return schema
