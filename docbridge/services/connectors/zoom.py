"""
DocBridge - Zoom Connector
==========================

Imports Zoom cloud recordings and transcripts.

Supports:
- OAuth tokens refreshed through the Zoom token endpoint
- Recording listing over a date window with next_page_token paging
- Recording files stored base64-encoded, transcripts stored as WebVTT
- Webhooks for completed recordings and transcripts
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog

from docbridge.services.base import NotAuthenticatedException, ServiceException
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
    WebhookEvent,
    describe_error,
)
from docbridge.services.connectors.oauth import OAuthConnector
from docbridge.services.connectors.registry import ConnectorRegistry
from docbridge.services.connectors.storage import StoreOutcome, encode_binary
from docbridge.services.connectors.token_manager import refresh_zoom_token

logger = structlog.get_logger(__name__)

ZOOM_API_BASE_URL = "https://api.zoom.us/v2"

# Zoom caps recordings page_size at 300
MAX_PAGE_SIZE = 300
DEFAULT_SYNC_WINDOW_DAYS = 30

ZOOM_MIME_TYPES = {
    "MP4": "video/mp4",
    "M4A": "audio/mp4",
    "TIMELINE": "application/json",
    "TRANSCRIPT": "text/vtt",
    "CHAT": "text/plain",
    "CC": "text/vtt",
}


def get_mime_type(file_type: Optional[str]) -> str:
    return ZOOM_MIME_TYPES.get((file_type or "").upper(), "application/octet-stream")


def format_date(value: datetime) -> str:
    """Zoom expects plain YYYY-MM-DD dates in the recordings query."""
    return value.date().isoformat()


class ZoomConfig(ConnectorConfig):
    sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS


@ConnectorRegistry.register(ConnectorType.ZOOM)
class ZoomConnector(OAuthConnector):
    """
    Connector for Zoom cloud recordings.

    Each meeting expands to one stored document per completed recording
    file plus an optional transcript document.
    """

    connector_type = ConnectorType.ZOOM
    display_name = "Zoom Meetings"
    description = "Sync Zoom meeting recordings and transcripts"
    icon = "video"

    supports_webhooks = True

    config_class = ZoomConfig
    api_base_url = ZOOM_API_BASE_URL
    provider_name = "zoom"

    async def refresh_tokens(self, refresh_token: str) -> ConnectorCredentials:
        return await refresh_zoom_token(refresh_token, client=self.client)

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def _get_me(self) -> Dict[str, Any]:
        return await self._get_json("/users/me", resource_type="User")

    @staticmethod
    def _user_name(user: Dict[str, Any]) -> str:
        name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip()
        return name or user.get("email") or "Unknown User"

    async def authenticate(self, credentials: Optional[ConnectorCredentials] = None) -> AuthResult:
        """
        Validate tokens with GET /users/me.

        Tokens inside the expiry buffer are refreshed before the call.
        """
        if credentials is not None:
            self._set_credentials(credentials)

        if not self.credentials.access_token:
            return AuthResult(success=False, error="Not authenticated")

        try:
            user = await self._get_me()
        except (ServiceException, httpx.HTTPError) as e:
            self._authenticated = False
            self.log_error("Zoom authentication failed", error=e)
            return AuthResult(success=False, error=describe_error(e))

        self._authenticated = True
        return AuthResult(success=True, user_id=user.get("id"), user_name=self._user_name(user))

    async def test_connection(self) -> TestResult:
        auth = await self.authenticate()
        if not auth.success:
            return TestResult(success=False, message=auth.error)

        return TestResult(
            success=True,
            message=f"Connected as {auth.user_name}",
            metadata={"user_id": auth.user_id, "user_name": auth.user_name},
        )

    # -------------------------------------------------------------------------
    # Recordings
    # -------------------------------------------------------------------------

    def _date_range(self, since: Optional[datetime] = None) -> tuple:
        now = datetime.now(timezone.utc)
        start = since or now - timedelta(days=self.config.sync_window_days)
        return format_date(start), format_date(now)

    async def list_recordings(
        self,
        user_id: str,
        from_date: str,
        to_date: str,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List meetings with cloud recordings, following next_page_token."""
        meetings: List[Dict[str, Any]] = []
        page_size = min(limit or MAX_PAGE_SIZE, MAX_PAGE_SIZE)
        next_page_token = None

        while True:
            params = {"from": from_date, "to": to_date, "page_size": page_size}
            if next_page_token:
                params["next_page_token"] = next_page_token

            data = await self._get_json(
                f"/users/{user_id}/recordings",
                params=params,
                resource_type="Recordings",
                resource_id=user_id,
            )
            meetings.extend(data.get("meetings") or [])

            if limit and len(meetings) >= limit:
                break
            next_page_token = data.get("next_page_token")
            if not next_page_token:
                break

        return meetings[:limit] if limit else meetings

    async def _download_transcript(self, url: str) -> str:
        response = await self._request("GET", url, resource_type="Transcript")
        return response.text

    async def process_meeting(self, meeting: Dict[str, Any]) -> List[StoreOutcome]:
        """
        Store every completed recording file of a meeting, then its transcript.

        A failing recording file fails the meeting; a failing transcript
        is only logged.
        """
        uuid = meeting["uuid"]
        topic = meeting.get("topic") or "Zoom Meeting"
        outcomes: List[StoreOutcome] = []

        self.log_debug("Processing Zoom meeting", meeting_uuid=uuid, topic=topic)

        for recording in meeting.get("recording_files") or []:
            if recording.get("status") != "completed":
                self.log_debug(
                    "Skipping incomplete recording",
                    meeting_uuid=uuid,
                    recording_type=recording.get("recording_type"),
                )
                continue

            data = await self._download_bytes(recording["download_url"], resource_id=recording.get("id"))
            outcomes.append(await self._store(
                external_id=f"zoom-{uuid}-{recording['id']}",
                title=f"{topic} - {recording.get('recording_type')}",
                content=encode_binary(data),
                file_type=get_mime_type(recording.get("file_type")),
                file_size=recording.get("file_size") or len(data),
                source_metadata={
                    "meeting_uuid": uuid,
                    "meeting_id": meeting.get("id"),
                    "topic": topic,
                    "start_time": meeting.get("start_time"),
                    "duration": meeting.get("duration"),
                    "recording_type": recording.get("recording_type"),
                    "recording_start": recording.get("recording_start"),
                    "recording_end": recording.get("recording_end"),
                },
            ))

        transcript_file = meeting.get("recording_transcript_file")
        if transcript_file:
            try:
                transcript = await self._download_transcript(transcript_file["download_url"])
                outcomes.append(await self._store_transcript(
                    uuid,
                    topic,
                    transcript,
                    file_size=transcript_file.get("file_size"),
                    metadata={"meeting_id": meeting.get("id"), "start_time": meeting.get("start_time")},
                ))
            except (ServiceException, httpx.HTTPError) as e:
                self.log_warning("Failed to download transcript", meeting_uuid=uuid, error=describe_error(e))

        return outcomes

    async def _store_transcript(
        self,
        uuid: str,
        topic: str,
        transcript: str,
        file_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoreOutcome:
        return await self._store(
            external_id=f"zoom-{uuid}-transcript",
            title=f"{topic} - Transcript",
            content=transcript,
            file_type="text/vtt",
            file_size=file_size or len(transcript.encode("utf-8")),
            source_metadata={"meeting_uuid": uuid, "topic": topic, **(metadata or {})},
        )

    # -------------------------------------------------------------------------
    # Connector operations
    # -------------------------------------------------------------------------

    def _require_token(self) -> None:
        if not self.credentials.access_token:
            raise NotAuthenticatedException()

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        self._require_token()
        options = options or SyncOptions()

        user = await self._get_me()
        from_date, to_date = self._date_range(None if options.full_sync else options.since)
        self.log_info("Fetching Zoom recordings", from_date=from_date, to_date=to_date, connector_id=self.connector_id)

        meetings = await self.list_recordings(user["id"], from_date, to_date, options.limit)
        self.log_info("Zoom meetings with recordings found", count=len(meetings))

        result = SyncResult(metadata={"from": from_date, "to": to_date, "meetings": len(meetings)})
        await self._run_in_batches(
            result,
            meetings,
            self.process_meeting,
            lambda m: (m.get("uuid"), m.get("topic")),
        )
        return self._build_result(result)

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        """Completed recording files from the sync window, one entry per file."""
        self._require_token()
        options = options or ListOptions()

        user = await self._get_me()
        from_date, to_date = self._date_range(options.since)
        meetings = await self.list_recordings(user["id"], from_date, to_date, options.limit)

        files = []
        for meeting in meetings:
            for recording in meeting.get("recording_files") or []:
                if recording.get("status") != "completed":
                    continue
                files.append(ConnectorFile(
                    id=recording["id"],
                    name=f"{meeting.get('topic')} - {recording.get('recording_type')}",
                    type=recording.get("file_type") or "file",
                    mime_type=get_mime_type(recording.get("file_type")),
                    size=recording.get("file_size") or 0,
                    modified_at=self._parse_datetime(recording.get("recording_end")),
                    created_at=self._parse_datetime(recording.get("recording_start")),
                    url=recording.get("download_url"),
                    path=meeting.get("topic"),
                    parent_id=meeting.get("uuid"),
                    metadata={
                        "meeting_id": meeting.get("id"),
                        "meeting_uuid": meeting.get("uuid"),
                        "topic": meeting.get("topic"),
                        "start_time": meeting.get("start_time"),
                        "duration": meeting.get("duration"),
                        "recording_type": recording.get("recording_type"),
                    },
                ))

        if options.offset:
            files = files[options.offset:]
        return files[:options.limit] if options.limit else files

    async def download_file(self, file_id: str) -> FileContent:
        """Download a recording; file_id is the recording's download URL."""
        self._require_token()
        response = await self._request("GET", file_id, resource_type="Recording", resource_id=file_id)
        content = response.content
        return FileContent(
            id=file_id,
            title="Zoom Recording",
            content=content,
            mime_type=response.headers.get("content-type", "application/octet-stream"),
            size=len(content),
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    async def handle_webhook(self, event: WebhookEvent) -> None:
        """Dispatch a Zoom event; failures are logged, never raised."""
        self.log_info("Zoom webhook received", event_type=event.type, event_id=event.id)

        try:
            meeting = event.payload.get("object") or {}
            if event.type == "recording.completed":
                await self.process_meeting(meeting)
            elif event.type == "recording.transcript_completed":
                transcript = await self._download_transcript(meeting["transcript_url"])
                await self._store_transcript(meeting["uuid"], meeting.get("topic") or "Zoom Meeting", transcript)
            elif event.type == "meeting.ended":
                self.log_info("Zoom meeting ended", topic=meeting.get("topic"))
            else:
                self.log_debug("Unhandled Zoom webhook event", event_type=event.type)
        except Exception as e:
            self.log_error("Zoom webhook handling failed", error=e, event_type=event.type, event_id=event.id)

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        schema = super().get_config_schema()
        schema["properties"]["sync_window_days"] = {
            "type": "integer",
            "default": DEFAULT_SYNC_WINDOW_DAYS,
            "description": "Days of recordings fetched when no since date is given",
        }
        return schema

    @classmethod
    def get_credentials_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["access_token", "refresh_token"],
            "properties": {
                "access_token": {"type": "string"},
                "refresh_token": {"type": "string"},
                "expires_at": {"type": "string", "format": "date-time"},
            },
        }
