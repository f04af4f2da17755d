"""
DocBridge - Microsoft Teams Connector
=====================================

Imports Teams meeting recordings and transcripts through Microsoft Graph.

Meetings are discovered from calendar events flagged as online meetings;
recordings and transcripts come from the beta onlineMeetings endpoints.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog

from docbridge.core.config import settings
from docbridge.services.base import NotAuthenticatedException, NotFoundException, ServiceException
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
from docbridge.services.connectors.token_manager import (
    exchange_microsoft_code,
    refresh_microsoft_token,
)

logger = structlog.get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_BETA_URL = "https://graph.microsoft.com/beta"
MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"

AUTH_SCOPES = [
    "offline_access",
    "User.Read",
    "Calendars.Read",
    "OnlineMeetings.Read",
    "OnlineMeetingRecording.Read.All",
    "OnlineMeetingTranscript.Read.All",
]

EVENT_SELECT = "id,subject,start,end,isOnlineMeeting,onlineMeeting"
DEFAULT_SYNC_WINDOW_DAYS = 30


class TeamsConfig(ConnectorConfig):
    sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS


@ConnectorRegistry.register(ConnectorType.MICROSOFT_TEAMS)
class MicrosoftTeamsConnector(OAuthConnector):
    """
    Connector for Microsoft Teams meetings.

    A meeting dict carries id, subject, start/end and the recordings and
    transcripts lists fetched for it.
    """

    connector_type = ConnectorType.MICROSOFT_TEAMS
    display_name = "Microsoft Teams"
    description = "Sync Microsoft Teams meeting recordings and transcripts"
    icon = "users"

    supports_webhooks = True

    config_class = TeamsConfig
    api_base_url = GRAPH_BASE_URL
    provider_name = "microsoft"

    @property
    def tenant_id(self) -> str:
        return self.credentials.extra.get("tenant_id") or settings.MICROSOFT_TENANT_ID

    def get_authorization_url(self, state: Optional[str] = None) -> Optional[str]:
        if not settings.MICROSOFT_CLIENT_ID:
            return None

        params = {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": settings.MICROSOFT_REDIRECT_URI,
            "scope": " ".join(AUTH_SCOPES),
            "response_mode": "query",
        }
        if state:
            params["state"] = state
        return f"{MICROSOFT_AUTH_URL.format(tenant=self.tenant_id)}?{urlencode(params)}"

    async def refresh_tokens(self, refresh_token: str) -> ConnectorCredentials:
        return await refresh_microsoft_token(refresh_token, tenant_id=self.tenant_id, client=self.client)

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

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
        except (ServiceException, httpx.HTTPError) as e:
            self._authenticated = False
            self.log_error("Teams authentication failed", error=e)
            return AuthResult(success=False, error=describe_error(e))

        self._authenticated = True
        return AuthResult(
            success=True,
            user_id=user.get("id"),
            user_name=user.get("displayName") or user.get("userPrincipalName"),
        )

    async def test_connection(self) -> TestResult:
        """
        Check sign-in, then meeting access.

        Without onlineMeetings access the connection still counts as
        working, with a warning in the metadata.
        """
        auth = await self.authenticate()
        if not auth.success:
            return TestResult(success=False, message=auth.error)

        metadata = {"user_id": auth.user_id, "user_name": auth.user_name}
        try:
            await self._get_json("/me/onlineMeetings", params={"$top": 1}, resource_type="OnlineMeetings")
        except (ServiceException, httpx.HTTPError) as e:
            self.log_debug("Online meetings not accessible", error=describe_error(e))
            return TestResult(
                success=True,
                message=f"Connected as {auth.user_name} (limited permissions)",
                metadata={**metadata, "warning": "May not have access to all meeting features"},
            )

        return TestResult(success=True, message=f"Connected as {auth.user_name}", metadata=metadata)

    # -------------------------------------------------------------------------
    # Meetings
    # -------------------------------------------------------------------------

    async def _get_meeting_items(self, meeting_id: str, kind: str) -> List[Dict[str, Any]]:
        """Recordings or transcripts of one meeting; empty when not accessible."""
        try:
            data = await self._get_json(
                f"{GRAPH_BETA_URL}/me/onlineMeetings/{meeting_id}/{kind}",
                resource_type="OnlineMeeting",
                resource_id=meeting_id,
            )
        except (ServiceException, httpx.HTTPError) as e:
            self.log_debug(f"Could not fetch meeting {kind}", meeting_id=meeting_id, error=describe_error(e))
            return []
        return data.get("value") or []

    async def get_meeting_recordings(self, meeting_id: str) -> List[Dict[str, Any]]:
        return await self._get_meeting_items(meeting_id, "recordings")

    async def get_meeting_transcripts(self, meeting_id: str) -> List[Dict[str, Any]]:
        return await self._get_meeting_items(meeting_id, "transcripts")

    async def _build_meeting(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        join_url = (event.get("onlineMeeting") or {}).get("joinUrl")
        if not join_url:
            return None

        return {
            "id": event["id"],
            "subject": event.get("subject") or "Teams Meeting",
            "start": (event.get("start") or {}).get("dateTime"),
            "end": (event.get("end") or {}).get("dateTime"),
            "join_url": join_url,
            "recordings": await self.get_meeting_recordings(event["id"]),
            "transcripts": await self.get_meeting_transcripts(event["id"]),
        }

    async def list_meetings_with_recordings(
        self,
        from_date: datetime,
        to_date: datetime,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Online meetings in the window that have a recording or a transcript."""
        events: List[Dict[str, Any]] = []
        url: Optional[str] = "/me/calendar/events"
        params: Optional[Dict[str, Any]] = {
            "$filter": (
                f"start/dateTime ge '{from_date.isoformat()}' and "
                f"start/dateTime le '{to_date.isoformat()}' and isOnlineMeeting eq true"
            ),
            "$select": EVENT_SELECT,
            "$top": min(limit or self.config.page_size, self.config.page_size),
            "$orderby": "start/dateTime desc",
        }
        while url:
            data = await self._get_json(url, params=params, resource_type="Calendar")
            params = None  # nextLink already carries the query
            events.extend(data.get("value") or [])
            if limit and len(events) >= limit:
                events = events[:limit]
                break
            url = data.get("@odata.nextLink")

        meetings = []
        for event in events:
            meeting = await self._build_meeting(event)
            if meeting and (meeting["recordings"] or meeting["transcripts"]):
                meetings.append(meeting)
        return meetings

    async def get_meeting_by_id(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        """Meeting for a calendar event id, or None if it is not an online meeting."""
        try:
            event = await self._get_json(
                f"/me/calendar/events/{meeting_id}",
                params={"$select": EVENT_SELECT},
                resource_type="Meeting",
                resource_id=meeting_id,
            )
        except NotFoundException:
            self.log_warning("Teams meeting not found", meeting_id=meeting_id)
            return None
        return await self._build_meeting(event)

    def _window(self, since: Optional[datetime] = None) -> tuple:
        now = datetime.now(timezone.utc)
        return since or now - timedelta(days=self.config.sync_window_days), now

    async def _download_transcript(self, url: str) -> str:
        response = await self._request("GET", url, resource_type="Transcript")
        return response.text

    async def process_meeting(self, meeting: Dict[str, Any]) -> List[StoreOutcome]:
        """
        Store each recording and the first transcript of a meeting.

        Recording failures propagate; a transcript failure is only logged.
        """
        meeting_id = meeting["id"]
        subject = meeting.get("subject") or "Teams Meeting"
        base_metadata = {
            "meeting_id": meeting_id,
            "subject": subject,
            "start_date_time": meeting.get("start"),
            "end_date_time": meeting.get("end"),
        }
        outcomes: List[StoreOutcome] = []

        self.log_debug("Processing Teams meeting", meeting_id=meeting_id, subject=subject)

        for recording in meeting.get("recordings") or []:
            data = await self._download_bytes(recording["recordingContentUrl"], resource_id=recording.get("id"))
            outcomes.append(await self._store(
                external_id=f"teams-{meeting_id}-{recording['id']}",
                title=f"{subject} - Recording",
                content=encode_binary(data),
                file_type="video/mp4",
                file_size=len(data),
                source_metadata={
                    **base_metadata,
                    "recording_id": recording["id"],
                    "created_date_time": recording.get("createdDateTime"),
                    "duration": recording.get("recordingDuration"),
                },
            ))

        transcripts = meeting.get("transcripts") or []
        if transcripts:
            transcript = transcripts[0]
            try:
                if transcript.get("contentUrl"):
                    text = await self._download_transcript(transcript["contentUrl"])
                else:
                    text = transcript.get("content") or ""
                outcomes.append(await self._store_transcript(
                    meeting_id,
                    f"{subject} - Transcript",
                    text,
                    {
                        **base_metadata,
                        "transcript_id": transcript.get("id"),
                        "created_date_time": transcript.get("createdDateTime"),
                    },
                ))
            except (ServiceException, httpx.HTTPError) as e:
                self.log_warning("Failed to download transcript", meeting_id=meeting_id, error=describe_error(e))

        return outcomes

    async def _store_transcript(
        self,
        meeting_id: str,
        title: str,
        text: str,
        metadata: Dict[str, Any],
    ) -> StoreOutcome:
        return await self._store(
            external_id=f"teams-{meeting_id}-transcript",
            title=title,
            content=text,
            file_type="text/vtt",
            file_size=len(text.encode("utf-8")),
            source_metadata=metadata,
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

        from_date, to_date = self._window(options.since)
        self.log_info(
            "Fetching Teams recordings",
            from_date=from_date.isoformat(),
            to_date=to_date.isoformat(),
            connector_id=self.connector_id,
        )
        meetings = await self.list_meetings_with_recordings(from_date, to_date, options.limit)
        self.log_info("Teams meetings with recordings found", count=len(meetings))

        result = SyncResult(metadata={"meetings": len(meetings)})
        await self._run_in_batches(
            result,
            meetings,
            self.process_meeting,
            lambda m: (m["id"], m.get("subject")),
        )
        return self._build_result(result)

    async def list_files(self, options: Optional[ListOptions] = None) -> List[ConnectorFile]:
        self._require_token()
        options = options or ListOptions()

        from_date, to_date = self._window(options.since)
        meetings = await self.list_meetings_with_recordings(from_date, to_date, options.limit)

        files = []
        for meeting in meetings:
            common = {
                "path": meeting["subject"],
                "parent_id": meeting["id"],
            }
            metadata = {
                "meeting_id": meeting["id"],
                "subject": meeting["subject"],
                "start_date_time": meeting.get("start"),
                "end_date_time": meeting.get("end"),
            }
            for recording in meeting["recordings"]:
                created = self._parse_datetime(recording.get("createdDateTime"))
                files.append(ConnectorFile(
                    id=recording["id"],
                    name=f"{meeting['subject']} - Recording",
                    type="video",
                    mime_type="video/mp4",
                    modified_at=created,
                    created_at=created,
                    url=recording.get("recordingContentUrl"),
                    metadata={**metadata, "duration": recording.get("recordingDuration")},
                    **common,
                ))
            for transcript in meeting["transcripts"]:
                created = self._parse_datetime(transcript.get("createdDateTime"))
                files.append(ConnectorFile(
                    id=transcript["id"],
                    name=f"{meeting['subject']} - Transcript",
                    type="transcript",
                    mime_type="text/vtt",
                    modified_at=created,
                    created_at=created,
                    url=transcript.get("contentUrl"),
                    metadata=metadata,
                    **common,
                ))

        if options.offset:
            files = files[options.offset:]
        return files[:options.limit] if options.limit else files

    async def download_file(self, file_id: str) -> FileContent:
        """Download a recording or transcript; file_id is its content URL."""
        self._require_token()
        response = await self._request("GET", file_id, resource_type="Recording", resource_id=file_id)
        content = response.content
        return FileContent(
            id=file_id,
            title="Teams Recording",
            content=content,
            mime_type=response.headers.get("content-type", "application/octet-stream"),
            size=len(content),
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    async def handle_webhook(self, event: WebhookEvent) -> None:
        """Dispatch a Graph change notification; failures are logged, never raised."""
        self.log_info("Teams webhook received", event_type=event.type, event_id=event.id)
        payload = event.payload

        try:
            if event.type == "callRecording":
                if not payload.get("meetingId") or not payload.get("recordingUrl"):
                    self.log_warning("Teams webhook missing required fields", event_type=event.type)
                    return
                meeting = await self.get_meeting_by_id(payload["meetingId"])
                if meeting:
                    await self.process_meeting(meeting)

            elif event.type == "callTranscript":
                if not payload.get("meetingId") or not payload.get("transcriptUrl"):
                    self.log_warning("Teams webhook missing required fields", event_type=event.type)
                    return
                text = await self._download_transcript(payload["transcriptUrl"])
                await self._store_transcript(
                    payload["meetingId"],
                    "Meeting Transcript",
                    text,
                    {"meeting_id": payload["meetingId"], "transcript_url": payload["transcriptUrl"]},
                )

            else:
                self.log_debug("Unhandled Teams webhook event", event_type=event.type)
        except Exception as e:
            self.log_error("Teams webhook handling failed", error=e, event_type=event.type, event_id=event.id)

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        schema = super().get_config_schema()
        schema["properties"]["sync_window_days"] = {
            "type": "integer",
            "default": DEFAULT_SYNC_WINDOW_DAYS,
            "description": "Days of meetings fetched when no since date is given",
        }
        return schema

    @classmethod
    def get_credentials_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "access_token": {"type": "string"},
                "refresh_token": {"type": "string"},
                "tenant_id": {
                    "type": "string",
                    "default": "common",
                    "description": "Azure AD tenant ID (stored in extra)",
                },
            },
        }
