"""
DocBridge - Zoom Connector Tests
================================

Tests for the Zoom recordings connector against a mocked Zoom API.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Set

import httpx
import pytest

from docbridge.services.base import NotAuthenticatedException
from docbridge.services.connectors.base import (
    ConnectorCredentials,
    ListOptions,
    SyncOptions,
    WebhookEvent,
)
from docbridge.services.connectors.storage import InMemoryCredentialStore
from docbridge.services.connectors.zoom import (
    ZOOM_API_BASE_URL,
    ZoomConfig,
    ZoomConnector,
    get_mime_type,
)

DOWNLOAD_HOST = "https://zoom.us/rec/download"


def recording(recording_id: str, file_type: str = "MP4", status: str = "completed") -> dict:
    return {
        "id": recording_id,
        "file_type": file_type,
        "recording_type": "shared_screen_with_speaker_view" if file_type == "MP4" else "audio_only",
        "status": status,
        "download_url": f"{DOWNLOAD_HOST}/{recording_id}",
        "recording_start": "2024-03-01T10:00:00Z",
        "recording_end": "2024-03-01T11:00:00Z",
    }


class FakeZoom:
    """Minimal Zoom API: one user, paged recordings, downloadable files."""

    def __init__(self):
        self.meetings: List[dict] = [
            {
                "uuid": "m-1",
                "id": 111,
                "topic": "Planning",
                "start_time": "2024-03-01T10:00:00Z",
                "duration": 60,
                "recording_files": [
                    recording("rec-1"),
                    recording("rec-2", "M4A"),
                    recording("rec-3", status="processing"),
                ],
                "recording_transcript_file": {"download_url": f"{DOWNLOAD_HOST}/transcript-1"},
            },
            {
                "uuid": "m-2",
                "id": 222,
                "topic": "Retro",
                "start_time": "2024-03-02T10:00:00Z",
                "duration": 30,
                "recording_files": [recording("rec-4")],
            },
        ]
        self.files: Dict[str, bytes] = {
            "rec-1": b"video-bytes",
            "rec-2": b"audio-bytes",
            "rec-4": b"retro-video",
            "transcript-1": b"WEBVTT\n\n00:00.000 --> 00:01.000\nHello",
        }
        self.missing: Set[str] = set()
        self.broken: Set[str] = set()
        self.page_size = 100
        self.valid_tokens = {"access-1"}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            self.valid_tokens.add("access-2")
            return httpx.Response(200, json={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600})

        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"code": 124, "message": "Invalid access token."})

        if path.startswith("/rec/download/"):
            file_id = path.rsplit("/", 1)[1]
            if file_id in self.broken:
                return httpx.Response(500, json={"code": 500, "message": "boom"})
            if file_id in self.missing:
                return httpx.Response(404, json={"code": 3301, "message": "This recording does not exist."})
            return httpx.Response(200, content=self.files[file_id], headers={"content-type": "video/mp4"})

        if path == "/v2/users/me":
            return httpx.Response(200, json={"id": "user-1", "first_name": "Ada", "last_name": "Lovelace"})

        if path == "/v2/users/user-1/recordings":
            start = int(request.url.params.get("next_page_token") or 0)
            end = start + self.page_size
            return httpx.Response(200, json={
                "meetings": self.meetings[start:end],
                "next_page_token": str(end) if end < len(self.meetings) else "",
            })

        return httpx.Response(404, json={"code": 404, "message": path})


@pytest.fixture
def zoom() -> FakeZoom:
    return FakeZoom()


def make_connector(zoom, document_store, **kwargs) -> ZoomConnector:
    return ZoomConnector(
        ConnectorCredentials(access_token="access-1", refresh_token="refresh-1", expires_at="2099-01-01T00:00:00Z"),
        ZoomConfig(connector_id="conn-zoom", org_id="org-test"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(zoom), base_url=ZOOM_API_BASE_URL),
        document_store=document_store,
        **kwargs,
    )


@pytest.fixture
def connector(zoom, document_store) -> ZoomConnector:
    return make_connector(zoom, document_store)


def test_mime_types():
    assert get_mime_type("mp4") == "video/mp4"
    assert get_mime_type("TRANSCRIPT") == "text/vtt"
    assert get_mime_type(None) == "application/octet-stream"


# =============================================================================
# Connection
# =============================================================================

class TestZoomConnection:
    """Tests for authentication and token refresh."""

    async def test_connection_is_repeatable(self, connector):
        first = await connector.test_connection()
        second = await connector.test_connection()

        assert first.success and second.success
        assert first.message == second.message == "Connected as Ada Lovelace"

    async def test_expired_token_is_refreshed_once(self, zoom, document_store):
        zoom.valid_tokens = set()
        store = InMemoryCredentialStore({"conn-zoom": {"access_token": "access-1"}})
        connector = make_connector(zoom, document_store, credential_store=store)

        result = await connector.authenticate()

        assert result.success is True
        assert connector.credentials.access_token == "access-2"
        assert connector.credentials.refresh_token == "refresh-2"
        assert (await store.load("conn-zoom"))["refresh_token"] == "refresh-2"
        assert len([r for r in zoom.requests if r.url.path == "/oauth/token"]) == 1

    async def test_missing_token(self, zoom, document_store):
        connector = ZoomConnector(
            ConnectorCredentials(),
            client=httpx.AsyncClient(transport=httpx.MockTransport(zoom)),
            document_store=document_store,
        )

        result = await connector.test_connection()

        assert result.success is False
        assert result.message == "Not authenticated"
        with pytest.raises(NotAuthenticatedException):
            await connector.sync()


# =============================================================================
# Sync
# =============================================================================

class TestZoomSync:
    """Tests for recording and transcript sync."""

    async def test_sync_stores_recordings_and_transcript(self, connector, document_store):
        result = await connector.sync()

        assert result.success is True
        assert result.files_processed == 2
        assert result.files_updated == 4
        assert result.metadata["meetings"] == 2

        video = await document_store.get("conn-zoom", "zoom-m-1-rec-1")
        assert base64.b64decode(video.content) == b"video-bytes"
        assert video.file_type == "video/mp4"
        assert video.source_metadata["topic"] == "Planning"

        transcript = await document_store.get("conn-zoom", "zoom-m-1-transcript")
        assert transcript.content.startswith("WEBVTT")
        assert transcript.file_type == "text/vtt"

    async def test_since_sets_window_start(self, connector):
        result = await connector.sync(SyncOptions(since=datetime(2024, 1, 15, tzinfo=timezone.utc)))

        assert result.metadata["from"] == "2024-01-15"

    async def test_full_sync_uses_default_window(self, connector):
        since = datetime(2024, 1, 15, tzinfo=timezone.utc)
        window_start = datetime.now(timezone.utc) - timedelta(days=30)

        result = await connector.sync(SyncOptions(since=since, full_sync=True))

        assert result.metadata["from"] == window_start.date().isoformat()

    async def test_incomplete_recordings_are_skipped(self, connector, document_store):
        await connector.sync()

        assert await document_store.get("conn-zoom", "zoom-m-1-rec-3") is None

    async def test_second_sync_updates_nothing(self, connector):
        await connector.sync()
        result = await connector.sync()

        assert result.files_processed == 2
        assert result.files_updated == 0

    async def test_missing_recording_fails_only_its_meeting(self, connector, zoom, document_store):
        zoom.missing.add("rec-4")

        result = await connector.sync()

        assert result.success is False
        assert result.files_failed == 1
        assert result.errors[0].file_id == "m-2"
        assert result.errors[0].retryable is False
        assert await document_store.get("conn-zoom", "zoom-m-1-rec-1") is not None

    async def test_broken_transcript_does_not_fail_meeting(self, connector, zoom, document_store):
        zoom.broken.add("transcript-1")

        result = await connector.sync()

        assert result.success is True
        assert result.files_updated == 3
        assert await document_store.get("conn-zoom", "zoom-m-1-transcript") is None

    async def test_recordings_follow_page_token(self, connector, zoom):
        zoom.page_size = 1

        result = await connector.sync()

        assert result.files_processed == 2
        listing = [r for r in zoom.requests if r.url.path.endswith("/recordings")]
        assert len(listing) == 2

    async def test_list_files_skips_incomplete(self, connector):
        files = await connector.list_files(ListOptions(limit=10))

        assert [f.id for f in files] == ["rec-1", "rec-2", "rec-4"]
        assert files[0].parent_id == "m-1"
        assert files[1].mime_type == "audio/mp4"

    async def test_sync_limit(self, connector):
        result = await connector.sync(SyncOptions(limit=1))

        assert result.files_processed == 1


# =============================================================================
# Webhooks
# =============================================================================

class TestZoomWebhooks:
    """Tests for webhook handling."""

    async def test_recording_completed_stores_meeting(self, connector, zoom, document_store):
        event = WebhookEvent(
            id="evt-1",
            type="recording.completed",
            source="zoom",
            payload={"object": zoom.meetings[1]},
        )

        await connector.handle_webhook(event)

        assert await document_store.get("conn-zoom", "zoom-m-2-rec-4") is not None

    async def test_transcript_completed_stores_transcript(self, connector, document_store):
        event = WebhookEvent(
            id="evt-2",
            type="recording.transcript_completed",
            source="zoom",
            payload={"object": {
                "uuid": "m-9",
                "topic": "Sync",
                "transcript_url": f"{DOWNLOAD_HOST}/transcript-1",
            }},
        )

        await connector.handle_webhook(event)

        row = await document_store.get("conn-zoom", "zoom-m-9-transcript")
        assert row.title == "Sync - Transcript"

    async def test_malformed_event_is_swallowed(self, connector):
        event = WebhookEvent(
            id="evt-3",
            type="recording.transcript_completed",
            source="zoom",
            payload={"object": {"uuid": "m-9"}},
        )

        await connector.handle_webhook(event)

    async def test_unknown_event_is_ignored(self, connector, zoom):
        await connector.handle_webhook(WebhookEvent(id="evt-4", type="meeting.started", source="zoom"))

        assert zoom.requests == []
