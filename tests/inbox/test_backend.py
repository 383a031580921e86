"""Tests for the mailbox backend client.

Requests are served by ``httpx.MockTransport`` so the wire format is
exercised end to end.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from src.inbox.backend import (
    BackendError,
    BackendUnavailableError,
    CancelRaceError,
    MailboxBackend,
    MutationRejectedError,
)
from src.inbox.models import MutationAction


# =============================================================================
# Fixtures and Helpers
# =============================================================================


def make_backend(
    handler: Callable[[httpx.Request], httpx.Response],
    api_token: str | None = None,
) -> MailboxBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MailboxBackend("http://mail.test/", httpx_client=client, api_token=api_token)


class Recorder:
    """Request handler that records requests and returns a canned response."""

    def __init__(self, status: int = 200, body: object | None = None) -> None:
        self.status = status
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.body is None:
            return httpx.Response(self.status)
        return httpx.Response(self.status, json=self.body)

    @property
    def last_json(self) -> object:
        return json.loads(self.requests[-1].content)


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for client construction and context management."""

    def test_strips_trailing_slash(self):
        """Test base URL normalization."""
        assert MailboxBackend("http://mail.test/").base_url == "http://mail.test"

    def test_ensure_client_raises_without_init(self):
        """Test that requests need an entered client."""
        backend = MailboxBackend("http://mail.test")
        with pytest.raises(RuntimeError, match="Client not initialized"):
            backend._ensure_client()

    @pytest.mark.asyncio
    async def test_context_manager_creates_and_closes_client(self):
        """Test owned client lifecycle."""
        backend = MailboxBackend("http://mail.test")
        async with backend:
            assert backend._httpx_client is not None
        assert backend._httpx_client is None

    @pytest.mark.asyncio
    async def test_external_client_not_closed(self):
        """Test that a caller-provided client is left open."""
        external = httpx.AsyncClient()
        backend = MailboxBackend("http://mail.test", httpx_client=external)
        async with backend:
            pass
        assert backend._httpx_client is external
        assert not external.is_closed
        await external.aclose()


# =============================================================================
# Mutations
# =============================================================================


class TestMutations:
    """Tests for single and batch mutations."""

    @pytest.mark.asyncio
    async def test_mutate(self):
        """Test the single-entity endpoint and auth header."""
        recorder = Recorder(body={"status": "ok", "id": "t1"})
        async with make_backend(recorder, api_token="secret") as backend:
            result = await backend.mutate(MutationAction.MARK_READ, "t1")

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/entities/t1/markRead"
        assert request.headers["Authorization"] == "Bearer secret"
        assert result.id == "t1"
        assert result.status == "ok"

    @pytest.mark.asyncio
    async def test_mutate_empty_body(self):
        """Test that an empty 204 still yields a result."""
        recorder = Recorder(status=204)
        async with make_backend(recorder) as backend:
            result = await backend.mutate(MutationAction.DELETE, "t9")

        assert result.id == "t9"
        assert "Authorization" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_mutate_rejected(self):
        """Test that an error status raises MutationRejectedError."""
        recorder = Recorder(status=409, body={"error": "conflict"})
        async with make_backend(recorder) as backend:
            with pytest.raises(MutationRejectedError) as exc_info:
                await backend.mutate(MutationAction.MARK_DONE, "t1")

        assert exc_info.value.status_code == 409
        assert "conflict" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_mutate_unreachable(self):
        """Test that transport errors become BackendUnavailableError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with make_backend(handler) as backend:
            with pytest.raises(BackendUnavailableError):
                await backend.mutate(MutationAction.MARK_READ, "t1")

    @pytest.mark.asyncio
    async def test_mutate_timeout(self):
        """Test that timeouts become BackendUnavailableError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with make_backend(handler) as backend:
            with pytest.raises(BackendUnavailableError, match="timed out"):
                await backend.mutate(MutationAction.MARK_READ, "t1")

    @pytest.mark.asyncio
    async def test_batch(self):
        """Test the batch endpoint and partial-failure parsing."""
        recorder = Recorder(
            body={"successCount": 3, "failedCount": 2, "failedIds": ["d", "e"]}
        )
        async with make_backend(recorder) as backend:
            result = await backend.mutate_batch(
                MutationAction.MARK_DONE, ["a", "b", "c", "d", "e"],
            )

        assert recorder.requests[0].url.path == "/entities/batch/markDone"
        assert recorder.last_json == {"ids": ["a", "b", "c", "d", "e"]}
        assert result.failed_ids == ["d", "e"]

    @pytest.mark.asyncio
    async def test_update_category(self):
        """Test the category override endpoint."""
        recorder = Recorder(status=204)
        async with make_backend(recorder) as backend:
            result = await backend.update_category("t1", "URGENT")

        assert recorder.requests[0].url.path == "/entities/t1/category"
        assert recorder.last_json == {"category": "URGENT"}
        assert result.id == "t1"

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        """Test that a non-object body raises BackendError."""
        recorder = Recorder(body=["not", "an", "object"])
        async with make_backend(recorder) as backend:
            with pytest.raises(BackendError, match="Unexpected response body"):
                await backend.mutate_batch(MutationAction.MARK_READ, ["a", "b"])


# =============================================================================
# Sends
# =============================================================================


class TestSends:
    """Tests for send, cancel, retry, and status."""

    @pytest.mark.asyncio
    async def test_send(self):
        """Test queueing a send with a grace window."""
        recorder = Recorder(
            body={"id": "s1", "canUndo": True, "undoUntil": "2026-01-01T00:00:08Z"}
        )
        async with make_backend(recorder) as backend:
            receipt = await backend.send({"to": ["a@example.com"]}, 8000)

        assert recorder.requests[0].url.path == "/sends"
        assert recorder.last_json == {
            "payload": {"to": ["a@example.com"]},
            "scheduledCommitOffset": 8000,
        }
        assert receipt.id == "s1"
        assert receipt.undo_until_ms is not None

    @pytest.mark.asyncio
    async def test_cancel_send(self):
        """Test a successful interception."""
        recorder = Recorder(body={"status": "cancelled"})
        async with make_backend(recorder) as backend:
            receipt = await backend.cancel_send("s1")

        assert recorder.requests[0].method == "DELETE"
        assert recorder.requests[0].url.path == "/sends/s1"
        assert receipt.status == "cancelled"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 409, 410])
    async def test_cancel_send_race(self, status: int):
        """Test that a client error on cancel means the send already went out."""
        recorder = Recorder(status=status, body={"error": "already sent"})
        async with make_backend(recorder) as backend:
            with pytest.raises(CancelRaceError) as exc_info:
                await backend.cancel_send("s1")

        assert exc_info.value.send_id == "s1"
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_cancel_send_server_error(self):
        """Test that a 5xx on cancel is a network-class failure."""
        recorder = Recorder(status=503)
        async with make_backend(recorder) as backend:
            with pytest.raises(BackendUnavailableError):
                await backend.cancel_send("s1")

    @pytest.mark.asyncio
    async def test_retry_send(self):
        """Test the manual retry endpoint."""
        recorder = Recorder(body={"canUndo": False})
        async with make_backend(recorder) as backend:
            receipt = await backend.retry_send("s1")

        assert recorder.requests[0].url.path == "/sends/s1/retry"
        assert receipt.id == "s1"
        assert receipt.can_undo is False

    @pytest.mark.asyncio
    async def test_get_send_status(self):
        """Test fetching send status."""
        recorder = Recorder(body={"id": "s1", "status": "failed", "error": "bounced"})
        async with make_backend(recorder) as backend:
            status = await backend.get_send_status("s1")

        assert recorder.requests[0].method == "GET"
        assert status.status == "failed"
        assert status.error == "bounced"

    @pytest.mark.asyncio
    async def test_invalid_status_body(self):
        """Test that an invalid model body raises BackendError."""
        recorder = Recorder(body={"id": "s1", "status": "bounced"})
        async with make_backend(recorder) as backend:
            with pytest.raises(BackendError, match="Invalid SendStatus"):
                await backend.get_send_status("s1")
