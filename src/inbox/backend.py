"""Mailbox backend client.

This module provides a thin async wrapper around the mailbox REST backend:
single-entity mutations, batch mutations, and server-deferred sends with
cancellation.

Example:
    >>> async with MailboxBackend("http://localhost:8080") as backend:
    ...     await backend.mutate(MutationAction.MARK_READ, "t1")
    ...     receipt = await backend.send({"to": ["a@example.com"]}, 8000)
    ...     await backend.cancel_send(receipt.id)
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from src.inbox.models import (
    BatchResult,
    CancelReceipt,
    MutationAction,
    MutationResult,
    SendReceipt,
    SendStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class BackendError(Exception):
    """Base exception for backend client errors."""

    pass


class MutationRejectedError(BackendError):
    """The backend answered with an error status.

    Attributes:
        status_code: HTTP status code of the response.
        detail: Response body text, if any.
    """

    def __init__(self, message: str, status_code: int, detail: str = "") -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code.
            detail: Response body text.
        """
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class CancelRaceError(BackendError):
    """A cancel request arrived after the send was already committed.

    Attributes:
        send_id: Identifier of the send that could not be cancelled.
        status_code: HTTP status code of the rejection.
    """

    def __init__(self, send_id: str, status_code: int) -> None:
        """Initialize the error.

        Args:
            send_id: Identifier of the send.
            status_code: HTTP status code of the rejection.
        """
        super().__init__(f"Send {send_id} was already committed")
        self.send_id = send_id
        self.status_code = status_code


class BackendUnavailableError(BackendError):
    """The backend could not be reached, or failed with a server error."""

    pass


# =============================================================================
# Client
# =============================================================================


class MailboxBackend:
    """Async client for the mailbox REST backend.

    The client performs no retries and has no overlay side effects; callers
    decide how to recover from each error type.

    Example:
        >>> async with MailboxBackend(url, api_token="secret") as backend:
        ...     result = await backend.mutate_batch(
        ...         MutationAction.MARK_DONE, ["t1", "t2"],
        ...     )
        ...     result.failed_ids
        []
    """

    def __init__(
        self,
        base_url: str,
        httpx_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        api_token: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the backend (e.g., "http://localhost:8080").
            httpx_client: Optional httpx AsyncClient to use. If not provided,
                one will be created on entry.
            timeout: Request timeout in seconds (default: 30.0).
            api_token: Optional bearer token sent with every request.
        """
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._api_token = api_token
        self._external_client = httpx_client is not None
        self._httpx_client = httpx_client

    async def __aenter__(self) -> MailboxBackend:
        """Async context manager entry."""
        if self._httpx_client is None:
            self._httpx_client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if not self._external_client and self._httpx_client is not None:
            await self._httpx_client.aclose()
            self._httpx_client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure httpx client is available.

        Returns:
            The httpx AsyncClient.

        Raises:
            RuntimeError: If client is not initialized.
        """
        if self._httpx_client is None:
            raise RuntimeError(
                "Client not initialized. Use 'async with' context manager or "
                "call __aenter__ first."
            )
        return self._httpx_client

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mutate(self, action: MutationAction, entity_id: str) -> MutationResult:
        """Apply one mutation to one entity.

        Args:
            action: The mutation verb.
            entity_id: The entity to mutate.

        Returns:
            The backend's result.

        Raises:
            MutationRejectedError: If the backend rejected the mutation.
            BackendUnavailableError: If the backend could not be reached.
        """
        response = await self._request(
            "POST", f"/entities/{entity_id}/{action.value}",
        )
        data = self._payload(response)
        data.setdefault("id", entity_id)
        data.setdefault("status", "ok")
        return self._parse(MutationResult, data)

    async def mutate_batch(
        self,
        action: MutationAction,
        entity_ids: list[str],
    ) -> BatchResult:
        """Apply one mutation to several entities in a single request.

        A partial failure is reported through ``BatchResult.failed_ids``,
        not raised.

        Args:
            action: The mutation verb.
            entity_ids: The entities to mutate.

        Returns:
            The per-entity outcome.

        Raises:
            MutationRejectedError: If the backend rejected the whole batch.
            BackendUnavailableError: If the backend could not be reached.
        """
        response = await self._request(
            "POST",
            f"/entities/batch/{action.value}",
            json={"ids": entity_ids},
        )
        return self._parse(BatchResult, self._payload(response))

    async def update_category(self, entity_id: str, category: str) -> MutationResult:
        """Override the category of one thread.

        Raises:
            MutationRejectedError: If the backend rejected the change.
            BackendUnavailableError: If the backend could not be reached.
        """
        response = await self._request(
            "POST",
            f"/entities/{entity_id}/category",
            json={"category": category},
        )
        data = self._payload(response)
        data.setdefault("id", entity_id)
        data.setdefault("status", "ok")
        return self._parse(MutationResult, data)

    # ------------------------------------------------------------------
    # Sends
    # ------------------------------------------------------------------

    async def send(
        self,
        payload: dict[str, Any],
        scheduled_commit_offset_ms: int,
    ) -> SendReceipt:
        """Queue an outbound send that commits after a grace window.

        Args:
            payload: The message to send.
            scheduled_commit_offset_ms: Grace window in milliseconds.

        Returns:
            A receipt carrying the send id and the server undo deadline.

        Raises:
            MutationRejectedError: If the backend refused the send.
            BackendUnavailableError: If the backend could not be reached.
        """
        response = await self._request(
            "POST",
            "/sends",
            json={
                "payload": payload,
                "scheduledCommitOffset": scheduled_commit_offset_ms,
            },
        )
        receipt = self._parse(SendReceipt, self._payload(response))
        logger.info("Queued send %s (undo until %s)", receipt.id, receipt.undo_until)
        return receipt

    async def cancel_send(self, send_id: str) -> CancelReceipt:
        """Intercept a queued send before it commits.

        Args:
            send_id: The send to cancel.

        Returns:
            The cancel confirmation.

        Raises:
            CancelRaceError: If the send was already committed.
            BackendUnavailableError: If the backend could not be reached or
                failed with a server error; the outcome is unknown.
        """
        try:
            response = await self._request("DELETE", f"/sends/{send_id}")
        except MutationRejectedError as e:
            if e.status_code >= 500:
                raise BackendUnavailableError(
                    f"Cancel of send {send_id} failed: HTTP {e.status_code}"
                ) from e
            raise CancelRaceError(send_id, e.status_code) from e

        receipt = self._parse(CancelReceipt, self._payload(response))
        logger.info("Cancelled send %s", send_id)
        return receipt

    async def retry_send(self, send_id: str) -> SendReceipt:
        """Ask the backend to retry a failed send.

        Args:
            send_id: The failed send.

        Returns:
            A fresh receipt for the retried send.

        Raises:
            MutationRejectedError: If the send cannot be retried.
            BackendUnavailableError: If the backend could not be reached.
        """
        response = await self._request("POST", f"/sends/{send_id}/retry")
        data = self._payload(response)
        data.setdefault("id", send_id)
        return self._parse(SendReceipt, data)

    async def get_send_status(self, send_id: str) -> SendStatus:
        """Fetch the current server-side state of a send."""
        response = await self._request("GET", f"/sends/{send_id}")
        data = self._payload(response)
        data.setdefault("id", send_id)
        return self._parse(SendStatus, data)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        headers = {}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"

        try:
            response = await client.request(
                method, f"{self.base_url}{path}", json=json, headers=headers,
            )
        except httpx.TimeoutException as e:
            raise BackendUnavailableError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise BackendUnavailableError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            logger.warning(
                "%s %s rejected: HTTP %d", method, path, response.status_code,
            )
            raise MutationRejectedError(
                f"{method} {path} rejected: HTTP {response.status_code}",
                status_code=response.status_code,
                detail=response.text,
            )
        return response

    @staticmethod
    def _payload(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(f"Malformed response body: {e}") from e
        if not isinstance(data, dict):
            raise BackendError(f"Unexpected response body: {data!r}")
        return data

    @staticmethod
    def _parse(model: Any, data: dict[str, Any]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise BackendError(f"Invalid {model.__name__} response: {e}") from e
