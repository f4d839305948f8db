"""
Remote notes API client.

Talks to the server's ``/api/notes`` routes. Responses use the
``{"success": bool, "data": ...}`` envelope and the camelCase Note shape.
This is the transport layer only; retries are driven by reconciliation
triggers, never here.
"""

import json
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from notesync.config import settings
from notesync.errors import (
    RemoteError,
    RemoteNotFoundError,
    RemoteProtocolError,
    RemoteTimeoutError,
)
from notesync.logging import get_logger
from notesync.models import ListFilters, Note, NoteChanges

logger = get_logger("services.remote_api")


class RemoteNotesAPI(Protocol):
    """The server-side collaborator the reconciler replays against."""

    async def list_notes(self, filters: ListFilters) -> list[Note]: ...

    async def create_note(self, note_id: str, data: NoteChanges) -> Note: ...

    async def update_note(self, note_id: str, data: NoteChanges) -> Note: ...

    async def delete_note(self, note_id: str) -> None: ...


def _error_from_response(response: httpx.Response) -> RemoteError:
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        payload = {}

    message = ""
    if isinstance(payload, dict):
        message = str(payload.get("error") or payload.get("message") or "")
    message = message or response.reason_phrase or f"HTTP {response.status_code}"

    if response.status_code == 404:
        return RemoteNotFoundError(message, status_code=404)
    return RemoteError(message, status_code=response.status_code)


class HttpNotesAPI:
    """httpx implementation of RemoteNotesAPI."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
        cookies: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            timeout=timeout if timeout is not None else settings.SYNC_REQUEST_TIMEOUT_SECONDS,
            headers={"Content-Type": "application/json", **(headers or {})},
            cookies=cookies,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise RemoteError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.debug(f"{method} {path} -> {response.status_code}: {error}")
            raise error

        if response.status_code == 204 or not response.content:
            return None

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise RemoteProtocolError(f"{method} {path} returned invalid JSON") from exc

        if isinstance(payload, dict) and "success" in payload:
            if not payload.get("success"):
                raise RemoteError(
                    str(payload.get("error") or f"{method} {path} was rejected"),
                    status_code=response.status_code,
                )
            return payload.get("data")
        return payload

    def _parse_note(self, raw: Any, context: str) -> Note:
        try:
            return Note.model_validate(raw)
        except ValidationError as exc:
            raise RemoteProtocolError(f"{context} returned a malformed note: {exc}") from exc

    async def list_notes(self, filters: ListFilters) -> list[Note]:
        data = await self._request("GET", "/api/notes", params=filters.to_params())
        if not isinstance(data, list):
            raise RemoteProtocolError("GET /api/notes did not return a list")

        notes: list[Note] = []
        for raw in data:
            try:
                notes.append(Note.model_validate(raw))
            except ValidationError as exc:
                note_id = raw.get("id") if isinstance(raw, dict) else None
                logger.warning(f"Skipping malformed note from server (id={note_id}): {exc}")
        return notes

    async def create_note(self, note_id: str, data: NoteChanges) -> Note:
        body = {"id": note_id, **data.to_wire()}
        raw = await self._request("POST", "/api/notes", json=body)
        return self._parse_note(raw, "POST /api/notes")

    async def update_note(self, note_id: str, data: NoteChanges) -> Note:
        raw = await self._request("PATCH", f"/api/notes/{note_id}", json=data.to_wire())
        return self._parse_note(raw, f"PATCH /api/notes/{note_id}")

    async def delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/api/notes/{note_id}")
