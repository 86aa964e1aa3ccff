"""Game client — HTTP connection to the ArtifactsMMO server.

The engine depends on a client matching the `GameClient` protocol. Every
operation issues exactly one request; the client keeps no state between calls.

Mutating operations return an `ActionResult` envelope:

    character_after   the updated CharacterSnapshot
    effect            everything else the server returned (drops, fight log...)
    server_cooldown   the `cooldown` object (total_seconds, expiration)

Non-2xx responses are parsed once by `classify_error()` and raised as one of
the `artifacts_bot.errors` classes. Transport failures and timeouts become
`Transient`.

Production code constructs an HttpGameClient from Settings. Tests use the
in-memory FakeGame from the test helpers instead.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from artifacts_bot.errors import (
    AlreadyAtDestination,
    CharacterDead,
    Cooldown,
    Fatal,
    GameError,
    InventoryFull,
    NoResource,
    RateLimited,
    Transient,
)
from artifacts_bot.models import ActionResult, CharacterSnapshot, ServerCooldown

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "https://api.artifactsmmo.com"


# ---------------------------------------------------------------------------
# Protocol: every client implementation must match these signatures
# ---------------------------------------------------------------------------

class GameClient(Protocol):
    async def get_character(self, name: str) -> CharacterSnapshot: ...
    async def move(self, name: str, x: int, y: int) -> ActionResult: ...
    async def gather(self, name: str) -> ActionResult: ...
    async def craft(self, name: str, code: str, quantity: int) -> ActionResult: ...
    async def recycle(self, name: str, code: str, quantity: int) -> ActionResult: ...
    async def fight(self, name: str) -> ActionResult: ...
    async def rest(self, name: str) -> ActionResult: ...
    async def heal(self, name: str) -> ActionResult: ...
    async def bank_deposit(self, name: str, code: str, quantity: int) -> ActionResult: ...
    async def bank_withdraw(self, name: str, code: str, quantity: int) -> ActionResult: ...


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_COOLDOWN_RE = re.compile(r"cooldown:?\s*(\d+(?:\.\d+)?)\s*seconds?", re.IGNORECASE)
_NO_RESOURCE_PHRASES = ("no resource on this map", "resource not found", "monster not found")


def _error_fields(status: int, body: Any) -> tuple[int, str, dict]:
    """Return (code, message, data) from an error body of any shape."""
    if isinstance(body, dict):
        err = body.get("error", body)
        if isinstance(err, dict):
            code = err.get("code", status)
            message = str(err.get("message", ""))
            data = err.get("data") if isinstance(err.get("data"), dict) else {}
            return (code if isinstance(code, int) else status), message, data
        return status, str(err), {}
    return status, str(body or ""), {}


def classify_error(status: int, body: Any) -> GameError:
    """Map an error response onto the taxonomy in `artifacts_bot.errors`.

    The server's error code wins; the message text is the fallback for
    responses that carry only a human-readable message.
    """
    code, message, data = _error_fields(status, body)
    lowered = message.lower()
    text = message or f"HTTP {status}"

    if status == 429 or code == 429:
        return RateLimited(text, status=status)
    if code == 499 or "in cooldown" in lowered:
        seconds = 0.0
        match = _COOLDOWN_RE.search(message)
        if match:
            seconds = float(match.group(1))
        elif isinstance(data.get("remaining_seconds"), (int, float)):
            seconds = float(data["remaining_seconds"])
        return Cooldown(seconds, text, status=status)
    if code == 490 or "already at destination" in lowered:
        return AlreadyAtDestination(text, status=status)
    if code == 497 or "inventory is full" in lowered:
        return InventoryFull(text, status=status)
    if code == 598 or any(p in lowered for p in _NO_RESOURCE_PHRASES):
        return NoResource(text, status=status)
    if "character is dead" in lowered:
        return CharacterDead(text, status=status)
    if 500 <= status < 600:
        return Transient(text, status=status)
    return Fatal(text, status=status)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def sanitize_name(name: str) -> str:
    """Strip everything outside ^[A-Za-z0-9_-]+$ from a character name."""
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "", str(name or ""))
    if not cleaned:
        raise ValueError(f"Invalid character name: {name!r}")
    return cleaned


def _require_item(code: str, quantity: int) -> None:
    if not code:
        raise ValueError("Item code is required")
    if not isinstance(quantity, int) or quantity < 1:
        raise ValueError("Quantity must be a positive integer")


def parse_action(data: dict[str, Any]) -> ActionResult:
    """Split a mutating response into the ActionResult envelope."""
    payload = data.get("data", data) if isinstance(data, dict) else None
    if not isinstance(payload, dict) or not isinstance(payload.get("character"), dict):
        raise Fatal("Unexpected response format from game server")
    effect = {k: v for k, v in payload.items() if k not in ("character", "cooldown")}
    try:
        return ActionResult(
            character_after=CharacterSnapshot.from_payload(payload["character"]),
            effect=effect,
            server_cooldown=ServerCooldown.model_validate(payload.get("cooldown") or {}),
        )
    except (ValidationError, TypeError) as e:
        raise Fatal("Malformed action response from game server") from e


# ---------------------------------------------------------------------------
# HttpGameClient: talks to the real server
# ---------------------------------------------------------------------------

class HttpGameClient:
    """Async HTTP client for the game API.

    Args:
        server:   Base URL, e.g. "https://api.artifactsmmo.com".
        token:    Bearer token for the /my/ endpoints.
        timeout:  Per-request timeout in seconds. Defaults to 30.
        client:   Optional shared httpx.AsyncClient (tests pass one with a
                  MockTransport). When omitted a client is opened per call.
    """

    def __init__(
        self,
        server: str = DEFAULT_SERVER,
        token: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = server.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, body: dict | None) -> httpx.Response:
        if method == "GET":
            return await client.get(url, headers=self._headers())
        return await client.post(url, json=body or {}, headers=self._headers())

    async def _request(self, method: str, url: str, body: dict | None = None) -> dict:
        logger.debug("api %s %s body=%s", method, url, body)
        try:
            if self._client is not None:
                resp = await self._send(self._client, method, url, body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await self._send(client, method, url, body)
        except httpx.TimeoutException as e:
            raise Transient(f"Game server timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise Transient(f"Cannot connect to game server at {self._base_url}") from e

        if not 200 <= resp.status_code < 300:
            try:
                err_body = resp.json()
            except ValueError:
                err_body = resp.text
            error = classify_error(resp.status_code, err_body)
            logger.debug("api %s %s -> %d %s", method, url, resp.status_code, type(error).__name__)
            raise error
        try:
            return resp.json()
        except ValueError as e:
            raise Fatal(f"Game server returned a non-JSON body (HTTP {resp.status_code})",
                        status=resp.status_code) from e

    async def _action(self, name: str, endpoint: str, body: dict | None = None) -> ActionResult:
        url = f"{self._base_url}/my/{sanitize_name(name)}/action/{endpoint}"
        return parse_action(await self._request("POST", url, body))

    async def get_character(self, name: str) -> CharacterSnapshot:
        url = f"{self._base_url}/characters/{sanitize_name(name)}"
        data = await self._request("GET", url)
        payload = data.get("data", data) if isinstance(data, dict) else None
        if not isinstance(payload, dict) or "name" not in payload:
            raise Fatal("Unexpected response format from game server")
        try:
            return CharacterSnapshot.from_payload(payload)
        except (ValidationError, TypeError) as e:
            raise Fatal("Malformed character from game server") from e

    async def move(self, name: str, x: int, y: int) -> ActionResult:
        return await self._action(name, "move", {"x": int(x), "y": int(y)})

    async def gather(self, name: str) -> ActionResult:
        return await self._action(name, "gathering")

    async def craft(self, name: str, code: str, quantity: int) -> ActionResult:
        _require_item(code, quantity)
        return await self._action(name, "crafting", {"code": code, "quantity": quantity})

    async def recycle(self, name: str, code: str, quantity: int) -> ActionResult:
        _require_item(code, quantity)
        return await self._action(name, "recycling", {"code": code, "quantity": quantity})

    async def fight(self, name: str) -> ActionResult:
        return await self._action(name, "fight")

    async def rest(self, name: str) -> ActionResult:
        return await self._action(name, "rest")

    async def heal(self, name: str) -> ActionResult:
        # The server has no dedicated heal endpoint; resting restores hp.
        return await self._action(name, "rest")

    async def bank_deposit(self, name: str, code: str, quantity: int) -> ActionResult:
        _require_item(code, quantity)
        return await self._action(name, "bank/deposit", {"code": code, "quantity": quantity})

    async def bank_withdraw(self, name: str, code: str, quantity: int) -> ActionResult:
        _require_item(code, quantity)
        return await self._action(name, "bank/withdraw", {"code": code, "quantity": quantity})
