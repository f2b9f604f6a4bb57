"""HTTP client for the ticket application's API."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0


class ApiError(Exception):
    """Raised when the API is unreachable or returns an error response."""


@dataclass
class ApiClient:
    base_url: str
    transport: httpx.BaseTransport | None = None
    timeout: float = DEFAULT_TIMEOUT

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            with httpx.Client(
                base_url=self.base_url.rstrip("/"),
                transport=self.transport,
                timeout=self.timeout,
            ) as client:
                resp = client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        if not resp.is_success:
            detail = resp.text
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = body.get("error") or detail
            raise ApiError(f"{method} {path}: {resp.status_code} {detail}")
        return resp

    def post(self, path: str, payload: dict | None = None) -> dict:
        resp = self.request("POST", path, json=payload if payload is not None else {})
        try:
            body = resp.json()
        except ValueError:
            body = None
        return body if isinstance(body, dict) else {"ok": True}

    def reauthorize(self) -> dict:
        """Ask the application to start re-authentication. Never raises."""
        try:
            result = self.post("/api/auth/reauth", {})
        except ApiError as e:
            logger.error("Re-authentication request failed: %s", e)
            return {"ok": False, "error": str(e)}
        if result.get("ok"):
            logger.info("Re-authentication triggered: %s", result.get("message", ""))
        else:
            logger.warning("Re-authentication refused: %s", result.get("error", "unknown"))
        return result

    def dispatch(self, ticket_id: int, comment: str, persona_id: str, retries: int = 1) -> bool:
        """Fire a conversational dispatch for a mentioned persona. Never raises."""
        payload = {
            "commentContent": comment,
            "targetPersonaId": persona_id,
            "conversational": True,
        }
        for attempt in range(retries + 1):
            try:
                self.post(f"/api/tickets/{ticket_id}/dispatch", payload)
                return True
            except ApiError as e:
                logger.warning(
                    "Dispatch of %s on ticket %s failed (attempt %d): %s",
                    persona_id, ticket_id, attempt + 1, e,
                )
        return False
