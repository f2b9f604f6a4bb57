"""Side-channel capabilities an agent uses to talk back to its ticket mid-run."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from ticket_dispatcher.config import SIDE_CHANNEL_URL
from ticket_dispatcher.db.models import DOCUMENT_TYPES
from ticket_dispatcher.integrations.api import ApiClient, ApiError

logger = logging.getLogger(__name__)


@dataclass
class SideChannel:
    """Bound to one ticket and persona. Every call returns a dict and never raises."""

    api: ApiClient
    ticket_id: int
    persona_id: str

    @classmethod
    def from_env(cls) -> "SideChannel":
        ticket_id = os.environ.get("TD_TICKET_ID")
        persona_id = os.environ.get("TD_PERSONA_ID")
        if not ticket_id or not persona_id:
            raise ValueError("TD_TICKET_ID and TD_PERSONA_ID must be set")
        base_url = os.environ.get("TD_SIDE_CHANNEL_URL", SIDE_CHANNEL_URL)
        return cls(api=ApiClient(base_url), ticket_id=int(ticket_id), persona_id=persona_id)

    def _post(self, path: str, payload: dict) -> dict:
        try:
            result = self.api.post(path, payload)
        except ApiError as e:
            logger.error("Side-channel call failed: %s", e)
            return {"ok": False, "error": str(e)}
        return {"ok": True, **result}

    def report(self, message: str) -> dict:
        message = message.strip()
        if not message:
            return {"ok": False, "error": "message is empty"}
        return self._post(
            f"/api/tickets/{self.ticket_id}/report",
            {"personaId": self.persona_id, "content": message},
        )

    def save_document(self, doc_type: str, file_path: str) -> dict:
        if doc_type not in DOCUMENT_TYPES:
            return {"ok": False, "error": f"invalid document type: {doc_type}"}
        path = Path(file_path)
        if not path.is_file():
            return {"ok": False, "error": f"file not found: {file_path}"}
        content = path.read_text()
        if not content.strip():
            return {"ok": False, "error": f"file is empty: {file_path}"}
        return self._post(
            f"/api/tickets/{self.ticket_id}/documents",
            {"type": doc_type, "content": content, "personaId": self.persona_id},
        )

    def check_criteria(self, index: int) -> dict:
        return self._post(
            f"/api/tickets/{self.ticket_id}/check-criteria",
            {"index": index},
        )
