"""
Responder Directory — who can be paged for an emergency.

Candidates are ranked by availability then experience; the first becomes
primary and the next few are backups.  Escalation looks responders up by
role (supervisor, department_head, ...).  A role with nobody registered
is still notified on its ``role:<role>`` topic.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from careline.alerting.errors import NotFoundError

logger = logging.getLogger("alerting.responders")


class Responder(BaseModel):
    responder_id: str
    name: str = ""
    roles: list[str] = Field(default_factory=lambda: ["clinician"])
    available: bool = True
    verified: bool = True
    experience_years: float = 0
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def channels(self) -> list[str]:
        """Delivery channels this responder can be reached on, in order."""
        out = ["websocket"]
        if self.phone:
            out.append("sms")
        if self.email:
            out.append("email")
        return out


class InMemoryResponderDirectory:
    def __init__(self, responders: list[Responder] | None = None) -> None:
        self._responders: dict[str, Responder] = {}
        for r in responders or []:
            self.register(r)

    def register(self, responder: Responder) -> Responder:
        self._responders[responder.responder_id] = responder
        logger.info(
            "Registered responder %s (roles=%s)",
            responder.responder_id, ",".join(responder.roles),
        )
        return responder

    def get(self, responder_id: str) -> Responder:
        responder = self._responders.get(responder_id)
        if responder is None:
            raise NotFoundError(f"Responder '{responder_id}' not found")
        return responder

    def find(self, responder_id: str) -> Responder | None:
        return self._responders.get(responder_id)

    def list_all(self) -> list[Responder]:
        return list(self._responders.values())

    def set_available(self, responder_id: str, available: bool) -> Responder:
        responder = self.get(responder_id)
        responder.available = available
        return responder

    def rank_available(self, patient_id: str | None = None) -> list[Responder]:
        """Verified, available responders, most experienced first."""
        candidates = [
            r for r in self._responders.values() if r.verified and r.available
        ]
        # stable on registration order for equal experience
        return sorted(candidates, key=lambda r: -r.experience_years)

    def find_by_role(self, role: str) -> list[Responder]:
        return [r for r in self._responders.values() if role in r.roles]

    def load_file(self, path: str) -> int:
        data = json.loads(Path(path).read_text())
        for item in data:
            self.register(Responder.model_validate(item))
        return len(data)
