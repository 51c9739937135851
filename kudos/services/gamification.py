"""
kudos.services.gamification — Gamification API client
=======================================================

Applies one XP award to one member on the external gamification service.
The service has no "add XP" endpoint, so an award is a task created for the
member and then scored:

* positive XP → a todo (``POST /tasks/user``) scored up;
* negative XP → a down-only habit scored down.

Calls are plain ``httpx`` requests; spacing and ordering are the dispatch
queue's job, not this client's.
"""

from __future__ import annotations

import logging

import httpx

from kudos.engine.actors import Credential

logger = logging.getLogger(__name__)


class GamificationError(RuntimeError):
    """The gamification API answered without a usable task id."""


class GamificationClient:
    """Thin async wrapper around the gamification REST API."""

    def __init__(
        self,
        base_url: str = "https://habitica.com/api/v3",
        client_id: str = "kudos/0.1",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport

    def _headers(self, cred: Credential) -> dict[str, str]:
        return {
            "x-api-user": cred.user_id,
            "x-api-key": cred.api_token,
            "x-client": self.client_id,
            "Content-Type": "application/json",
        }

    async def award(self, cred: Credential, xp: int, title: str, notes: str = "") -> dict:
        """Create and score one task for *xp*; returns the score response data."""
        if xp >= 0:
            task = {"type": "todo", "text": f"{title} (+{xp}XP)", "notes": notes, "priority": 1}
            direction = "up"
        else:
            task = {
                "type": "habit",
                "text": f"{title} ({xp}XP)",
                "notes": notes,
                "up": False,
                "down": True,
                "priority": 1,
            }
            direction = "down"

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            created = await client.post("/tasks/user", json=task, headers=self._headers(cred))
            created.raise_for_status()
            task_id = (created.json().get("data") or {}).get("id")
            if not task_id:
                raise GamificationError("Task creation returned no id")

            scored = await client.post(
                f"/tasks/{task_id}/score/{direction}", json={}, headers=self._headers(cred)
            )
            scored.raise_for_status()

        logger.info("Awarded %+d XP to %s (%s)", xp, cred.user_id, title)
        return scored.json().get("data") or {}
