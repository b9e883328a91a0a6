"""Post-compact conversation rescan hook.

After a compact the agent continues in a new (forked) history file. Whatever
tracks session -> conversation associations is asked to rescan by POSTing
to `rescan_url?session=<name>`.
"""

import logging
from typing import Optional

import httpx

from .events import log_event

logger = logging.getLogger(__name__)


class ConversationRescanner:
    """POSTs a rescan request for a session. Never raises."""

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def rescan(self, session: str) -> Optional[dict]:
        """Trigger a rescan. Returns the JSON response, or None on failure."""
        logger.info("[Compact] Triggering conversation rescan for %s", session)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, params={"session": session}, json={})
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("[Compact] Rescan for %s timed out after %ss", session, self.timeout)
            log_event(session, "rescan", result="fail", error="timeout")
            return None
        except httpx.HTTPStatusError as e:
            logger.warning("[Compact] Rescan for %s failed: HTTP %s", session, e.response.status_code)
            log_event(session, "rescan", result="fail", error=f"HTTP {e.response.status_code}")
            return None
        except (httpx.RequestError, ValueError) as e:
            logger.warning("[Compact] Rescan for %s failed: %s", session, e)
            log_event(session, "rescan", result="fail", error=str(e))
            return None

        conversation = data.get("conversationId") if isinstance(data, dict) else None
        logger.info("[Compact] Rescan complete for %s: %s", session, conversation or "no new conversation")
        log_event(session, "rescan", extra={"conversation_id": conversation})
        return data if isinstance(data, dict) else None
