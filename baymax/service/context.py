from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from baymax.logging import get_logger
from baymax.storage.models import ChatMessage, system_message

logger = get_logger(__name__)


@dataclass
class AugmentedContext:
    text: str = ""
    results: List[Dict[str, Any]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.text)

    def as_system_message(self) -> ChatMessage:
        return system_message(
            f"Medical database context:\n{self.text}\n\n"
            "Respond as Baymax, using this data carefully."
        )


def _field(result: Dict[str, Any], name: str, default: str) -> str:
    value = result.get(name)
    return default if value is None else str(value)


def format_result(result: Dict[str, Any]) -> str:
    name = _field(result, "Medicine Name", "Unknown")
    uses = _field(result, "Uses", "N/A")
    side_effects = _field(result, "Side_effects", "None listed")
    return f"• {name}: Used for {uses}. Side effects: {side_effects}"


class ContextAugmenter:
    """Looks up medicine records for a prompt in the external vector-search API.

    Best effort: every failure degrades to an empty context so a chat turn is
    never blocked on search.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: Optional[str],
        *,
        timeout: float = 5.0,
    ) -> None:
        self.client = client
        self.api_url = api_url
        self.timeout = timeout

    async def augment(self, query: str) -> AugmentedContext:
        if not self.api_url:
            logger.debug("context_search_not_configured")
            return AugmentedContext()
        try:
            response = await self.client.post(
                self.api_url, json={"query": query}, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "context_search_failed",
                status_code=exc.response.status_code,
                error_type="http_status",
            )
            return AugmentedContext()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "context_search_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return AugmentedContext()

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return AugmentedContext()
        records = [r for r in results if isinstance(r, dict)]
        if not records:
            return AugmentedContext()
        text = "\n".join(format_result(r) for r in records)
        logger.info("context_search_hit", result_count=len(records))
        return AugmentedContext(text=text, results=records)
