"""Server capabilities and initialize instructions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class CapabilitiesProvider:
    """Describe what the server offers, based on the registered providers.

    Args:
        tools: Callable returning the tool catalog
        prompts: Callable returning the stored prompts
        active_prompt: Callable returning the active prompt record or ``None``
    """

    def __init__(
        self,
        *,
        tools: Callable[[], List[Dict[str, Any]]],
        prompts: Callable[[], List[Dict[str, Any]]],
        active_prompt: Callable[[], Optional[Dict[str, Any]]],
    ):
        self._tools = tools
        self._prompts = prompts
        self._active_prompt = active_prompt

    def capabilities(self) -> Dict[str, Any]:
        """Expose server capabilities in MCP-compliant format.

        A missing sub-object means the feature is not offered.
        """

        result: Dict[str, Any] = {}
        if self._tools():
            result["tools"] = {"listChanged": False}
        if self._has_prompts():
            result["prompts"] = {"listChanged": True}
        result["resources"] = {"listChanged": False}
        return result

    def _has_prompts(self) -> bool:
        try:
            return bool(self._prompts())
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Failed to load prompts for capabilities: %s", exc)
            return False

    def instructions(self) -> str:
        """Return the active prompt text, or an empty string."""

        try:
            prompt = self._active_prompt()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Failed to load active prompt for instructions: %s", exc)
            return ""
        if not prompt:
            return ""

        content = prompt.get("content") or ""
        description = prompt.get("description")
        if description:
            return f"{description}\n\n{content}"
        return content
