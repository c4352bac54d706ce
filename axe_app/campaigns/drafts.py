"""Draft answer cache so an interrupted session can resume its answers.

Drafts are scoped per campaign slug and cleared when the response is
committed. Only answers are restored, never the position in the flow.
"""

from __future__ import annotations

import json
import logging
from typing import Any, MutableMapping

logger = logging.getLogger(__name__)


def draft_key(slug: str) -> str:
    return f"survey_progress_{slug}"


class DraftCache:
    """Key-value draft store over a mutable mapping (e.g. a Django session)."""

    def __init__(self, store: MutableMapping[str, Any] | None = None):
        self.store = store if store is not None else {}

    def load(self, slug: str) -> dict[str, Any]:
        raw = self.store.get(draft_key(slug))
        if not raw:
            return {}
        try:
            answers = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            logger.warning("Discarding unreadable draft for campaign %s", slug)
            return {}
        return dict(answers) if isinstance(answers, dict) else {}

    def save(self, slug: str, answers: dict[str, Any]) -> None:
        self.store[draft_key(slug)] = json.dumps(answers)

    def clear(self, slug: str) -> None:
        self.store.pop(draft_key(slug), None)
