"""Inline-comment anchors that follow edits to the text they point at."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from .db import DataAccess
from .errors import (
    EmptyLinkedTextError,
    InvalidInlineDataError,
    InvalidTextPositionError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Anchor:
    """A ``(linked_text, start, end)`` range inside an entity body."""

    linked_text: str
    start: int
    end: int
    is_visible: bool = True

    def matches(self, body: str) -> bool:
        return body[self.start:self.end] == self.linked_text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "linked_text": self.linked_text,
            "text_position_start": self.start,
            "text_position_end": self.end,
            "is_visible": self.is_visible,
        }


def find_occurrences(body: str, text: str) -> List[int]:
    """Return every start offset of ``text`` in ``body``, overlaps included."""

    positions: List[int] = []
    index = body.find(text)
    while index != -1:
        positions.append(index)
        index = body.find(text, index + 1)
    return positions


def validate_anchor(body: str, linked_text: str, start: int, end: int) -> Anchor:
    """Check an anchor against ``body`` and return it when it is valid."""

    if not linked_text.strip():
        raise EmptyLinkedTextError()
    if start < 0 or end < start or end > len(body):
        raise InvalidTextPositionError()
    if body[start:end] != linked_text:
        raise InvalidInlineDataError(
            "linked_text does not match the entity content at the given position"
        )
    return Anchor(linked_text=linked_text, start=start, end=end)


def reconcile(anchor: Anchor, new_body: str) -> Anchor:
    """Relocate ``anchor`` inside ``new_body`` or hide it when the text is gone.

    Positions are kept when the stored range still matches. Otherwise the
    anchor moves to the occurrence of its text whose start is closest to the
    old start, the earlier one winning ties. When the text no longer occurs
    the anchor becomes invisible and keeps its old positions.
    """

    if anchor.matches(new_body):
        return replace(anchor, is_visible=True)

    occurrences = find_occurrences(new_body, anchor.linked_text)
    if not occurrences:
        return replace(anchor, is_visible=False)

    best = min(occurrences, key=lambda pos: (abs(pos - anchor.start), pos))
    return Anchor(
        linked_text=anchor.linked_text,
        start=best,
        end=best + len(anchor.linked_text),
        is_visible=True,
    )


class AnchorEngine:
    """Create, reconcile and list the anchors attached to inline comments."""

    def __init__(self, data: DataAccess):
        self.data = data

    @staticmethod
    def create_anchor(
        body: Optional[str],
        linked_text: Optional[str],
        start: Optional[int],
        end: Optional[int],
    ) -> Optional[Anchor]:
        """Validate inline data for a new comment.

        Returns ``None`` when no inline data was supplied at all; partial
        inline data is rejected.
        """

        provided = [value is not None for value in (linked_text, start, end)]
        if not any(provided):
            return None
        if not all(provided):
            raise InvalidInlineDataError()
        if isinstance(start, bool) or isinstance(end, bool):
            raise InvalidTextPositionError()
        return validate_anchor(body or "", str(linked_text), int(start), int(end))

    @staticmethod
    def _stored_anchor(comment: Dict[str, Any]) -> Anchor:
        return Anchor(
            linked_text=comment["linked_text"],
            start=int(comment["text_position_start"]),
            end=int(comment["text_position_end"]),
            is_visible=bool(comment["is_visible"]),
        )

    def reconcile_comments(
        self, comments: List[Dict[str, Any]], new_body: str
    ) -> List[Tuple[str, int, int, bool]]:
        """Compute anchor updates for ``comments`` after a body change."""

        updates: List[Tuple[str, int, int, bool]] = []
        for comment in comments:
            previous = self._stored_anchor(comment)
            current = reconcile(previous, new_body)
            if current != previous:
                logger.debug(
                    "Anchor of comment %s moved from %s..%s to %s..%s (visible=%s)",
                    comment["id"],
                    previous.start,
                    previous.end,
                    current.start,
                    current.end,
                    current.is_visible,
                )
            updates.append(
                (comment["id"], current.start, current.end, current.is_visible)
            )
        hidden = sum(1 for update in updates if not update[3])
        if hidden:
            logger.info("%s inline comment anchor(s) hidden after content change", hidden)
        return updates

    def on_entity_body_changed(
        self,
        table: str,
        entity_type: str,
        entity_id: str,
        changes: Dict[str, Any],
        new_body: str,
    ) -> Optional[Dict[str, Any]]:
        """Persist ``changes`` and reconcile every anchor on the entity."""

        return self.data.update_entity(
            table,
            entity_id,
            changes,
            entity_type=entity_type,
            reconcile=lambda comments: self.reconcile_comments(comments, new_body),
        )

    def list_visible(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        return [
            comment
            for comment in self.data.fetch_comments(
                entity_type, entity_id, inline_only=True
            )
            if comment["is_visible"]
        ]
