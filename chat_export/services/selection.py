"""Ordered subset of turns chosen for export."""

from __future__ import annotations

import logging
from typing import Iterable

from chat_export.models.conversation import Conversation, Turn

logger = logging.getLogger(__name__)


class SelectionManager:
    """Track which turns are selected, and in which order.

    The selection never holds an id missing from the current Conversation:
    every operation re-validates against it. A custom order passed to
    ``select`` is kept verbatim; otherwise conversation order is used.
    """

    def __init__(self, conversation: Conversation) -> None:
        self._conversation = conversation
        self._ids: list[str] = []

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._ids

    @property
    def is_all_selected(self) -> bool:
        return bool(self._ids) and set(self._ids) == set(self._conversation.turn_ids)

    def select(self, ids: Iterable[str], order: Iterable[str] | None = None) -> tuple[str, ...]:
        """Replace the selection.

        Args:
            ids: Turn ids to select. Unknown ids are dropped.
            order: Optional explicit order. Ids in ``order`` come first in the
                given sequence; selected ids it omits follow in conversation
                order. Without ``order`` the selection follows conversation
                order.
        """
        wanted = set(ids)
        known = set(self._conversation.turn_ids)

        if order is None:
            ordered = [tid for tid in self._conversation.turn_ids if tid in wanted]
        else:
            ordered = []
            for tid in order:
                if tid in wanted and tid in known and tid not in ordered:
                    ordered.append(tid)
            ordered.extend(
                tid for tid in self._conversation.turn_ids if tid in wanted and tid not in ordered
            )

        dropped = wanted - known
        if dropped:
            logger.debug("Ignoring %d unknown turn ids in selection", len(dropped))
        self._ids = ordered
        return self.ids

    def toggle(self, turn_id: str) -> bool:
        """Flip one turn in or out; returns whether it is now selected.

        A newly selected turn is inserted at its conversation position
        relative to the turns already selected, unless the selection already
        uses a custom order, in which case it is appended.
        """
        if turn_id in self._ids:
            self._ids.remove(turn_id)
            return False
        if self._conversation.get_turn(turn_id) is None:
            return False

        if self._is_conversation_ordered():
            wanted = set(self._ids) | {turn_id}
            self._ids = [tid for tid in self._conversation.turn_ids if tid in wanted]
        else:
            self._ids.append(turn_id)
        return True

    def select_all(self) -> tuple[str, ...]:
        self._ids = list(self._conversation.turn_ids)
        return self.ids

    def clear(self) -> None:
        self._ids = []

    def refresh(self, conversation: Conversation) -> tuple[str, ...]:
        """Re-validate against a freshly scraped Conversation.

        Ids that disappeared are pruned. When everything was selected before,
        everything in the new conversation is selected.
        """
        was_all = self.is_all_selected
        previous = list(self._ids)
        self._conversation = conversation

        if was_all:
            self._ids = list(conversation.turn_ids)
        else:
            known = set(conversation.turn_ids)
            self._ids = [tid for tid in previous if tid in known]

        pruned = len(previous) - len([tid for tid in previous if tid in self._ids])
        if pruned and not was_all:
            logger.info("Pruned %d turns no longer present in the conversation", pruned)
        return self.ids

    def resolve(self) -> list[Turn]:
        """Selected turns, in selection order, resolved against the conversation."""
        turns: list[Turn] = []
        for tid in self._ids:
            turn = self._conversation.get_turn(tid)
            if turn is not None:
                turns.append(turn)
        return turns

    def _is_conversation_ordered(self) -> bool:
        positions = {tid: i for i, tid in enumerate(self._conversation.turn_ids)}
        indexes = [positions[tid] for tid in self._ids if tid in positions]
        return indexes == sorted(indexes)
