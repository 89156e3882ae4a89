"""Reply-graph threading: group a batch of messages by their root ancestor id.

The root of a message is found by following its first reply reference
(References in order, then In-Reply-To) through the batch. When the ancestor
is not part of the batch, its id becomes the root, so a thread can be anchored
on a message that was never observed. Later batches containing that ancestor,
or other replies to it, still resolve to the same root id.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from mbox_ingestor.core.models import MessageRecord, ThreadGroup

logger = logging.getLogger(__name__)


def parent_candidate(message: MessageRecord) -> str:
    """Return the immediate ancestor id of a message, or "" if it starts a thread."""
    for ref in (*message.references, message.in_reply_to):
        ref = ref.strip().strip("<>").strip()
        if ref and ref != message.message_id:
            return ref
    return ""


class ThreadResolver:
    """Partitions a batch of MessageRecords into ThreadGroups."""

    def group(self, messages: Iterable[MessageRecord]) -> list[ThreadGroup]:
        """Group messages that share a common ancestor id.

        Args:
            messages: One batch of parsed messages.

        Returns:
            ThreadGroups ordered by their earliest message, members ordered by date.
        """
        batch = list(messages)
        by_id: dict[str, MessageRecord] = {}
        for message in batch:
            by_id.setdefault(message.message_id, message)

        roots: dict[str, str] = {}
        members: dict[str, list[MessageRecord]] = {}
        for message in batch:
            root = self._resolve_root(message.message_id, by_id, roots)
            members.setdefault(root, []).append(message)

        groups = [
            ThreadGroup(root_id=root, messages=tuple(sorted(msgs, key=lambda m: m.date)))
            for root, msgs in members.items()
        ]
        groups.sort(key=lambda g: g.messages[0].date)
        logger.debug("Grouped %d messages into %d threads", len(batch), len(groups))
        return groups

    @staticmethod
    def _resolve_root(
        message_id: str,
        by_id: dict[str, MessageRecord],
        roots: dict[str, str],
    ) -> str:
        """Follow ancestor links from message_id and memoize the root of every id on the path."""
        path: list[str] = []
        on_path: set[str] = set()
        current = message_id

        while True:
            if current in roots:
                root = roots[current]
                break
            message = by_id.get(current)
            if message is None:
                # Ancestor outside the batch stands in as the root
                root = current
                break
            if current in on_path:
                logger.warning("Reference cycle through %s", current)
                root = current
                break
            path.append(current)
            on_path.add(current)
            parent = parent_candidate(message)
            if not parent:
                root = current
                break
            current = parent

        for seen in path:
            roots[seen] = root
        return root
