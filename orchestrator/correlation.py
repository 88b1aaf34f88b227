"""
Correlation Registry - Map remote-issued ids back to caller operations

Agents assign a conversation id (context id) on their first reply and a work
id (task id) when they defer the work. A notification only carries those ids,
so this registry resolves them back to the (operation_id, agent_id) pair that
has to be resumed. Thread-safe for concurrent access.
"""

from typing import Dict, List, Optional, Tuple
from threading import Lock
import logging

from shared.errors import AmbiguousCorrelationError
from shared.schemas import CorrelationEntry

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]


class CorrelationRegistry:
    """
    Bidirectional lookup between remote ids and (operation_id, agent_id).

    Entries are immutable; register() swaps in a new entry under the lock so a
    concurrent lookup sees either the old or the fully updated entry. Nothing
    expires on its own: the owner calls remove() once an operation is closed.
    """

    def __init__(self):
        """Initialize empty indexes with a thread-safe lock"""
        self._by_pair: Dict[PairKey, CorrelationEntry] = {}
        self._by_conversation: Dict[str, Dict[PairKey, CorrelationEntry]] = {}
        self._by_work: Dict[str, Dict[PairKey, CorrelationEntry]] = {}
        self._lock = Lock()

    def register(
        self,
        operation_id: str,
        agent_id: str,
        conversation_id: Optional[str] = None,
        work_id: Optional[str] = None
    ) -> CorrelationEntry:
        """
        Record or extend the correlation for an (operation, agent) pair.

        Idempotent. Ids that are None keep their previous value, so callers can
        register progressively as a conversation advances.

        Args:
            operation_id: Caller-generated operation id
            agent_id: Caller-assigned agent id
            conversation_id: Conversation id disclosed by the agent, if any
            work_id: Work id disclosed by the agent, if any

        Returns:
            The entry now stored for the pair
        """
        key = (operation_id, agent_id)

        with self._lock:
            previous = self._by_pair.get(key)
            entry = CorrelationEntry(
                operation_id=operation_id,
                agent_id=agent_id,
                conversation_id=conversation_id or (previous.conversation_id if previous else None),
                work_id=work_id or (previous.work_id if previous else None),
            )

            if previous == entry:
                return previous

            if previous:
                self._unindex(previous)

            self._by_pair[key] = entry
            if entry.conversation_id:
                self._by_conversation.setdefault(entry.conversation_id, {})[key] = entry
            if entry.work_id:
                self._by_work.setdefault(entry.work_id, {})[key] = entry

        logger.debug(
            f"Correlated {operation_id}/{agent_id} "
            f"(conversation={entry.conversation_id}, work={entry.work_id})"
        )
        return entry

    def lookup_by_conversation(
        self,
        conversation_id: str,
        agent_id: Optional[str] = None
    ) -> Optional[CorrelationEntry]:
        """
        Resolve a conversation id.

        Args:
            conversation_id: Conversation id from the notification
            agent_id: Narrow the lookup to one agent (two agents may issue the same id)

        Returns:
            CorrelationEntry or None if not found

        Raises:
            AmbiguousCorrelationError: If several agents use the id and no agent_id was given
        """
        with self._lock:
            return self._lookup(self._by_conversation, conversation_id, agent_id, "conversation")

    def lookup_by_work(
        self,
        work_id: str,
        agent_id: Optional[str] = None
    ) -> Optional[CorrelationEntry]:
        """Resolve a work id. Same semantics as lookup_by_conversation."""
        with self._lock:
            return self._lookup(self._by_work, work_id, agent_id, "work")

    def get(self, operation_id: str, agent_id: str) -> Optional[CorrelationEntry]:
        with self._lock:
            return self._by_pair.get((operation_id, agent_id))

    def remove(self, operation_id: str, agent_id: str) -> bool:
        """
        Delete every index entry for a pair.

        Returns:
            True if the pair was registered, False otherwise
        """
        with self._lock:
            entry = self._by_pair.pop((operation_id, agent_id), None)
            if entry is None:
                return False
            self._unindex(entry)

        logger.debug(f"Removed correlation for {operation_id}/{agent_id}")
        return True

    def entries(self) -> List[CorrelationEntry]:
        with self._lock:
            return list(self._by_pair.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_pair)

    def _lookup(
        self,
        index: Dict[str, Dict[PairKey, CorrelationEntry]],
        remote_id: str,
        agent_id: Optional[str],
        kind: str
    ) -> Optional[CorrelationEntry]:
        matches = index.get(remote_id)
        if not matches:
            return None

        if agent_id is not None:
            candidates = [e for e in matches.values() if e.agent_id == agent_id]
        else:
            candidates = list(matches.values())

        if not candidates:
            return None
        if len(candidates) > 1:
            raise AmbiguousCorrelationError(
                f"{kind} id '{remote_id}' is shared by {len(candidates)} operations; pass agent_id to disambiguate",
                details={"remote_id": remote_id, "kind": kind}
            )
        return candidates[0]

    def _unindex(self, entry: CorrelationEntry) -> None:
        key = (entry.operation_id, entry.agent_id)
        for index, remote_id in (
            (self._by_conversation, entry.conversation_id),
            (self._by_work, entry.work_id),
        ):
            if not remote_id:
                continue
            bucket = index.get(remote_id)
            if bucket is None:
                continue
            bucket.pop(key, None)
            if not bucket:
                del index[remote_id]
