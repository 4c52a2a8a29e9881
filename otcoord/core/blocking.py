from __future__ import annotations
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockingEntry:
    """`blocked` may not leave `place` until `blocker` has passed."""

    place: Hashable
    blocker: Hashable
    blocked: Hashable


@dataclass(frozen=True)
class BlockingQuery:
    place: Optional[Hashable] = None
    blocker: Optional[Hashable] = None
    blocked: Optional[Hashable] = None

    def matches(self, entry: BlockingEntry) -> bool:
        return (
            (self.place is None or entry.place == self.place)
            and (self.blocker is None or entry.blocker == self.blocker)
            and (self.blocked is None or entry.blocked == self.blocked)
        )


class Blocking:
    """In-memory (place, blocker, blocked) relation with exact counters.

    Counters are updated in the same call as the entry set:
      - `_blockers_of[blocked]` is the number of entries holding `blocked`,
      - `_blocked_at_place[place][blocked]` is the number of entries holding
        `blocked` at `place`; its key count is the number of distinct trains
        held there.
    Zero counts are removed so both mirror the entry set exactly.
    """

    def __init__(self) -> None:
        self._entries: Dict[BlockingEntry, None] = {}
        self._blockers_of: Counter = Counter()
        self._blocked_at_place: Dict[Hashable, Counter] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    def block(self, place: Hashable, blocker: Hashable, blocked: Hashable) -> "Blocking":
        entry = BlockingEntry(place, blocker, blocked)
        if entry not in self._entries:
            self._entries[entry] = None
            self._blockers_of[blocked] += 1
            self._blocked_at_place.setdefault(place, Counter())[blocked] += 1
        return self

    def unblock(self, place: Hashable, blocker: Hashable, blocked: Hashable) -> "Blocking":
        entry = BlockingEntry(place, blocker, blocked)
        if entry in self._entries:
            del self._entries[entry]
            _decrement(self._blockers_of, blocked)
            at_place = self._blocked_at_place[place]
            _decrement(at_place, blocked)
            if not at_place:
                del self._blocked_at_place[place]
        return self

    def unblock_all(self, query: BlockingQuery) -> List[BlockingEntry]:
        removed = self.get_blocked(query)
        for entry in removed:
            self.unblock(entry.place, entry.blocker, entry.blocked)
        return removed

    def is_blocked(self, *args: Hashable) -> bool:
        """`is_blocked(blocked)` or `is_blocked(place, blocker, blocked)`."""
        if len(args) == 1:
            return self._blockers_of[args[0]] > 0
        if len(args) == 3:
            return BlockingEntry(*args) in self._entries
        raise TypeError(f"is_blocked takes 1 or 3 arguments ({len(args)} given)")

    def is_blocked_query(self, query: BlockingQuery) -> bool:
        return any(query.matches(e) for e in self._entries)

    def get_blocked(self, query: BlockingQuery) -> List[BlockingEntry]:
        return [e for e in self._entries if query.matches(e)]

    def count_blocked_at_place(self, place: Hashable) -> int:
        return len(self._blocked_at_place.get(place, ()))

    def count_blockers(self, blocked: Hashable) -> int:
        return self._blockers_of[blocked]

    def dump_state(self) -> None:
        blocked_by = sorted(f"  {b} is blocked by {n} trains" for b, n in self._blockers_of.items())
        entries = sorted(f"  {e.place}: {e.blocked} is blocked by {e.blocker}" for e in self._entries)
        logger.info("\n".join(["Blocked by:", *blocked_by, "", "Blocking entries:", *entries]))


def _decrement(counter: Counter, key: Hashable) -> None:
    counter[key] -= 1
    if counter[key] <= 0:
        del counter[key]
