"""
Reaction aggregation.

Raw (message, emoji, user, added|removed) events fold into per-emoji
summaries. Membership per (emoji, user) is a last-write-wins register: an
event stamped older than the last one applied for the same key is ignored,
so add/remove pairs delivered out of order still converge. Events without a
server stamp (local optimistic changes) apply in arrival order. Re-applying
an event is a no-op and counts never go negative.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from campus_chat.models.events import ReactionEvent
from campus_chat.models.message import Message, Reaction


def _utc(at: datetime) -> datetime:
    return at if at.tzinfo is not None else at.replace(tzinfo=timezone.utc)


class ReactionState:
    """Membership registers for a single message."""

    def __init__(self) -> None:
        self._members: dict[str, dict[str, None]] = {}
        self._stamps: dict[tuple[str, str], datetime] = {}

    @classmethod
    def from_reactions(cls, reactions: Iterable[Reaction]) -> "ReactionState":
        state = cls()
        for r in reactions:
            users = state._members.setdefault(r.emoji, {})
            for user_id in r.users:
                users[user_id] = None
        return state

    def apply(self, event: ReactionEvent) -> bool:
        """Apply one event. Returns True if membership changed."""
        key = (event.emoji, event.user_id)
        if event.at is not None:
            at = _utc(event.at)
            last = self._stamps.get(key)
            if last is not None and at < last:
                return False
            self._stamps[key] = at
        users = self._members.setdefault(event.emoji, {})
        present = event.user_id in users
        if event.added == present:
            return False
        if event.added:
            users[event.user_id] = None
        else:
            del users[event.user_id]
        return True

    def summary(self) -> tuple[Reaction, ...]:
        return tuple(
            Reaction(emoji=emoji, users=tuple(users))
            for emoji, users in self._members.items()
            if users
        )


def fold_reactions(
    events: Iterable[ReactionEvent],
    initial: Iterable[Reaction] = (),
) -> tuple[Reaction, ...]:
    """Fold raw events, in arrival order, onto an initial summary."""
    state = ReactionState.from_reactions(initial)
    for event in events:
        state.apply(event)
    return state.summary()


def reacted_emojis(reactions: Iterable[Reaction], user_id: str) -> set[str]:
    """Emojis the given user currently contributes to."""
    return {r.emoji for r in reactions if r.includes(user_id)}


class ReactionAggregator:
    """Per-message reaction state owned by the sync engine."""

    def __init__(self) -> None:
        self._states: dict[str, ReactionState] = {}

    def seed(self, message: Message) -> None:
        """Reset a message's state from an authoritative record."""
        self._states[message.id] = ReactionState.from_reactions(message.reactions)

    def ensure(self, message: Message) -> None:
        if message.id not in self._states:
            self.seed(message)

    def apply(self, event: ReactionEvent) -> Optional[tuple[Reaction, ...]]:
        """Returns the new summary, or None if the event changed nothing."""
        state = self._states.setdefault(event.message_id, ReactionState())
        if not state.apply(event):
            return None
        return state.summary()

    def forget(self, message_id: str) -> None:
        self._states.pop(message_id, None)

    def clear(self) -> None:
        self._states.clear()
