"""
System actor heuristic.

Audit records only carry weakly typed identity fields (actor id and label),
so whether a change was made by a person or by automation has to be guessed.
The default rule flags a record as automated when it has no actor label, or
when its actor id is empty or a reserved automation id and the label does
not look like an email address.

Known limitation: a person whose label is a bare username and whose actor id
is missing is classified as automated. The rule is a plain predicate and can
be replaced per heuristic instance.

Usage:
    heuristic = SystemActorHeuristic()
    heuristic.is_system("automation", "nightly-reindex")  # True
    heuristic.is_system("", "ops@example.com")  # False
"""

from typing import Callable, Iterable

from packages.audit_store import AuditRecord

DEFAULT_SYSTEM_ACTOR_IDS = ("automation", "system")

# (actor_id, actor_label, reserved_ids) -> is system
ActorPredicate = Callable[[str | None, str | None, frozenset[str]], bool]


def default_system_actor_rule(
    actor_id: str | None,
    actor_label: str | None,
    reserved_ids: frozenset[str],
) -> bool:
    """
    Default automated-actor rule.

    Args:
        actor_id: Actor identifier (may be empty or a reserved automation id)
        actor_label: Email, username or automation name
        reserved_ids: Actor ids reserved for automation

    Returns:
        True when the change should be treated as automated
    """
    if not actor_label:
        return True

    normalized_id = (actor_id or "").strip()
    if normalized_id and normalized_id not in reserved_ids:
        return False

    return "@" not in actor_label


class SystemActorHeuristic:
    """Classifies actors as automated or human with a swappable predicate."""

    def __init__(
        self,
        system_actor_ids: Iterable[str] = DEFAULT_SYSTEM_ACTOR_IDS,
        predicate: ActorPredicate | None = None,
    ) -> None:
        """
        Initialize heuristic.

        Args:
            system_actor_ids: Actor ids reserved for automation
            predicate: Replacement classification rule
        """
        self.system_actor_ids = frozenset(system_actor_ids)
        self.predicate = predicate or default_system_actor_rule

    def is_system(self, actor_id: str | None, actor_label: str | None) -> bool:
        return self.predicate(actor_id, actor_label, self.system_actor_ids)

    def is_system_record(self, record: AuditRecord) -> bool:
        return self.is_system(record.actor_id, record.actor_label)


__all__ = [
    "ActorPredicate",
    "DEFAULT_SYSTEM_ACTOR_IDS",
    "SystemActorHeuristic",
    "default_system_actor_rule",
]
