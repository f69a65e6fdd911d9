from abc import ABC, abstractmethod
from typing import Any, Dict, List

from notification_engine.schemas.notification_schemas import (
    CapacitySnapshot,
    Candidate,
    MutationResult,
    RecipientPreferences,
    TimeWindow,
    WaitlistEntry,
)


class EntityStore(ABC):
    """
    Query/mutation API of the store that owns events, users and registrations.

    Implementations raise ``EntityStoreError`` on query or mutation failures;
    the engine isolates those per task tick, candidate or waitlist entry.
    """

    @abstractmethod
    def find_candidates(
        self, kind: str, window: TimeWindow, filters: Dict[str, Any]
    ) -> List[Candidate]:
        """
        Return recipients whose target timestamp for ``kind`` lies inside ``window``.

        The returned candidates carry recipient, related entity, target time and
        rendering data. The engine assigns the occurrence key.
        """
        pass

    @abstractmethod
    def get_capacity(self, entity_id: str) -> CapacitySnapshot:
        pass

    @abstractmethod
    def get_waitlist(self, entity_id: str) -> List[WaitlistEntry]:
        """All waitlisted registrations for a registration-bearing entity."""
        pass

    @abstractmethod
    def mutate_registration(
        self, registration_id: str, patch: Dict[str, Any]
    ) -> MutationResult:
        """
        Apply ``patch`` atomically.

        For promotions the store must flip the registration to confirmed and
        increment the parent's committed count in a single mutation, and report
        ``conflict=True`` when ``expected_committed`` no longer matches or the
        parent is full.
        """
        pass

    @abstractmethod
    def get_recipient_preferences(self, user_id: str) -> RecipientPreferences:
        pass
