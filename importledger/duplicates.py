from collections.abc import Iterable
from datetime import date
import logging

from importledger.stores import LookupStore


logger = logging.getLogger(__name__)


def natural_key(reference: str | None, external_date: date | None, amount: int) -> str:
    """Identify a statement line independently of any generated id.

    Without a bank reference the key falls back to date and amount, so two
    distinct same-day lines for the same amount collapse into one key.
    """
    if reference and reference.strip():
        return reference.strip()
    day = external_date.isoformat() if external_date else ""
    return f"{day}-{amount}"


class DuplicateDetector:
    def __init__(self, store: LookupStore, institution_id: str) -> None:
        self.store = store
        self.institution_id = institution_id
        self._known: set[str] = set()

    def find_existing(self, keys: Iterable[str]) -> set[str]:
        return self.store.find_by_natural_key(self.institution_id, keys)

    def prime(self, keys: Iterable[str]) -> int:
        existing = self.find_existing(keys)
        self._known.update(existing)
        logger.info(
            "loaded existing statement keys",
            extra={"institution_id": self.institution_id, "existing_keys": len(existing)},
        )
        return len(existing)

    def is_duplicate(self, key: str) -> bool:
        return key in self._known

    def remember(self, key: str) -> None:
        self._known.add(key)
