"""
Checkpoint persistence for batch jobs.

Each job keeps a single named progress record. Records live in the listing
store's ``job_progress`` table; when the store is missing, unreachable or
the job runs dry, they are kept in memory for the life of the process.
"""

import copy
from typing import Any, Optional

from aggregator.services.listing_store import ListingStore
from aggregator.utils.logger import get_logger
from aggregator.utils.retry import PersistenceUnavailableError

logger = get_logger(__name__)


class ProgressStore:
    """Load/save/clear job checkpoints with an in-memory fallback."""

    def __init__(self, store: Optional[ListingStore] = None, durable: bool = True):
        """
        Initialize the progress store.

        Args:
            store: Listing store holding the ``job_progress`` table
            durable: False keeps every record in memory only (dry runs)
        """
        self.store = store
        self.available = durable and store is not None
        self._memory: dict[str, dict[str, Any]] = {}

    def _degrade(self, error: Exception) -> None:
        if self.available:
            logger.warning("progress_persistence_unavailable", error=str(error))
        self.available = False

    async def load(self, name: str) -> Optional[dict[str, Any]]:
        if self.available:
            try:
                payload = await self.store.load_progress(name)
                if payload is not None:
                    self._memory[name] = copy.deepcopy(payload)
                return payload
            except PersistenceUnavailableError as e:
                self._degrade(e)
        payload = self._memory.get(name)
        return copy.deepcopy(payload) if payload is not None else None

    async def save(self, name: str, payload: dict[str, Any]) -> None:
        self._memory[name] = copy.deepcopy(payload)
        if self.available:
            try:
                await self.store.save_progress(name, payload)
            except PersistenceUnavailableError as e:
                self._degrade(e)

    async def clear(self, name: str) -> None:
        self._memory.pop(name, None)
        if self.available:
            try:
                await self.store.clear_progress(name)
            except PersistenceUnavailableError as e:
                self._degrade(e)


__all__ = ["ProgressStore"]
