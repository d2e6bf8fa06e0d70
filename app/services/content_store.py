# app/services/content_store.py
"""
Content directory: content id -> ContentRecord.

Records are immutable once added. The in-memory store keeps catalog
(insertion) order and is safe to share between request threads.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional

from app.x402.errors import NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentRecord:
    """A sellable content item. ``payload`` is only served after access is proven."""
    id: str
    title: str
    description: str
    price: int  # MIST
    creator: str
    content_url: str
    payload: str

    def __post_init__(self):
        if not self.id:
            raise ValueError("Content id must not be empty")
        if isinstance(self.price, bool) or not isinstance(self.price, int) or self.price <= 0:
            raise ValueError(f"Content price must be a positive integer, got {self.price!r}")


class DuplicateContentError(ValueError):
    """A record with the same id is already registered."""


class ContentStore(ABC):
    """Interface the API layer uses to reach the catalog."""

    @abstractmethod
    def get(self, content_id: str) -> Optional[ContentRecord]:
        """Return the record, or None if the id is unknown."""

    @abstractmethod
    def list(self) -> List[ContentRecord]:
        """Return all records in catalog order."""

    @abstractmethod
    def add(self, record: ContentRecord) -> None:
        """
        Register a new record.

        Raises:
            DuplicateContentError: If the id is already taken
        """

    def require(self, content_id: str) -> ContentRecord:
        """
        Return the record for an id that must exist.

        Raises:
            NotFound: If the id is unknown
        """
        record = self.get(content_id)
        if record is None:
            raise NotFound(f"Content with ID '{content_id}' not found.", details={"content_id": content_id})
        return record


class InMemoryContentStore(ContentStore):
    """Process-local catalog. Contents are lost on restart."""

    def __init__(self, records: Optional[List[ContentRecord]] = None):
        self._records: "OrderedDict[str, ContentRecord]" = OrderedDict()
        self._lock = threading.Lock()
        for record in records or []:
            self.add(record)

    def get(self, content_id: str) -> Optional[ContentRecord]:
        with self._lock:
            return self._records.get(content_id)

    def list(self) -> List[ContentRecord]:
        with self._lock:
            return list(self._records.values())

    def add(self, record: ContentRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise DuplicateContentError(f"Content '{record.id}' is already registered")
            self._records[record.id] = record
        logger.info(f"Registered content {record.id} ({record.title}) at {record.price} MIST")


SAMPLE_CREATOR = "0x1234567890abcdef1234567890abcdef12345678"

SAMPLE_CONTENTS = [
    {
        "title": "Understanding x402 on Sui",
        "description": "Deep dive into how x402 protocol works on Sui blockchain",
        "price": 100_000_000,  # 0.1 SUI
        "content_url": "ipfs://QmX123...",
        "payload": (
            "# Understanding x402 on Sui\n\n"
            "This is premium content that explains how x402 works on Sui...\n\n"
            "The key innovation is that payment and access grant happen atomically "
            "in a single transaction!\n\n"
            "With Sui's programmable transaction blocks (PTBs), we can:\n"
            "1. Transfer payment to content creator\n"
            "2. Mint access receipt NFT\n"
            "3. All in ONE indivisible transaction\n\n"
            "No verification delay. No polling. No trust issues."
        ),
    },
    {
        "title": "Programmable Transaction Blocks Guide",
        "description": "Learn how to build complex PTBs on Sui",
        "price": 200_000_000,  # 0.2 SUI
        "content_url": "ipfs://QmY456...",
        "payload": (
            "# PTB Mastery\n\n"
            "Programmable Transaction Blocks are Sui's superpower...\n\n"
            "[Premium detailed content here]"
        ),
    },
    {
        "title": "Building DeFi on Sui",
        "description": "Complete guide to DeFi development on Sui",
        "price": 500_000_000,  # 0.5 SUI
        "content_url": "ipfs://QmZ789...",
        "payload": (
            "# DeFi on Sui\n\n"
            "Learn how to build the next generation of DeFi protocols...\n\n"
            "[Premium detailed content here]"
        ),
    },
]


def build_sample_records() -> List[ContentRecord]:
    """Sample catalog with ids content_1..content_N."""
    return [
        ContentRecord(id=f"content_{index}", creator=SAMPLE_CREATOR, **sample)
        for index, sample in enumerate(SAMPLE_CONTENTS, start=1)
    ]


# Global store instance
_content_store: Optional[ContentStore] = None
_content_store_lock = threading.Lock()


def get_content_store() -> ContentStore:
    """
    Get the global content store, seeded with the sample catalog.

    Returns:
        The singleton ContentStore instance
    """
    global _content_store

    if _content_store is None:
        with _content_store_lock:
            if _content_store is None:
                _content_store = InMemoryContentStore(build_sample_records())

    return _content_store


def reset_content_store() -> None:
    """Drop the global store so the next call reseeds it (useful for testing)."""
    global _content_store
    with _content_store_lock:
        _content_store = None
