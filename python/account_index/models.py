"""
Data Models - Type definitions for the account index pipeline.

These dataclasses represent the data flowing between the signal sources,
the scheduler, the account indexer and the shard store.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union


# ShortIdentifier -> comma-joined suffix pairs, e.g. {"abc123": "og,at"}
CompactShard = Dict[str, str]

# Handle alone, or (handle, display name)
AccountValue = Union[str, Tuple[str, str]]


@dataclass(frozen=True)
class AccountProfile:
    """
    Resolved identity of one account.

    Supplied by the identifier resolver; the pipeline never owns it.
    """
    short_did: str
    short_handle: str
    display_name: Optional[str] = None

    @property
    def value(self) -> AccountValue:
        """What an index entry displays for this account."""
        if self.display_name:
            return (self.short_handle, self.display_name)
        return self.short_handle


@dataclass
class IndexUpdate:
    """
    The unit of change applied to one letter shard for one identifier.

    An empty suffixes string removes the identifier from that letter.
    """
    letter: str
    short_did: str
    value: AccountValue
    suffixes: str

    @property
    def is_removal(self) -> bool:
        return not self.suffixes


@dataclass
class AccountIndex:
    """All letter updates computed from one profile."""
    updates: List[IndexUpdate] = field(default_factory=list)
    by_letter: Dict[str, IndexUpdate] = field(default_factory=dict)


@dataclass
class AccountReport:
    """Outcome of re-indexing one identifier picked by the scheduler."""
    short_did: str
    priority: float
    profile: Optional[AccountProfile]
    updates: List[IndexUpdate]

    @property
    def changed(self) -> bool:
        return bool(self.updates)


# --- Shard load states (one per letter) ---

@dataclass
class Loading:
    letter: str


@dataclass
class Loaded:
    letter: str
    shard: CompactShard


@dataclass
class Failed:
    letter: str
    error: Exception


@dataclass
class Missing:
    letter: str


ShardLoadState = Union[Loading, Loaded, Failed, Missing]


@dataclass
class LoadProgress:
    """Aggregate shard loading progress, reported after each letter settles."""
    loaded: List[str]
    pending: List[str]
    errors: List[str]
    missing: List[str]
    by_letter: Dict[str, ShardLoadState]

    @property
    def complete(self) -> bool:
        return not self.pending

    def __str__(self) -> str:
        return (
            f"{len(self.loaded)} loaded, "
            f"{len(self.pending)} pending, "
            f"{len(self.errors)} errors, "
            f"{len(self.missing)} missing"
        )


# --- Firehose reports ---

@dataclass
class FirehoseReport:
    """Identifiers touched since the previous flush, with accumulated weights."""
    weights: Dict[str, float]


@dataclass
class FirehoseError:
    """Terminal report: the stream failed and should be reopened later."""
    error: Exception
    retry_delay: float    # Seconds
    retry_at: float       # Epoch seconds


@dataclass
class PublishResult:
    """Result of publishing one letter shard."""
    letter: str
    success: bool
    entries: int = 0
    error: Optional[Exception] = None


@dataclass
class IndexingStats:
    """Statistics from a scheduler run."""
    accounts_processed: int = 0
    accounts_changed: int = 0
    accounts_unchanged: int = 0
    updates_emitted: int = 0
    removals_emitted: int = 0
    resolution_errors: int = 0
    updates_held: int = 0        # Targeted a shard that never loaded

    def __str__(self) -> str:
        return (
            f"Processed {self.accounts_processed} accounts "
            f"({self.accounts_changed} changed, "
            f"{self.accounts_unchanged} unchanged, "
            f"{self.resolution_errors} unresolved), "
            f"{self.updates_emitted} updates "
            f"({self.removals_emitted} removals, "
            f"{self.updates_held} held)"
        )
