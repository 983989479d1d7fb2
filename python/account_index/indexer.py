"""
Indexer - Turn an account profile into letter-bucketed prefix entries.

A handle or display name is split into capitalization-delimited words
("JaneDoe", "jane.doe" and "Jane Doe" all give "jane" + "doe"). The first
three letters of each word, lowercased, are the indexed prefixes. Each
prefix is filed under its first letter; the shard for that letter stores
only the remaining two characters (the suffix pair).

diff_account compares a freshly computed index against the stored shards
and keeps only what actually changed, so re-indexing an unchanged account
is a no-op.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional

from .config import LETTERS
from .models import AccountIndex, AccountProfile, CompactShard, IndexUpdate


logger = logging.getLogger(__name__)


_WORD_START = re.compile(r"[A-Z]*[a-z]*")

PREFIX_LENGTH = 3
PAIR_SEPARATOR = ","


def get_word_starts(text: Optional[str], word_starts: Optional[List[str]] = None) -> List[str]:
    """
    Append the 3-character lowercase word starts of text to word_starts.

    Words shorter than three letters are dropped; a prefix already in the
    list is not added again.
    """
    if word_starts is None:
        word_starts = []
    if not text:
        return word_starts

    for match in _WORD_START.finditer(text):
        word_start = match.group(0)[:PREFIX_LENGTH].lower()
        if len(word_start) == PREFIX_LENGTH and word_start not in word_starts:
            word_starts.append(word_start)

    return word_starts


def split_pairs(suffixes: Optional[str]) -> List[str]:
    """'og,at' (or legacy 'ogat') -> ['og', 'at']."""
    if not suffixes:
        return []
    packed = suffixes.replace(PAIR_SEPARATOR, "")
    return [packed[i:i + 2] for i in range(0, len(packed) - 1, 2)]


def join_pairs(pairs: List[str]) -> str:
    return PAIR_SEPARATOR.join(pairs)


def get_prefixes(short_did: str, letter: str, shard: CompactShard) -> Optional[List[str]]:
    """Expand a stored entry back to full prefixes, or None if absent."""
    entry = shard.get(short_did)
    if not entry:
        return None
    return [letter + pair for pair in split_pairs(entry)]


def index_account(profile: AccountProfile) -> AccountIndex:
    """
    Compute one IndexUpdate per letter for a profile.

    Letters appear in the order their first prefix was found (handle
    before display name); within a letter, pairs keep encounter order.
    """
    prefixes: List[str] = []
    get_word_starts(profile.short_handle, prefixes)
    get_word_starts(profile.display_name, prefixes)

    pairs_by_letter: Dict[str, List[str]] = {}
    for prefix in prefixes:
        pairs_by_letter.setdefault(prefix[0], []).append(prefix[1:])

    value = profile.value
    account = AccountIndex()
    for letter, pairs in pairs_by_letter.items():
        update = IndexUpdate(
            letter=letter,
            short_did=profile.short_did,
            value=value,
            suffixes=join_pairs(pairs),
        )
        account.updates.append(update)
        account.by_letter[letter] = update

    return account


def diff_account(
    profile: AccountProfile,
    shards: Mapping[str, CompactShard],
) -> List[IndexUpdate]:
    """
    Updates needed to bring the shards in line with a profile.

    - Letters the account is stored under but no longer produces get an
      explicit removal (empty suffixes).
    - New or changed letters get the freshly computed update.
    - Letters whose stored pairs already match are left out.
    """
    account = index_account(profile)
    short_did = profile.short_did
    changes: List[IndexUpdate] = []

    for letter in LETTERS:
        shard = shards.get(letter)
        if not shard or not shard.get(short_did):
            continue
        if letter not in account.by_letter:
            changes.append(IndexUpdate(
                letter=letter,
                short_did=short_did,
                value=profile.value,
                suffixes="",
            ))

    for update in account.updates:
        stored = (shards.get(update.letter) or {}).get(short_did)
        if stored and split_pairs(stored) == split_pairs(update.suffixes):
            continue
        changes.append(update)

    if not changes:
        logger.debug(f"No changes for {short_did} ({len(account.updates)} letters)")

    return changes
