"""
Indexer Tests - Verify prefix extraction and the shard diff.

Tests:
- Word-start extraction (case folding, dedup, short words)
- Per-letter grouping of suffix pairs
- Diff: idempotence, removals, changed letters
"""

import pytest

from account_index.indexer import (
    diff_account,
    get_prefixes,
    get_word_starts,
    index_account,
    split_pairs,
)
from account_index.models import AccountProfile


class TestWordStarts:
    """Tests for get_word_starts."""

    def test_handle_and_display_name(self):
        """'jane.doe' and 'Jane Doe' give exactly jan + doe."""
        starts = get_word_starts("jane.doe")
        get_word_starts("Jane Doe", starts)

        assert starts == ["jan", "doe"]

    def test_never_includes_punctuation(self):
        starts = get_word_starts("jane.doe")
        assert all(len(s) == 3 and s.isalpha() for s in starts)

    def test_camel_case_splits_words(self):
        assert get_word_starts("JaneDoeSmith") == ["jan", "doe", "smi"]

    def test_uppercase_run_then_lowercase(self):
        """An uppercase run followed by lowercase is one word."""
        assert get_word_starts("ABCdef") == ["abc"]

    def test_short_words_dropped(self):
        assert get_word_starts("al bo cat") == ["cat"]

    def test_digits_break_words(self):
        assert get_word_starts("abc123defg") == ["abc", "def"]

    def test_empty_and_none(self):
        assert get_word_starts(None) == []
        assert get_word_starts("") == []

    def test_appends_to_existing_list(self):
        starts = ["xyz"]
        result = get_word_starts("xyzzy quux", starts)
        assert result is starts
        assert starts == ["xyz", "quu"]


class TestSuffixPairs:
    """Tests for suffix pair encoding."""

    def test_split_comma_joined(self):
        assert split_pairs("og,at") == ["og", "at"]

    def test_split_legacy_unseparated(self):
        assert split_pairs("ogat") == ["og", "at"]

    def test_split_empty(self):
        assert split_pairs("") == []
        assert split_pairs(None) == []

    def test_get_prefixes(self):
        shard = {"abc": "og,at"}
        assert get_prefixes("abc", "d", shard) == ["dog", "dat"]
        assert get_prefixes("missing", "d", shard) is None


class TestIndexAccount:
    """Tests for index_account."""

    def test_groups_by_letter(self, jane):
        account = index_account(jane)

        assert [u.letter for u in account.updates] == ["j", "d"]
        assert account.by_letter["j"].suffixes == "an"
        assert account.by_letter["d"].suffixes == "oe"

    def test_value_includes_display_name(self, jane):
        account = index_account(jane)
        assert account.updates[0].value == ("jane.doe", "Jane Doe")

    def test_value_handle_only(self):
        profile = AccountProfile(short_did="x1", short_handle="dogcat")
        account = index_account(profile)
        assert account.updates[0].value == "dogcat"

    def test_multiple_pairs_same_letter(self):
        profile = AccountProfile(short_did="x1", short_handle="dog.dat", display_name="Dove")
        account = index_account(profile)

        assert len(account.updates) == 1
        assert account.by_letter["d"].suffixes == "og,at,ov"

    def test_no_prefixes(self):
        profile = AccountProfile(short_did="x1", short_handle="a1.b2")
        account = index_account(profile)
        assert account.updates == []
        assert account.by_letter == {}


class TestDiffAccount:
    """Tests for diff_account."""

    def test_new_account_emits_all_letters(self, jane):
        updates = diff_account(jane, {})
        assert [(u.letter, u.suffixes) for u in updates] == [("j", "an"), ("d", "oe")]

    def test_idempotent_on_consistent_shards(self, jane):
        """Indexing an unchanged profile against consistent shards yields nothing."""
        shards = {"j": {"jane1": "an"}, "d": {"jane1": "oe"}}
        assert diff_account(jane, shards) == []

    def test_legacy_encoding_counts_as_unchanged(self):
        profile = AccountProfile(short_did="x1", short_handle="dog.dat")
        shards = {"d": {"x1": "ogat"}}
        assert diff_account(profile, shards) == []

    def test_removal_for_dropped_letter(self):
        """Prior 'j' entry, new profile without 'j' prefixes: one removal, nothing else."""
        profile = AccountProfile(short_did="x1", short_handle="doe")
        shards = {"j": {"x1": "an"}, "d": {"x1": "oe"}}

        updates = diff_account(profile, shards)

        assert len(updates) == 1
        removal = updates[0]
        assert removal.letter == "j"
        assert removal.short_did == "x1"
        assert removal.suffixes == ""
        assert removal.is_removal

    def test_changed_letter_reemitted(self):
        profile = AccountProfile(short_did="x1", short_handle="doe.dan")
        shards = {"d": {"x1": "oe"}}

        updates = diff_account(profile, shards)

        assert len(updates) == 1
        assert updates[0].letter == "d"
        assert updates[0].suffixes == "oe,an"

    def test_other_accounts_untouched(self, jane):
        shards = {"j": {"other": "an"}}
        updates = diff_account(jane, shards)
        assert all(u.short_did == "jane1" for u in updates)
        assert not any(u.is_removal for u in updates)

    @pytest.mark.parametrize("handle", ["a1", "x.y.z"])
    def test_all_letters_removed(self, handle):
        profile = AccountProfile(short_did="x1", short_handle=handle)
        shards = {"a": {"x1": "bc"}, "z": {"x1": "oo"}}

        updates = diff_account(profile, shards)

        assert [(u.letter, u.suffixes) for u in updates] == [("a", ""), ("z", "")]
