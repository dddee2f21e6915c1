"""
Unit tests for document identities.

Tests cover:
- Path normalisation
- Identity validation
- Stable keys
"""

import pytest

from splitwiki.errors import InvariantViolation
from splitwiki.ownership.identity import DocumentIdentity, normalize_path


class TestNormalizePath:
    """Tests for normalize_path."""

    def test_spaces_become_underscores(self):
        assert normalize_path("Main Page") == "Main_Page"

    def test_first_letter_upper_cased(self):
        assert normalize_path("foo bar") == "Foo_bar"

    def test_underscore_runs_collapse(self):
        assert normalize_path("  a   b__c ") == "A_b_c"

    def test_colons_are_kept(self):
        """Unknown prefixes stay part of the path."""
        assert normalize_path("Foo:Bar") == "Foo:Bar"

    def test_empty_rejected(self):
        with pytest.raises(InvariantViolation):
            normalize_path("   ")

    @pytest.mark.parametrize("text", ["a#b", "a<b", "a[b]", "a|b", "a{b}", "a\nb"])
    def test_illegal_characters_rejected(self, text):
        with pytest.raises(InvariantViolation):
            normalize_path(text)

    def test_non_string_rejected(self):
        with pytest.raises(InvariantViolation):
            normalize_path(42)


class TestDocumentIdentity:
    """Tests for DocumentIdentity."""

    def test_from_text_normalises(self):
        identity = DocumentIdentity.from_text(0, "main page")
        assert identity == DocumentIdentity(0, "Main_Page")

    def test_non_canonical_path_rejected(self):
        with pytest.raises(InvariantViolation):
            DocumentIdentity(0, "main page")

    def test_bool_namespace_rejected(self):
        with pytest.raises(InvariantViolation):
            DocumentIdentity(True, "Foo")

    def test_key(self):
        identity = DocumentIdentity(110002, "Alice")
        assert identity.key == "110002:Alice"
        assert str(identity) == "110002:Alice"

    def test_hashable(self):
        """Identities work as dict keys."""
        seen = {DocumentIdentity(0, "Foo"): 1}
        assert seen[DocumentIdentity.from_text(0, "foo")] == 1
