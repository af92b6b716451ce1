"""Tests for the inflection helpers."""

from __future__ import annotations

import pytest

from relkit import naming


class TestPluralize:
    """Test pluralize()."""

    @pytest.mark.parametrize(
        ("word", "expected"),
        [
            ("tag", "tags"),
            ("category", "categories"),
            ("box", "boxes"),
            ("person", "people"),
            ("Person", "People"),
            ("PostTag", "PostTags"),
            ("status", "statuses"),
            ("news", "news"),
            ("wife", "wives"),
            ("axis", "axes"),
            ("ox", "oxen"),
        ],
    )
    def test_pluralize(self, word: str, expected: str) -> None:
        """Only the last word is inflected, keeping its case."""
        assert naming.pluralize(word) == expected


class TestSingularize:
    """Test singularize()."""

    @pytest.mark.parametrize(
        ("word", "expected"),
        [
            ("tags", "tag"),
            ("Categories", "Category"),
            ("followers", "follower"),
            ("people", "person"),
            ("statuses", "status"),
            ("user_roles", "user_role"),
            ("Movies", "Movie"),
            ("Wives", "Wife"),
            ("objectives", "objective"),
            ("databases", "database"),
            ("sizes", "size"),
            ("analyses", "analysis"),
            ("moves", "move"),
        ],
    )
    def test_singularize(self, word: str, expected: str) -> None:
        """Plural forms map back to their singular."""
        assert naming.singularize(word) == expected


class TestCaseConversion:
    """Test underscore() and camelize()."""

    def test_underscore(self) -> None:
        """CamelCase becomes snake_case."""
        assert naming.underscore("PostTag") == "post_tag"
        assert naming.underscore("HTTPRequest") == "http_request"

    def test_camelize(self) -> None:
        """snake_case becomes camelCase, first character untouched."""
        assert naming.camelize("post_id") == "postId"
        assert naming.camelize("Post_id") == "PostId"

    def test_conditional_helpers(self) -> None:
        """The *_if helpers only convert when the condition holds."""
        assert naming.underscored_if("PostTag", False) == "PostTag"
        assert naming.camelize_if("post_id", False) == "post_id"


class TestCombineTableNames:
    """Test combine_table_names()."""

    def test_lexical_order(self) -> None:
        """Names are ordered case-insensitively regardless of argument order."""
        assert naming.combine_table_names("tags", "posts") == "poststags"
        assert naming.combine_table_names("posts", "tags") == "poststags"
