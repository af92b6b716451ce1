"""Inflection helpers used to derive table, key and accessor names."""

from __future__ import annotations

import re

_IRREGULAR = {
    "person": "people",
    "man": "men",
    "woman": "women",
    "child": "children",
    "tooth": "teeth",
    "foot": "feet",
    "mouse": "mice",
    "louse": "lice",
    "goose": "geese",
    "ox": "oxen",
    "sex": "sexes",
    "move": "moves",
    "zombie": "zombies",
}
_IRREGULAR_SINGULAR = {plural: singular for singular, plural in _IRREGULAR.items()}

_UNCOUNTABLE = frozenset(
    {
        "equipment",
        "information",
        "rice",
        "money",
        "species",
        "series",
        "fish",
        "sheep",
        "jeans",
        "police",
        "data",
        "news",
    }
)

# First match wins.
_PLURAL_RULES = [
    (re.compile(r"(quiz)$", re.I), r"\1zes"),
    (re.compile(r"(matr|vert|ind)(?:ix|ex)$", re.I), r"\1ices"),
    (re.compile(r"(x|ch|ss|sh|z)$", re.I), r"\1es"),
    (re.compile(r"([^aeiouy]|qu)y$", re.I), r"\1ies"),
    (re.compile(r"(hive)$", re.I), r"\1s"),
    (re.compile(r"(?:([^f])fe|([lr])f)$", re.I), r"\1\2ves"),
    (re.compile(r"^(ax|test)is$", re.I), r"\1es"),
    (re.compile(r"sis$", re.I), "ses"),
    (re.compile(r"([ti])a$", re.I), r"\1a"),
    (re.compile(r"([ti])um$", re.I), r"\1a"),
    (re.compile(r"(buffal|tomat|potat)o$", re.I), r"\1oes"),
    (re.compile(r"(alias|status|bus)$", re.I), r"\1es"),
    (re.compile(r"(octop|vir)(?:us|i)$", re.I), r"\1i"),
    (re.compile(r"s$", re.I), "s"),
    (re.compile(r"$"), "s"),
]

_SINGULAR_RULES = [
    (re.compile(r"(database)s$", re.I), r"\1"),
    (re.compile(r"(quiz)zes$", re.I), r"\1"),
    (re.compile(r"(matr)ices$", re.I), r"\1ix"),
    (re.compile(r"(vert|ind)ices$", re.I), r"\1ex"),
    (re.compile(r"(alias|status)(?:es)?$", re.I), r"\1"),
    (re.compile(r"(octop|vir)(?:us|i)$", re.I), r"\1us"),
    (re.compile(r"^(a)x[ie]s$", re.I), r"\1xis"),
    (re.compile(r"(cris|test)(?:is|es)$", re.I), r"\1is"),
    (re.compile(r"(shoe)s$", re.I), r"\1"),
    (re.compile(r"(o)es$", re.I), r"\1"),
    (re.compile(r"(bus)(?:es)?$", re.I), r"\1"),
    (re.compile(r"(x|ch|ss|sh)es$", re.I), r"\1"),
    (re.compile(r"(m)ovies$", re.I), r"\1ovie"),
    (re.compile(r"([^aeiouy]|qu)ies$", re.I), r"\1y"),
    (re.compile(r"([lr])ves$", re.I), r"\1f"),
    (re.compile(r"(tive|hive)s$", re.I), r"\1"),
    (re.compile(r"([^f])ves$", re.I), r"\1fe"),
    (re.compile(r"(analy|ba|diagno|parenthe|progno|synop|the)(?:sis|ses)$", re.I), r"\1sis"),
    (re.compile(r"([ti])a$", re.I), r"\1um"),
    (re.compile(r"(ss|us|is)$", re.I), r"\1"),
    (re.compile(r"s$", re.I), ""),
]


def _match_case(source: str, word: str) -> str:
    if source[:1].isupper():
        return word[:1].upper() + word[1:]
    return word


def _split_last_word(word: str) -> tuple[str, str]:
    """Split "UserRole" into ("User", "Role") and "user_role" into ("user_", "role")."""
    match = re.search(r"([A-Z]?[a-z0-9]+|[A-Z]+)$", word)
    if not match:
        return "", word
    return word[: match.start()], match.group(0)


def pluralize(word: str) -> str:
    """Return the plural form of ``word``, inflecting only its last word.

    Example:
        >>> pluralize("PostTag")
        'PostTags'
        >>> pluralize("category")
        'categories'
    """
    head, last = _split_last_word(word)
    lower = last.lower()
    if not lower or lower in _UNCOUNTABLE:
        return word
    if lower in _IRREGULAR:
        return head + _match_case(last, _IRREGULAR[lower])
    if lower in _IRREGULAR_SINGULAR:
        return word
    for pattern, replacement in _PLURAL_RULES:
        if pattern.search(last):
            return head + pattern.sub(replacement, last, count=1)
    return word


def singularize(word: str) -> str:
    """Return the singular form of ``word``, inflecting only its last word.

    Example:
        >>> singularize("followers")
        'follower'
        >>> singularize("Categories")
        'Category'
    """
    head, last = _split_last_word(word)
    lower = last.lower()
    if not lower or lower in _UNCOUNTABLE:
        return word
    if lower in _IRREGULAR_SINGULAR:
        return head + _match_case(last, _IRREGULAR_SINGULAR[lower])
    if lower in _IRREGULAR:
        return word
    for pattern, replacement in _SINGULAR_RULES:
        if pattern.search(last):
            return head + pattern.sub(replacement, last, count=1)
    return word


def underscore(word: str) -> str:
    """Convert CamelCase or camelCase to snake_case."""
    word = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", word)
    word = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", word)
    return word.replace("-", "_").lower()


def camelize(word: str) -> str:
    """Convert snake_case to camelCase, keeping the first character as given."""
    return re.sub(r"_+([a-zA-Z0-9])", lambda m: m.group(1).upper(), word)


def uppercase_first(word: str) -> str:
    return word[:1].upper() + word[1:]


def underscored_if(word: str, condition: bool) -> str:
    return underscore(word) if condition else word


def camelize_if(word: str, condition: bool) -> str:
    return camelize(word) if condition else word


def combine_table_names(table1: str, table2: str) -> str:
    """Name a join table after two tables, ordered lexically."""
    if table1.lower() < table2.lower():
        return table1 + table2
    return table2 + table1
