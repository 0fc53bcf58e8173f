"""Utility functions for the NoteVault server."""
import re
from typing import List

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def normalize_query(query: str) -> str:
    """Collapse runs of whitespace so equivalent queries share a cache key."""
    return " ".join(query.split())


def tokenize_query(query: str) -> List[str]:
    """Split a free-text query into word tokens, dropping punctuation.

    Duplicates are removed while keeping first-seen order.

    Example:
        >>> tokenize_query("Hello, hello world!")
        ['Hello', 'world']
    """
    seen = set()
    tokens = []
    for token in _TOKEN_PATTERN.findall(query):
        key = token.lower()
        if key not in seen:
            seen.add(key)
            tokens.append(token)
    return tokens
