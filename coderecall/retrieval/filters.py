"""Filter evaluation for filtered loads.

Filters combine with AND semantics; omitted predicates impose no constraint.
The file_pattern predicate is a caller-supplied regular expression, so it is
checked for length and nested quantifiers before it is ever matched.
"""

import functools
import re
from collections.abc import Iterable, Mapping
from typing import Any

from coderecall.errors import InvalidFilterError
from coderecall.models.embedding import CodeEmbedding, SearchFilters

_MAX_PATTERN_LENGTH = 256

_COUNTED_REPEAT = re.compile(r"\{\d+(?:,\d*)?\}|\{,\d+\}")


def _repeat_length(pattern: str, i: int) -> int:
    """Length of the quantifier starting at pattern[i], or 0."""
    if i >= len(pattern):
        return 0
    if pattern[i] in "+*?":
        return 1
    match = _COUNTED_REPEAT.match(pattern, i)
    return len(match.group()) if match else 0


def _skip_class(pattern: str, i: int) -> int:
    """Index just past the character class that opens at pattern[i]."""
    j = i + 1
    if j < len(pattern) and pattern[j] == "^":
        j += 1
    if j < len(pattern) and pattern[j] == "]":
        j += 1
    while j < len(pattern) and pattern[j] != "]":
        j += 2 if pattern[j] == "\\" else 1
    return j + 1


def _has_nested_repetition(pattern: str) -> bool:
    """Check for a repeated group whose body can itself vary in length.

    A group repeated with +, * or {m,n} is rejected when anything inside it
    (at any depth) carries a quantifier or an alternation: (a+)+, ((a+))+,
    (\\w+\\s?)+ and (a|aa)+ all qualify. Escapes and character classes are
    skipped. A trailing ? on a group is optional-once and is allowed.
    """
    # One flag per open group: does its body vary in length?
    open_groups: list[bool] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            i += 2
        elif ch == "[":
            i = _skip_class(pattern, i)
        elif ch == "(":
            open_groups.append(False)
            i += 1
            # (?:, (?P<name>, (?= ... the ? here is not a quantifier
            if i < len(pattern) and pattern[i] == "?":
                i += 1
        elif ch == ")" and open_groups:
            varies = open_groups.pop()
            i += 1
            repeat = _repeat_length(pattern, i)
            if varies and repeat and pattern[i] != "?":
                return True
            if open_groups and (varies or repeat):
                open_groups[-1] = True
            i += repeat
        else:
            if open_groups and (ch == "|" or _repeat_length(pattern, i)):
                open_groups[-1] = True
            i += 1
    return False


@functools.lru_cache(maxsize=128)
def compile_file_pattern(pattern: str) -> re.Pattern[str]:
    """Validate and compile a file_pattern filter.

    Args:
        pattern: Regular expression searched against record source paths.

    Returns:
        Compiled pattern (memoized).

    Raises:
        InvalidFilterError: If the pattern is too long, has nested
            quantifiers, or does not compile.
    """
    if len(pattern) > _MAX_PATTERN_LENGTH:
        raise InvalidFilterError(
            f"file_pattern is too long ({len(pattern)} > {_MAX_PATTERN_LENGTH} characters)"
        )
    if _has_nested_repetition(pattern):
        raise InvalidFilterError(
            f"file_pattern {pattern!r} has nested quantifiers and could backtrack catastrophically"
        )
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidFilterError(f"Invalid file_pattern {pattern!r}: {e}") from e


def coerce_filters(filters: SearchFilters | Mapping[str, Any] | None) -> SearchFilters | None:
    """Accept a SearchFilters model or a plain mapping (unknown keys ignored)."""
    if filters is None or isinstance(filters, SearchFilters):
        return filters
    return SearchFilters.model_validate(dict(filters))


def matches_filters(
    record: CodeEmbedding,
    filters: SearchFilters,
    pattern: re.Pattern[str] | None = None,
) -> bool:
    """Check one record against every provided predicate."""
    meta = record.metadata

    if filters.language is not None and meta.language != filters.language:
        return False
    if filters.type is not None and record.type != filters.type:
        return False
    if pattern is not None and not pattern.search(record.source):
        return False
    if filters.min_complexity is not None and meta.complexity < filters.min_complexity:
        return False
    if filters.max_complexity is not None and meta.complexity > filters.max_complexity:
        return False
    if filters.tags and not set(filters.tags).issubset(meta.tags):
        return False
    return True


def apply_filters(
    records: Iterable[CodeEmbedding],
    filters: SearchFilters | Mapping[str, Any] | None,
) -> list[CodeEmbedding]:
    """Return the records that satisfy all provided filters, in order.

    Raises:
        InvalidFilterError: If file_pattern is rejected.
    """
    parsed = coerce_filters(filters)
    if parsed is None:
        return list(records)

    pattern = compile_file_pattern(parsed.file_pattern) if parsed.file_pattern else None
    return [r for r in records if matches_filters(r, parsed, pattern)]
