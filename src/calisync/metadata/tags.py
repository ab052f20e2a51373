# ABOUTME: Canonicalization of free-text subject tags before they reach calibre.
# ABOUTME: Splits legacy "--" lists, merges parentheticals, and fixes capitalization.

import re
from collections.abc import Iterable

# Words kept lower-case unless they open or close a tag.
_LOWER_CASE_WORDS = frozenset(
    {
        "a",
        "for",
        "of",
        "on",
        "and",
        "in",
        "the",
        "it",
        "it's",
        "as",
        "to",
        "ca.",
        "into",
    }
)

# Older books pack several subjects into one with "--" between them.
_LEGACY_SEPARATOR = "--"

# Commas separate tags on the calibredb command line.
_COMMA_PLACEHOLDER = ";"

_AND_RE = re.compile(r" and ", re.IGNORECASE)


def _capitalize_first(word: str) -> str:
    """Upper-case the first letter only; the rest is left as written."""
    return word[:1].upper() + word[1:]


def proper_case(text: str, separator: str = " ") -> str:
    """Title-case a phrase, keeping stop words lower-case mid-phrase.

    The first and last words are always capitalized. Hyphenated words are
    cased part by part, so "jack-in-the-box" becomes "Jack-in-the-Box".
    """
    words = [word.strip() for word in text.strip().split(separator)]
    last = len(words) - 1
    cased: list[str] = []
    for index, word in enumerate(words):
        if 0 < index < last and word.lower() in _LOWER_CASE_WORDS:
            cased.append(word.lower())
        elif "-" in word:
            cased.append(proper_case(word, "-"))
        else:
            cased.append(_capitalize_first(word))
    return separator.join(cased)


def canonical_case(tag: str) -> str:
    """Canonical capitalization for one tag.

    Only the part before the first "(" is re-cased; a trailing
    parenthetical such as "(Fictitious character)" is kept verbatim.
    " and " becomes " & ".
    """
    name, paren, rest = tag.partition("(")
    cased = _AND_RE.sub(" & ", proper_case(name.rstrip())) if name.strip() else ""
    if not paren:
        return cased
    qualifier = paren + rest
    return f"{cased} {qualifier}" if cased else qualifier


def split_legacy(tags: Iterable[str]) -> list[str]:
    """Split "--" packed tags and merge parentheticals into the tag before them.

    The merge is a single left-to-right pass: "(" tags only ever attach to
    the immediately preceding output tag.
    """
    parts = [
        part.strip()
        for tag in tags
        for part in tag.split(_LEGACY_SEPARATOR)
        if part.strip()
    ]
    merged: list[str] = []
    for part in parts:
        if part.startswith("(") and merged:
            merged[-1] = f"{merged[-1]} {part}"
        else:
            merged.append(part)
    return merged


def sanitise_tags(tags: Iterable[str]) -> list[str]:
    """Canonicalize tags for calibre, keeping first-seen order.

    Sanitising an already sanitised list returns it unchanged.
    """
    seen: set[str] = set()
    result: list[str] = []
    for tag in split_legacy(tags):
        cleaned = sanitise_list_item(tag.replace('"', ""))
        cleaned = canonical_case(cleaned)
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def sanitise_list_item(text: str) -> str:
    """Make one value safe inside a comma-joined calibredb list."""
    return text.replace(",", _COMMA_PLACEHOLDER).strip()


def tag_key(tags: Iterable[str]) -> str:
    """Order-insensitive comparison key for a tag list."""
    return ",".join(sorted(tags))
