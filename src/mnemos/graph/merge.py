"""
Name matchers for fuzzy entity merging.

Both matchers receive names already passed through normalize_name. The
substring matcher is the default and is known to produce false merges
("box" folds into "mailbox").
"""

import re
from typing import Callable

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    return _SPACE_RE.sub(" ", _PUNCT_RE.sub(" ", name.lower())).strip()


def substring_matcher(a: str, b: str) -> bool:
    return bool(a) and bool(b) and (a in b or b in a)


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(previous[j] + 1,
                               current[j - 1] + 1,
                               previous[j - 1] + (ca != cb)))
        previous = current
    return previous[-1]


def edit_distance_matcher(max_ratio: float = 0.2) -> Callable[[str, str], bool]:
    """Matcher accepting names whose edit distance is within max_ratio of the longer name."""
    if not 0.0 <= max_ratio < 1.0:
        raise ValueError("max_ratio must be in [0, 1)")

    def matcher(a: str, b: str) -> bool:
        if not a or not b:
            return False
        return levenshtein(a, b) / max(len(a), len(b)) <= max_ratio

    return matcher
