"""
Branch glob patterns compiled to regular expressions.

`*` matches within one path segment, `**` matches across segments,
`?` matches one non-separator character. A leading `!` turns the
pattern into an exclusion.
"""

import re
from typing import Iterable, List, Pattern, Tuple

def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile a single branch glob into an anchored regex."""
    if not pattern:
        raise ValueError("Branch pattern must not be empty")

    parts: List[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern[i:i + 2] == "**":
                parts.append(".*")
                i += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1

    return re.compile("".join(parts) + r"\Z")

class BranchFilter:
    """Include/exclude branch filter. An empty include list admits every branch."""

    def __init__(self, include: Iterable[str] = (), exclude: Iterable[str] = ()):
        self.include: Tuple[str, ...] = tuple(include)
        self.exclude: Tuple[str, ...] = tuple(exclude)
        self._include = [compile_pattern(p) for p in self.include]
        self._exclude = [compile_pattern(p) for p in self.exclude]

    @classmethod
    def from_patterns(cls, patterns: Iterable[str]) -> "BranchFilter":
        include, exclude = [], []
        for pattern in patterns:
            if pattern.startswith("!"):
                exclude.append(pattern[1:])
            else:
                include.append(pattern)
        return cls(include, exclude)

    def matches(self, branch: str) -> bool:
        if any(p.match(branch) for p in self._exclude):
            return False
        if not self._include:
            return True
        return any(p.match(branch) for p in self._include)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BranchFilter):
            return NotImplemented
        return self.include == other.include and self.exclude == other.exclude

    def __hash__(self) -> int:
        return hash((self.include, self.exclude))

    def __repr__(self) -> str:
        return f"BranchFilter(include={list(self.include)}, exclude={list(self.exclude)})"

ANY_BRANCH = BranchFilter()
