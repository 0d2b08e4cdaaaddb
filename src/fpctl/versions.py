"""Maven-style version ordering and range handling.

Artifacts published to Maven repositories rarely follow PEP 440 exactly
(``1.0.0.Final``, ``2.1-SNAPSHOT``). Versions are parsed with ``packaging``
where possible and fall back to a tokenising parser otherwise; both paths
produce the same comparison key so mixed sets sort deterministically.

Qualifier order follows Maven: ``alpha < beta < milestone < rc < snapshot <
(release) < sp``. Unknown qualifiers sort after ``sp`` alphabetically.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import total_ordering

from packaging.version import InvalidVersion, Version

_QUALIFIER_RANK = {
    "alpha": 0,
    "a": 0,
    "beta": 1,
    "b": 1,
    "milestone": 2,
    "m": 2,
    "rc": 3,
    "cr": 3,
    "snapshot": 4,
    "": 5,
    "ga": 5,
    "final": 5,
    "release": 5,
    "sp": 6,
}
_UNKNOWN_RANK = 7

_NUMERIC_PREFIX = re.compile(r"^(\d+(?:\.\d+)*)(.*)$")
_TOKEN_SPLIT = re.compile(r"[.\-_]+")
_ALPHA_NUM = re.compile(r"^([a-z]+)(\d*)$")


def _strip_zeros(parts: Iterable[int]) -> tuple[int, ...]:
    values = list(parts)
    while values and values[-1] == 0:
        values.pop()
    return tuple(values)


def _key_from_pep440(parsed: Version) -> tuple[tuple[int, ...], int, int, str]:
    release = _strip_zeros(parsed.release)
    if parsed.pre is not None:
        phase, number = parsed.pre
        return release, _QUALIFIER_RANK.get(phase, _UNKNOWN_RANK), number, ""
    if parsed.dev is not None:
        return release, _QUALIFIER_RANK["snapshot"], parsed.dev, ""
    if parsed.post is not None:
        return release, _QUALIFIER_RANK["sp"], parsed.post, ""
    local = parsed.local or ""
    return release, _QUALIFIER_RANK[""], 0, local


def _key_from_tokens(text: str) -> tuple[tuple[int, ...], int, int, str]:
    match = _NUMERIC_PREFIX.match(text)
    if match is None:
        return (), _UNKNOWN_RANK, 0, text.lower()
    release = _strip_zeros(int(part) for part in match.group(1).split("."))
    tokens = [token for token in _TOKEN_SPLIT.split(match.group(2).lower()) if token]
    if not tokens:
        return release, _QUALIFIER_RANK[""], 0, ""

    qualifier = tokens[0]
    number = 0
    rest = tokens[1:]
    split = _ALPHA_NUM.match(qualifier)
    if split is not None and split.group(2):
        qualifier, number = split.group(1), int(split.group(2))
    elif rest and rest[0].isdigit():
        number = int(rest[0])
        rest = rest[1:]
    rank = _QUALIFIER_RANK.get(qualifier, _UNKNOWN_RANK)
    extra = "-".join(rest)
    if rank == _UNKNOWN_RANK:
        extra = "-".join([qualifier, *rest])
    return release, rank, number, extra


@total_ordering
class MavenVersion:
    """A comparable artifact version that remembers its original spelling."""

    __slots__ = ("_key", "text")

    def __init__(self, text: str) -> None:
        normalized = str(text).strip()
        if not normalized:
            raise ValueError("Version string must be non-empty.")
        self.text = normalized
        try:
            self._key = _key_from_pep440(Version(normalized))
        except InvalidVersion:
            self._key = _key_from_tokens(normalized)

    @property
    def key(self) -> tuple[tuple[int, ...], int, int, str]:
        """Return the normalised comparison key."""
        return self._key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MavenVersion):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MavenVersion):
            return NotImplemented
        return self._key < other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"MavenVersion({self.text!r})"


@dataclass(frozen=True, slots=True)
class VersionRange:
    """A single Maven version range such as ``[1.0,2.0)``."""

    lower: MavenVersion | None = None
    upper: MavenVersion | None = None
    lower_inclusive: bool = True
    upper_inclusive: bool = False

    @classmethod
    def parse(cls, spec: str) -> VersionRange:
        """Parse Maven range syntax; a bare version means ``[version]``."""
        text = spec.strip()
        if not text:
            raise ValueError("Version range must be non-empty.")
        if text[0] not in "[(":
            exact = MavenVersion(text)
            return cls(exact, exact, True, True)
        if text[-1] not in "])":
            raise ValueError(f"Unterminated version range: {spec!r}")

        lower_inclusive = text[0] == "["
        upper_inclusive = text[-1] == "]"
        body = text[1:-1]
        if "," not in body:
            if not (lower_inclusive and upper_inclusive) or not body.strip():
                raise ValueError(f"Exact version ranges must use brackets: {spec!r}")
            exact = MavenVersion(body)
            return cls(exact, exact, True, True)

        lower_text, upper_text = (part.strip() for part in body.split(",", 1))
        lower = MavenVersion(lower_text) if lower_text else None
        upper = MavenVersion(upper_text) if upper_text else None
        if lower is not None and upper is not None and upper < lower:
            raise ValueError(f"Version range upper bound is below lower bound: {spec!r}")
        return cls(lower, upper, lower_inclusive, upper_inclusive)

    @classmethod
    def at_least(cls, version: str | None) -> VersionRange:
        """Return ``[version,)`` or an unbounded range when *version* is ``None``."""
        if version is None or not version.strip():
            return cls()
        return cls(lower=MavenVersion(version), lower_inclusive=True)

    def contains(self, version: str | MavenVersion) -> bool:
        """Return ``True`` when *version* falls inside the range."""
        candidate = version if isinstance(version, MavenVersion) else MavenVersion(version)
        if self.lower is not None:
            if candidate < self.lower or (candidate == self.lower and not self.lower_inclusive):
                return False
        if self.upper is not None:
            if candidate > self.upper or (candidate == self.upper and not self.upper_inclusive):
                return False
        return True

    def __str__(self) -> str:
        if self.lower is not None and self.lower == self.upper:
            return f"[{self.lower}]"
        left = "[" if self.lower_inclusive else "("
        right = "]" if self.upper_inclusive else ")"
        lower = str(self.lower) if self.lower is not None else ""
        upper = str(self.upper) if self.upper is not None else ""
        return f"{left}{lower},{upper}{right}"


def sort_versions(versions: Iterable[str]) -> list[str]:
    """Return *versions* sorted ascending by Maven ordering (stable for ties)."""
    return sorted(versions, key=lambda value: MavenVersion(value).key)


__all__ = ["MavenVersion", "VersionRange", "sort_versions"]
