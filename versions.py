"""Semantic version parsing and selection of upgrade candidates.

Tags are compared under semver precedence when the deployed version is a
semantic version, or can be coerced into one (``v1.2``, ``release-1.2.3``).
Otherwise every other tag published by the registry is a candidate.
"""

import re
import threading
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern, Tuple, Union

from errors import ConfigurationError

_SEMVER = re.compile(
    r'^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)'
    r'(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)'
    r'(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?'
    r'(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$'
)
_COERCE = re.compile(r'(?:^|[^\d])(\d{1,16})(?:\.(\d{1,16}))?(?:\.(\d{1,16}))?(?:$|[^\d])')

TagFilter = Union[str, Pattern, None]


class VersionKind(Enum):
    SEMVER = 'semver'
    COERCED = 'coerced'
    NOT_SEMVER = 'not_semver'


@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()

    @property
    def key(self) -> tuple:
        """Sort key implementing semver precedence (build metadata ignored)."""
        if not self.prerelease:
            return (self.major, self.minor, self.patch, (1,))
        identifiers = tuple(
            (0, int(part), '') if part.isdigit() else (1, 0, part)
            for part in self.prerelease
        )
        return (self.major, self.minor, self.patch, (0, identifiers))


def parse_version(tag: str) -> Optional[Version]:
    """Strictly parse a semantic version, tolerating a leading ``v``."""
    match = _SEMVER.match(tag.strip())
    if not match:
        return None
    major, minor, patch, prerelease, _ = match.groups()
    return Version(int(major), int(minor), int(patch),
                   tuple(prerelease.split('.')) if prerelease else ())


def coerce_version(tag: str) -> Optional[Version]:
    """Extract the first ``major[.minor[.patch]]`` run of digits from a tag."""
    match = _COERCE.search(tag)
    if not match:
        return None
    major, minor, patch = match.groups()
    return Version(int(major), int(minor or 0), int(patch or 0))


def classify_version(tag: str) -> Tuple[Optional[Version], VersionKind]:
    version = parse_version(tag)
    if version is not None:
        return version, VersionKind.SEMVER
    version = coerce_version(tag)
    if version is not None:
        return version, VersionKind.COERCED
    return None, VersionKind.NOT_SEMVER


def is_semver(tag: str) -> bool:
    return classify_version(tag)[1] is not VersionKind.NOT_SEMVER


def _validate_regex(pattern: str, timeout: float = 2.0) -> Pattern:
    """Compile a regex pattern and test it against a short string to detect ReDoS.

    Raises ConfigurationError on invalid pattern or catastrophic backtracking.
    """
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"Invalid regex pattern '{pattern}': {e}")

    test_string = "a" * 100
    outcome = {}

    def _run():
        try:
            compiled.search(test_string)
            outcome['done'] = True
        except Exception as e:
            outcome['error'] = e

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    t.join(timeout=timeout)

    if t.is_alive():
        raise ConfigurationError(
            f"Regex pattern '{pattern}' is too expensive (possible ReDoS). "
            f"Simplify the pattern to avoid catastrophic backtracking."
        )
    if 'error' in outcome:
        raise ConfigurationError(f"Regex pattern '{pattern}' failed test: {outcome['error']}")

    return compiled


@lru_cache(maxsize=256)
def compile_tag_filter(pattern: str) -> Pattern:
    """Compile (once) an include/exclude tag filter."""
    return _validate_regex(pattern)


def _as_pattern(tag_filter: TagFilter) -> Optional[Pattern]:
    if not tag_filter:
        return None
    if isinstance(tag_filter, str):
        return compile_tag_filter(tag_filter)
    return tag_filter


def select_candidates(version: str, tags: Iterable[str],
                      include_tags: TagFilter = None,
                      exclude_tags: TagFilter = None) -> List[str]:
    """Return the tags that count as an upgrade of ``version``.

    For a semver (or coercible) ``version`` this is every semver tag strictly
    greater than it, most recent first. For any other ``version`` it is every
    tag but ``version`` itself, in registry order. In both cases the include
    filter is applied first, then the exclude filter, to the raw tag string.
    """
    include = _as_pattern(include_tags)
    exclude = _as_pattern(exclude_tags)

    filtered = [
        tag for tag in tags
        if (include is None or include.search(tag))
        and (exclude is None or not exclude.search(tag))
    ]

    current, kind = classify_version(version)
    if kind is VersionKind.NOT_SEMVER:
        return [tag for tag in filtered if tag != version]

    greater = []
    for tag in filtered:
        candidate, candidate_kind = classify_version(tag)
        if candidate_kind is VersionKind.NOT_SEMVER:
            continue
        if candidate.key > current.key:
            greater.append((candidate.key, tag))

    # Stable sort keeps registry order between tags of equal precedence
    greater.sort(key=lambda item: item[0], reverse=True)
    return [tag for _, tag in greater]
