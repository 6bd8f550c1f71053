"""
Version ordering and tag pattern synthesis.

Upstream projects tag releases in wildly different ways (v1.2.3, 1.2.3-alpine,
n8n@1.119.2, 1.5.3-ls325). Rather than parsing semver, versions are reduced
to the ordered list of their digit runs and compared segment by segment.
Two versions with a different number of digit runs are not comparable:
neither is newer than the other.

Patterns built here describe the *shape* of a tag so that a container's
current version can be matched against upstream release tags with the same
convention.
"""

import re
from functools import cmp_to_key
from typing import Iterable, List, Optional, Tuple

_DIGIT_RUN = re.compile(r"\d+")
_TOKEN = re.compile(r"\d+|\D+")
_REVISION_SUFFIX = re.compile(r"(r|ls)(\d+)")


def _strip_qualifiers(version: str) -> str:
    """Drop a product qualifier (name@) and a leading v"""
    value = version.strip()
    if '@' in value:
        value = value.rsplit('@', 1)[1]
    if value.startswith('v'):
        value = value[1:]
    return value


def version_segments(version: str) -> List[int]:
    """Every maximal run of digits in the version, in order"""
    return [int(run) for run in _DIGIT_RUN.findall(_strip_qualifiers(version))]


def compare(a: str, b: str) -> int:
    """
    Compare two version strings.

    Returns 1 if a is newer, -1 if b is newer and 0 when they are equal
    or not comparable (different number of numeric segments).
    """
    left = version_segments(a)
    right = version_segments(b)

    if len(left) != len(right):
        return 0

    for x, y in zip(left, right):
        if x > y:
            return 1
        if x < y:
            return -1
    return 0


def is_newer(candidate: str, baseline: str) -> bool:
    """True when candidate is strictly newer than baseline"""
    return compare(candidate, baseline) > 0


def is_same_version(a: str, b: str) -> bool:
    """True when both versions have identical numeric segments"""
    left = version_segments(a)
    right = version_segments(b)
    return len(left) == len(right) and left == right


def sort_versions(versions: Iterable[str], reverse: bool = False) -> List[str]:
    return sorted(versions, key=cmp_to_key(compare), reverse=reverse)


def newest_version(versions: Iterable[str]) -> Optional[str]:
    ordered = sort_versions(versions, reverse=True)
    return ordered[0] if ordered else None


def _segment_pattern(segment: str) -> str:
    # Digit runs become \d+, anything else is kept literally
    return ''.join(
        r'\d+' if token.isdigit() else re.escape(token)
        for token in _TOKEN.findall(segment)
    )


def build_pattern(version: Optional[str]) -> Optional[str]:
    """
    Build an anchored regex describing the shape of a version literal.

    v1.2.3        -> ^v\\d+\\.\\d+\\.\\d+$
    1.5.3-ls325   -> ^\\d+\\.\\d+\\.\\d+-ls\\d+$
    0.15.4-alpine -> ^\\d+\\.\\d+\\.\\d+-alpine$
    """
    if not version:
        return None

    remainder = version.strip()
    pattern = '^'

    if '@' in remainder:
        qualifier, remainder = remainder.rsplit('@', 1)
        pattern += re.escape(qualifier + '@')

    if remainder.startswith('v'):
        pattern += 'v'
        remainder = remainder[1:]

    main, *suffixes = remainder.split('-')
    pattern += r'\.'.join(_segment_pattern(segment) for segment in main.split('.'))

    for suffix in suffixes:
        revision = _REVISION_SUFFIX.fullmatch(suffix)
        if revision:
            pattern += f'-{revision.group(1)}' + r'\d+'
        elif suffix.isdigit():
            pattern += r'-\d+'
        else:
            pattern += '-' + re.escape(suffix)

    return pattern + '$'


def compile_pattern(version: str) -> Optional[re.Pattern]:
    pattern = build_pattern(version)
    return re.compile(pattern) if pattern else None


def matches_pattern(pattern: Optional[str], value: Optional[str]) -> bool:
    """True when value fully matches the (anchored) pattern"""
    if not pattern or not value:
        return False
    return re.fullmatch(pattern, value) is not None


def pattern_body(pattern: str) -> str:
    """Pattern without anchors or the v literal, for searching inside a longer string"""
    body = pattern[1:] if pattern.startswith('^') else pattern
    # The v literal is followed by a digit class or an escaped literal
    if re.match(r'v(?=\\|\d)', body):
        body = body[1:]
    return body[:-1] if body.endswith('$') else body


def split_image(image: str) -> Tuple[str, Optional[str]]:
    """
    Split an image reference into (repository, tag).

    Registry ports are kept with the repository: registry:5000/app:1.0
    yields ("registry:5000/app", "1.0").
    """
    reference = image.split('@sha256:', 1)[0]
    slash = reference.rfind('/')
    colon = reference.rfind(':')
    if colon > slash:
        return reference[:colon], reference[colon + 1:]
    return reference, None
