"""
Upstream Repository Resolution for Container Images

Finds the GitHub repository whose releases track a deployed image.

Candidates are collected from the container's raw metadata (labels, env
values, anything the scanner serialized):
1. GitHub URLs (https://github.com/owner/repo)
2. GHCR references (ghcr.io/owner/repo)
3. The image reference itself (owner/repo:tag)
4. The packaging repository heuristic (owner/docker-repo, linuxserver style)

Every candidate is probed for releases. Mirrors publishing the identical
release stream are collapsed, the best remaining candidate becomes the
primary repository and the rest are kept as secondary release-note sources.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from database import ManagedContainer
from models.release_models import Release
from updates.github_client import GitHubClient, GitHubError, RateLimitedError
from updates.version_helper import build_pattern, is_same_version, split_image

logger = logging.getLogger(__name__)

GITHUB_URL_PATTERN = re.compile(r'https://github\.com/([a-zA-Z0-9_.-]+)/([a-zA-Z0-9_-]+)')
GHCR_PATTERN = re.compile(r'ghcr\.io/([a-zA-Z0-9_-]+)/([a-zA-Z0-9_-]+)')
IMAGE_PATTERN = re.compile(r'([a-zA-Z0-9_-]+)/([a-zA-Z0-9_-]+):')

# Probing is one API call per candidate, keep it bounded
MAX_CANDIDATES = 8

# Release streams are considered identical when the newest entries match
SAME_STREAM_DEPTH = 5

RepoKey = Tuple[str, str]


@dataclass
class ResolutionResult:
    """Outcome of probing the candidates of one container"""
    primary: Optional[RepoKey] = None
    secondary: List[RepoKey] = field(default_factory=list)
    upstream_pattern: Optional[str] = None
    failed: List[RepoKey] = field(default_factory=list)
    rate_limited: bool = False


def _image_path(image: str) -> List[str]:
    """Image path segments without registry host and tag"""
    repository, _ = split_image(image)
    parts = repository.split('/')
    # Registry prefixes contain '.' or ':' (domain names or domain:port)
    if len(parts) > 1 and ('.' in parts[0] or ':' in parts[0]):
        parts = parts[1:]
    return parts


def candidate_repositories(raw_text: str, image: str) -> List[RepoKey]:
    """
    Ordered, lower-cased, de-duplicated candidate repositories.

    Example:
        >>> candidate_repositories('', 'lscr.io/linuxserver/bazarr:v1.5.3-ls324')
        [('linuxserver', 'bazarr'), ('linuxserver', 'docker-bazarr')]
    """
    found: List[RepoKey] = []

    def add(owner: str, repo: str):
        key = (owner.lower(), repo.lower())
        if key not in found:
            found.append(key)

    for pattern in (GITHUB_URL_PATTERN, GHCR_PATTERN):
        for match in pattern.finditer(raw_text or ''):
            add(match.group(1), match.group(2))

    for match in IMAGE_PATTERN.finditer(image):
        add(match.group(1), match.group(2))

    parts = _image_path(image)
    if len(parts) >= 2:
        owner, repo = parts[-2], parts[-1]
        add(owner, repo)
        if not repo.lower().startswith('docker-'):
            add(owner, f'docker-{repo}')

    return found[:MAX_CANDIDATES]


def same_release_stream(left: List[Release], right: List[Release]) -> bool:
    """Two non-empty streams with the same length and the same newest releases"""
    if len(left) != len(right) or not left:
        return False
    depth = min(SAME_STREAM_DEPTH, len(left))
    return all(left[i].id == right[i].id for i in range(depth))


def deduplicate_repositories(streams: Dict[RepoKey, List[Release]]) -> Dict[RepoKey, List[Release]]:
    """
    Collapse candidates publishing the identical release stream.

    The packaging mirror name (docker- prefixed, then the longer name) is
    kept as canonical. Insertion order of the first member of each group is
    preserved.
    """
    result: Dict[RepoKey, List[Release]] = {}
    processed = set()

    for key, releases in streams.items():
        if key in processed:
            continue

        duplicates = [
            other for other, other_releases in streams.items()
            if other not in processed and (other == key or same_release_stream(releases, other_releases))
        ]

        canonical = sorted(
            duplicates,
            key=lambda repo: (repo[1].startswith('docker-'), len(repo[1])),
            reverse=True,
        )[0]

        result[canonical] = releases
        processed.update(duplicates)

    return result


def choose_primary(streams: Dict[RepoKey, List[Release]], current_version: Optional[str]) -> RepoKey:
    """
    Prefer the stream containing the current version, then the longest
    stream, then the earliest candidate.
    """
    def contains_current(releases: List[Release]) -> bool:
        if not current_version:
            return False
        return any(is_same_version(current_version, release.tag_name) for release in releases)

    ordered = list(streams.items())
    best_index = max(
        range(len(ordered)),
        key=lambda i: (contains_current(ordered[i][1]), len(ordered[i][1]), -i),
    )
    return ordered[best_index][0]


def upstream_pattern_for(releases: List[Release], current_version: Optional[str]) -> Optional[str]:
    """Tag shape of the release matching the current version, else of the newest release"""
    if not releases:
        return None
    if current_version:
        for release in releases:
            if is_same_version(current_version, release.tag_name):
                return build_pattern(release.tag_name)
    return build_pattern(releases[0].tag_name)


class RepositoryResolver:
    """Attaches upstream repository identity to containers"""

    def __init__(self, github: GitHubClient):
        self.github = github

    async def try_attach(self, owner: str, repo: str) -> Optional[List[Release]]:
        """
        Probe one candidate. Returns its releases, or None when the
        repository is missing or has no releases.

        RateLimitedError propagates so the caller can stop probing.
        """
        try:
            releases = await self.github.list_releases(owner, repo)
        except RateLimitedError:
            raise
        except GitHubError as e:
            logger.info(f"Failed to get releases for candidate {owner}/{repo}: {e}")
            return None

        if not releases:
            logger.debug(f"Candidate {owner}/{repo} has no releases")
            return None
        return releases

    async def resolve(self, raw_text: str, image: str, current_version: Optional[str]) -> ResolutionResult:
        result = ResolutionResult()
        streams: Dict[RepoKey, List[Release]] = {}

        for owner, repo in candidate_repositories(raw_text, image):
            try:
                releases = await self.try_attach(owner, repo)
            except RateLimitedError as e:
                logger.warning(
                    f"Rate limit {e.limit} hit while resolving {image}, "
                    f"skipping remaining candidates until {e.reset_at}"
                )
                result.rate_limited = True
                break

            if releases is None:
                result.failed.append((owner, repo))
            else:
                streams[(owner, repo)] = releases

        if not streams:
            return result

        deduplicated = deduplicate_repositories(streams)
        primary = choose_primary(deduplicated, current_version)

        result.primary = primary
        result.secondary = [key for key in deduplicated if key != primary]
        result.upstream_pattern = upstream_pattern_for(deduplicated[primary], current_version)
        return result

    async def attach(self, container: ManagedContainer, raw_text: str) -> ResolutionResult:
        """
        Resolve and store repository identity on the container.

        Containers with an operator override are left untouched.
        """
        if container.override_github_repo:
            logger.debug(f"{container.name} uses override repository {container.override_github_repo}")
            return ResolutionResult()

        result = await self.resolve(raw_text, container.target_image, container.version)

        if result.primary:
            container.github_repo = '/'.join(result.primary)
            container.github_version_regex = result.upstream_pattern
            container.secondary_github_repos = ['/'.join(key) for key in result.secondary] or None
            logger.info(f"Resolved {container.name} to {container.github_repo}")
        else:
            logger.info(f"No upstream repository found for {container.name} ({container.target_image})")

        return result
