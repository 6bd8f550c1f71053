"""
Newer release resolution for a tracked container.

For one representative container (and the siblings that share its
repository and current version) this fetches upstream releases, keeps the
ones that follow the container's tag convention and are newer than what is
deployed, folds in release notes from secondary repositories, runs the
analysis pipeline and persists the resulting candidate versions.
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from database import CandidateVersion, GlobalSettings, ManagedContainer, utcnow
from models.release_models import Release
from updates.github_client import GitHubClient, GitHubError, RateLimitedError
from updates.release_analyzer import ReleaseAnalyzer, detect_breaking
from updates.repository_resolver import upstream_pattern_for
from updates.version_helper import is_newer, is_same_version, matches_pattern, sort_versions

logger = logging.getLogger(__name__)


def release_version(release: Release, pattern: Optional[str]) -> Optional[str]:
    """Version string of a release following the pattern (tag first, then title)"""
    if matches_pattern(pattern, release.tag_name):
        return release.tag_name
    if matches_pattern(pattern, release.name):
        return release.name
    return None


def newer_releases(releases: Sequence[Release], pattern: Optional[str], current_version: str) -> Dict[str, Release]:
    """Releases newer than current_version keyed by version, in ascending order"""
    found: Dict[str, Release] = {}
    for release in releases:
        version = release_version(release, pattern)
        if version is None or version in found:
            continue
        if is_newer(version, current_version):
            found[version] = release
    return {version: found[version] for version in sort_versions(found)}


def assign_secondary_notes(candidates: List[str], secondary: Sequence[Release], current_version: str) -> Dict[str, List[Release]]:
    """
    Map each secondary release onto the earliest candidate covering it.

    A secondary release is eligible for a candidate when it is newer than the
    current version and not newer than the candidate. Candidates must be in
    ascending order.
    """
    notes: Dict[str, List[Release]] = {candidate: [] for candidate in candidates}
    for release in secondary:
        if not is_newer(release.tag_name, current_version):
            continue
        for candidate in candidates:
            if not is_newer(release.tag_name, candidate):
                notes[candidate].append(release)
                break
    return notes


def _format_secondary_note(repo: str, release: Release) -> str:
    body = release.body or ''
    return f"\n\n---\n### {repo} {release.display_name}\n{body}".rstrip()


class VersionResolver:
    """Resolves and persists candidate versions"""

    def __init__(self, github: GitHubClient, analyzer: ReleaseAnalyzer):
        self.github = github
        self.analyzer = analyzer

    async def _secondary_notes(self, container: ManagedContainer, candidates: List[str]) -> Dict[str, str]:
        appended = {candidate: '' for candidate in candidates}
        for repo in container.secondary_github_repos or []:
            if '/' not in repo:
                continue
            owner, name = repo.split('/', 1)
            try:
                releases = await self.github.list_releases(owner, name)
            except RateLimitedError:
                raise
            except GitHubError as e:
                logger.warning(f"Could not fetch secondary releases from {repo}: {e}")
                continue

            # Oldest first so notes read chronologically
            ordered = sorted(releases, key=lambda r: r.published_at.timestamp() if r.published_at else 0)
            for candidate, notes in assign_secondary_notes(candidates, ordered, container.version).items():
                for release in notes:
                    appended[candidate] += _format_secondary_note(repo, release)
        return appended

    async def _security_analysis(self, container: ManagedContainer, releases: Sequence[Release], target_tag: str):
        owner, name = container.repo_parts
        base = next((r.tag_name for r in releases if is_same_version(container.version, r.tag_name)), None)
        if base is None:
            logger.debug(f"No release matching {container.version} in {owner}/{name}, skipping security analysis")
            return None

        try:
            diff = await self.github.compare_commits(owner, name, base, target_tag)
        except RateLimitedError:
            raise
        except GitHubError as e:
            logger.warning(f"Could not compare {base}...{target_tag} in {owner}/{name}: {e}")
            return None

        return await self.analyzer.analyze_diff(diff)

    async def get_newer_versions(self, session: Session, container: ManagedContainer,
                                 siblings: Sequence[ManagedContainer] = ()) -> List[CandidateVersion]:
        """
        Find, analyze and persist releases newer than the container's version.

        New candidates are attached to the container and to every sibling.
        Every member of the group gets last_version_check stamped.

        Raises:
            RateLimitedError: GitHub quota exhausted, nothing is persisted
        """
        repo_parts = container.repo_parts
        if repo_parts is None or not container.version:
            logger.debug(f"{container.name} has no repository or version, nothing to resolve")
            return []

        owner, name = repo_parts
        releases = await self.github.list_releases(owner, name)

        if not container.github_version_regex:
            container.github_version_regex = upstream_pattern_for(releases, container.version)

        newer = newer_releases(releases, container.github_version_regex, container.version)
        known = {candidate.version_number for candidate in container.candidate_versions}
        fresh = {version: release for version, release in newer.items() if version not in known}

        new_candidates: List[CandidateVersion] = []

        if fresh:
            logger.info(f"Found {len(fresh)} new versions for {container.name} in {owner}/{name}")
            notes = await self._secondary_notes(container, list(fresh))

            settings = session.query(GlobalSettings).first()
            scan = bool(settings and settings.security_scanning_enabled) and self.analyzer.is_ready()

            for version, release in fresh.items():
                body = (release.body or '') + notes.get(version, '')
                candidate = CandidateVersion(
                    version_number=version,
                    name=release.name,
                    body=body or None,
                    prerelease=release.prerelease,
                    breaking=detect_breaking(body),
                    discovered_at=utcnow(),
                )

                if scan:
                    analysis = await self._security_analysis(container, releases, release.tag_name)
                    if analysis is not None:
                        candidate.security_analysis = analysis.analysis
                        candidate.suspected_malicious = analysis.suspected_malicious
                        if analysis.suspected_malicious:
                            logger.warning(f"{owner}/{name} {version} flagged as suspicious by security analysis")

                summary = await self.analyzer.summarize(body)
                if summary is not None:
                    candidate.ai_summary = summary.summary
                    candidate.ai_breaking = summary.breaking

                session.add(candidate)
                container.candidate_versions.append(candidate)
                for sibling in siblings:
                    if all(existing.version_number != version for existing in sibling.candidate_versions):
                        sibling.candidate_versions.append(candidate)
                new_candidates.append(candidate)

        checked_at = utcnow()
        for member in [container, *siblings]:
            member.last_version_check = checked_at

        session.commit()
        return new_candidates
