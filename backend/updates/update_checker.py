"""
Update checker

Runs the periodic sweep over every tracked container:
1. Group containers by repository and current version so each distinct
   (repository, version) pair costs one release fetch
2. Persist newly found candidates and announce them
3. Queue automatic updates for candidates that passed every safety check
"""

import logging
from datetime import datetime, timedelta, timezone
from itertools import groupby
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from database import CandidateVersion, DatabaseManager, GlobalSettings, ManagedContainer, utcnow
from jobs.registry import JobRegistry
from notifications import NotificationService
from updates.github_client import RateLimitedError
from updates.update_planner import PatchSynthesisError, UpdatePlanner
from updates.version_helper import sort_versions
from updates.version_resolver import VersionResolver

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def group_for_check(containers: List[ManagedContainer]) -> List[List[ManagedContainer]]:
    """
    Group tracked containers by effective repository, least recently checked
    repository first, then by current version. Containers without a version
    are not checked.
    """
    by_repo: Dict[str, List[ManagedContainer]] = {}
    for container in containers:
        by_repo.setdefault(container.effective_repo, []).append(container)

    def oldest_check(members: List[ManagedContainer]) -> datetime:
        return min(_as_utc(m.last_version_check) or _EPOCH for m in members)

    groups = []
    for members in sorted(by_repo.values(), key=oldest_check):
        versioned = sorted((m for m in members if m.version), key=lambda m: m.version)
        for _, same_version in groupby(versioned, key=lambda m: m.version):
            groups.append(list(same_version))
    return groups


def is_auto_update_eligible(candidate: CandidateVersion, threshold: datetime) -> bool:
    return (
        not candidate.ignored
        and not candidate.breaking
        and not candidate.ai_breaking
        and not candidate.suspected_malicious
        and _as_utc(candidate.discovered_at) <= threshold
    )


class UpdateChecker:
    """Version check sweep and automatic update selection"""

    def __init__(self, db: DatabaseManager, resolver: VersionResolver, notifier: NotificationService,
                 planner: UpdatePlanner, registry: JobRegistry):
        self.db = db
        self.resolver = resolver
        self.notifier = notifier
        self.planner = planner
        self.registry = registry

    def _tracked_containers(self, session: Session) -> List[ManagedContainer]:
        containers = session.query(ManagedContainer).filter(
            ManagedContainer.is_secondary.is_(False),
            ManagedContainer.ignore_container.is_(False),
        ).order_by(ManagedContainer.id).all()
        return [c for c in containers if c.effective_repo]

    async def _announce(self, session: Session, main: ManagedContainer, others: List[ManagedContainer]) -> bool:
        pending = [c for c in main.candidate_versions if not c.notified and not c.ignored]
        if not pending:
            return False

        ordered = sort_versions([c.version_number for c in pending])
        by_version = {c.version_number: c for c in pending}
        versions = [by_version[v] for v in ordered]

        if not await self.notifier.send_new_versions(main, others, versions):
            logger.warning(f"New versions of {main.name} were not announced, will retry next sweep")
            return False

        for candidate in versions:
            candidate.notified = True
        session.commit()
        return True

    async def check_all_for_updates(self) -> dict:
        """
        Check every tracked container for newer upstream versions.

        A rate limit only abandons the group it hit; other errors are logged
        and the sweep continues with the next group.
        """
        stats = {
            'groups': 0, 'checked': 0, 'new_versions': 0,
            'rate_limited': 0, 'errors': 0, 'auto_updates_queued': 0,
        }

        with self.db.get_session() as session:
            groups = group_for_check(self._tracked_containers(session))
            logger.info(f"Checking {len(groups)} container groups for updates")

            for group in groups:
                main, siblings = group[0], group[1:]
                stats['groups'] += 1
                try:
                    found = await self.resolver.get_newer_versions(session, main, siblings)
                    stats['checked'] += len(group)
                    stats['new_versions'] += len(found)
                    await self._announce(session, main, siblings)
                except RateLimitedError as e:
                    session.rollback()
                    stats['rate_limited'] += 1
                    logger.warning(f"Rate limited while checking {main.effective_repo}: {e}")
                except Exception as e:
                    session.rollback()
                    stats['errors'] += 1
                    logger.error(f"Error checking {main.name} for updates: {e}", exc_info=True)

            stats['auto_updates_queued'] = await self.process_auto_updates(session)

        logger.info(
            f"Update check complete: {stats['groups']} groups, {stats['new_versions']} new versions, "
            f"{stats['rate_limited']} rate limited, {stats['errors']} errors"
        )
        return stats

    async def process_auto_updates(self, session: Session) -> int:
        """Queue automatic updates for eligible candidates. Returns how many were queued."""
        settings = session.query(GlobalSettings).first()
        if not settings or not settings.auto_update_enabled:
            return 0

        threshold = utcnow() - timedelta(hours=settings.auto_update_delay_hours or 0)
        queued = 0

        for container in self._tracked_containers(session):
            eligible = [c for c in container.candidate_versions if is_auto_update_eligible(c, threshold)]
            if not eligible:
                continue

            if (self.registry.get_queued_update_for_container(container.id)
                    or self.registry.get_processing_update_for_container(container.id)):
                logger.debug(f"Update for {container.name} already pending, skipping auto-update")
                continue

            newest_version = sort_versions([c.version_number for c in eligible])[-1]
            target = next(c for c in eligible if c.version_number == newest_version)

            try:
                plan = await self.planner.plan(session, container, target)
            except PatchSynthesisError as e:
                logger.warning(f"Cannot auto-update {container.name} to {target.version_number}: {e}")
                continue

            if not plan.is_actionable:
                logger.info(f"No actionable plan to auto-update {container.name}: {plan.unavailable_reason}")
                continue

            self.registry.mark_for_update(container.id, target.id, target.version_number, is_automatic=True)
            queued += 1
            logger.info(f"Queued automatic update of {container.name} to {target.version_number}")

        return queued
