"""
Inventory import (full container reset).

Rebuilds the tracked stacks and containers from a scanner snapshot:
repository identity is resolved for every primary container, version
shapes are derived and multi-container applications regrouped.
Operator choices (override repository, ignored containers) survive a reset.
"""

import json
import logging
from typing import Dict, Optional, Protocol, Tuple

import aiofiles
from sqlalchemy.orm import Session

from database import CandidateVersion, ComposeStack, DatabaseManager, ManagedContainer
from models.inventory_models import ContainerSnapshot, InventorySnapshot
from updates.multi_container import rebuild_stack_apps
from updates.repository_resolver import RepositoryResolver, ResolutionResult
from updates.version_helper import build_pattern, split_image

logger = logging.getLogger(__name__)


class InventoryScanner(Protocol):
    async def scan(self) -> InventorySnapshot:
        ...


class JsonInventoryScanner:
    """Reads the snapshot an external scanner wrote as JSON"""

    def __init__(self, path: str):
        self.path = path

    async def scan(self) -> InventorySnapshot:
        async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
            data = json.loads(await f.read())
        return InventorySnapshot.model_validate(data)


def snapshot_version(snapshot: ContainerSnapshot) -> Optional[str]:
    """Version reported by the scanner, falling back to the image tag"""
    if snapshot.version:
        return snapshot.version
    _, tag = split_image(snapshot.image)
    if tag and tag != 'latest':
        return tag
    return None


class InventoryImporter:
    """Replaces the stored inventory with a fresh snapshot"""

    def __init__(self, db: DatabaseManager, resolver: RepositoryResolver):
        self.db = db
        self.resolver = resolver

    def _operator_choices(self, session: Session) -> Dict[Tuple[str, str], Tuple[Optional[str], bool]]:
        choices = {}
        for container in session.query(ManagedContainer).all():
            if container.override_github_repo or container.ignore_container:
                choices[(container.stack.stack_name, container.name)] = (
                    container.override_github_repo, container.ignore_container
                )
        return choices

    async def import_snapshot(self, snapshot: InventorySnapshot) -> dict:
        stats = {'stacks': 0, 'containers': 0, 'resolved': 0, 'rate_limited': False}
        resolutions: Dict[Tuple[str, str, Optional[str]], ResolutionResult] = {}

        with self.db.get_session() as session:
            choices = self._operator_choices(session)

            for stack in session.query(ComposeStack).all():
                session.delete(stack)
            session.flush()
            for orphan in session.query(CandidateVersion).filter(~CandidateVersion.containers.any()).all():
                session.delete(orphan)

            for stack_snapshot in snapshot.stacks:
                stack = ComposeStack(
                    stack_name=stack_snapshot.name,
                    config_file=stack_snapshot.config_file,
                    remote_hosted=stack_snapshot.remote_hosted,
                )
                session.add(stack)
                stats['stacks'] += 1

                for item in stack_snapshot.containers:
                    version = snapshot_version(item)
                    override, ignored = choices.get((stack_snapshot.name, item.name), (None, False))
                    container = ManagedContainer(
                        name=item.name,
                        version=version,
                        target_image=item.image,
                        version_regex=build_pattern(version),
                        is_secondary=item.is_secondary,
                        override_github_repo=override,
                        ignore_container=ignored,
                        stack=stack,
                    )
                    session.add(container)
                    stats['containers'] += 1

                    if item.is_secondary or stats['rate_limited']:
                        continue

                    key = (split_image(item.image)[0], item.raw_metadata, version)
                    if key in resolutions and not override:
                        cached = resolutions[key]
                        if cached.primary:
                            container.github_repo = '/'.join(cached.primary)
                            container.github_version_regex = cached.upstream_pattern
                            container.secondary_github_repos = ['/'.join(k) for k in cached.secondary] or None
                    else:
                        result = await self.resolver.attach(container, item.raw_metadata)
                        # Overridden containers skip resolution, their empty result must not be reused
                        if not override:
                            resolutions[key] = result
                        if result.rate_limited:
                            stats['rate_limited'] = True

                    if container.effective_repo:
                        stats['resolved'] += 1

                session.flush()
                rebuild_stack_apps(session, stack)

            session.commit()

        logger.info(
            f"Imported {stats['containers']} containers in {stats['stacks']} stacks, "
            f"{stats['resolved']} with an upstream repository"
        )
        if stats['rate_limited']:
            logger.warning("GitHub rate limit hit during import, some repositories are unresolved")
        return stats

    async def reset_all(self, scanner: InventoryScanner) -> bool:
        """Scan and import. Returns False when the scanner produced nothing."""
        snapshot = await scanner.scan()
        if not snapshot.stacks:
            logger.warning("Inventory scan returned no stacks, keeping current inventory")
            return False
        await self.import_snapshot(snapshot)
        return True
