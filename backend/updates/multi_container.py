"""
Multi-container application detection.

Groups the containers of one stack into logical applications:
1. Containers sharing the name prefix before the first '-' (or '_' when the
   name has no '-'), e.g. immich-server and immich-machine-learning
2. Remaining containers resolved to the same GitHub repository, named after
   the repository
3. Remaining containers whose name extends another remaining container's
   name with '-' or '_', e.g. paperless and paperless_db

Groupings are derived data and rebuilt on every inventory import.
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from database import ComposeStack, MultiContainerApp

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 2


def name_prefix(name: str) -> Optional[str]:
    if '-' in name:
        return name.split('-')[0]
    if '_' in name:
        return name.split('_')[0]
    return None


def detect_groups(containers: Sequence) -> Dict[str, List]:
    """
    Group objects exposing ``name`` and ``effective_repo``.

    Returns group name -> members, in first-seen order. Groups always have
    at least two members.
    """
    groups: Dict[str, List] = {}
    assigned = set()

    by_prefix: Dict[str, List] = {}
    for container in containers:
        prefix = name_prefix(container.name)
        if prefix:
            by_prefix.setdefault(prefix, []).append(container)

    for prefix, members in by_prefix.items():
        if len(members) >= MIN_GROUP_SIZE:
            groups[prefix] = members
            assigned.update(id(member) for member in members)

    by_repo: Dict[str, List] = {}
    for container in containers:
        if id(container) in assigned or not container.effective_repo:
            continue
        by_repo.setdefault(container.effective_repo, []).append(container)

    for repo, members in by_repo.items():
        if len(members) >= MIN_GROUP_SIZE:
            group_name = repo.split('/')[-1]
            groups.setdefault(group_name, []).extend(members)
            assigned.update(id(member) for member in members)

    remaining = [c for c in containers if id(c) not in assigned]
    for base in remaining:
        if id(base) in assigned:
            continue
        extensions = [
            other for other in remaining
            if other is not base
            and id(other) not in assigned
            and (other.name.startswith(f"{base.name}-") or other.name.startswith(f"{base.name}_"))
        ]
        if extensions:
            members = [base, *extensions]
            groups.setdefault(base.name, []).extend(members)
            assigned.update(id(member) for member in members)

    return groups


def rebuild_stack_apps(session: Session, stack: ComposeStack) -> List[MultiContainerApp]:
    """Replace the stored groupings of a stack with freshly detected ones"""
    for container in stack.containers:
        container.multi_container_app = None
    # delete-orphan cascade removes the rows
    for app in list(stack.apps):
        stack.apps.remove(app)
    session.flush()

    created = []
    for group_name, members in detect_groups(stack.containers).items():
        app = MultiContainerApp(app_name=group_name, stack=stack)
        session.add(app)
        for member in members:
            member.multi_container_app = app
        created.append(app)
        logger.debug(f"Stack {stack.stack_name}: {group_name} = {[m.name for m in members]}")

    return created
