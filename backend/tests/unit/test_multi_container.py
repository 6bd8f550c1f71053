"""
Unit tests for multi-container application detection.
"""

from types import SimpleNamespace

import pytest

from database import MultiContainerApp
from updates.multi_container import detect_groups, name_prefix, rebuild_stack_apps


def unit(name, repo=None):
    return SimpleNamespace(name=name, effective_repo=repo)


def names(groups):
    return {group: sorted(member.name for member in members) for group, members in groups.items()}


class TestNamePrefix:
    def test_dash(self):
        assert name_prefix("immich-server") == "immich"

    def test_underscore_when_no_dash(self):
        assert name_prefix("paperless_db") == "paperless"

    def test_dash_wins(self):
        assert name_prefix("app_one-two") == "app_one"

    def test_no_separator(self):
        assert name_prefix("redis") is None


class TestDetectGroups:
    def test_prefix_group(self):
        groups = detect_groups([unit("immich-server"), unit("immich-machine-learning"), unit("redis")])
        assert names(groups) == {"immich": ["immich-machine-learning", "immich-server"]}

    def test_repository_group(self):
        groups = detect_groups([
            unit("web", "goauthentik/authentik"),
            unit("worker", "goauthentik/authentik"),
            unit("postgres"),
        ])
        assert names(groups) == {"authentik": ["web", "worker"]}

    def test_name_extension_group(self):
        groups = detect_groups([unit("paperless"), unit("paperless_db"), unit("other")])
        assert names(groups) == {"paperless": ["paperless", "paperless_db"]}

    def test_single_members_not_grouped(self):
        assert detect_groups([unit("nginx-proxy"), unit("redis"), unit("app", "a/b")]) == {}

    def test_container_only_in_one_group(self):
        containers = [
            unit("immich-server", "immich-app/immich"),
            unit("immich-ml", "immich-app/immich"),
            unit("immich", "immich-app/immich"),
        ]
        groups = detect_groups(containers)
        seen = [member.name for members in groups.values() for member in members]
        assert len(seen) == len(set(seen))


class TestRebuildStackApps:
    def test_rebuild_replaces_groups(self, session, make_stack, make_container):
        stack = make_stack("media")
        server = make_container(stack, "immich-server", "ghcr.io/immich-app/immich-server:v2.2.3", "v2.2.3")
        ml = make_container(stack, "immich-machine-learning",
                            "ghcr.io/immich-app/immich-machine-learning:v2.2.3", "v2.2.3")
        make_container(stack, "jellyfin", "jellyfin/jellyfin:10.10.0", "10.10.0")

        rebuild_stack_apps(session, stack)
        session.commit()
        first = session.query(MultiContainerApp).one()
        assert first.app_name == "immich"
        assert server.multi_container_app is first
        assert ml.multi_container_app is first

        rebuild_stack_apps(session, stack)
        session.commit()
        assert session.query(MultiContainerApp).count() == 1
