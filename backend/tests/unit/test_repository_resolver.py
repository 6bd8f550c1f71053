"""
Unit tests for upstream repository resolution.

Covers candidate extraction from image references and metadata text,
release stream de-duplication, primary selection and rate limit handling.
"""

import pytest

from updates.github_client import RateLimitedError
from updates.repository_resolver import (
    MAX_CANDIDATES,
    RepositoryResolver,
    candidate_repositories,
    choose_primary,
    deduplicate_repositories,
    same_release_stream,
    upstream_pattern_for,
)


class TestCandidateRepositories:
    def test_linuxserver_image_adds_docker_mirror(self):
        candidates = candidate_repositories('', 'lscr.io/linuxserver/bazarr:v1.5.3-ls324')
        assert candidates == [('linuxserver', 'bazarr'), ('linuxserver', 'docker-bazarr')]

    def test_github_url_in_metadata_comes_first(self):
        raw = 'org.opencontainers.image.source=https://github.com/AdguardTeam/AdGuardHome'
        candidates = candidate_repositories(raw, 'adguard/adguardhome:v0.107.69')
        assert candidates[0] == ('adguardteam', 'adguardhome')
        assert ('adguard', 'adguardhome') in candidates

    def test_ghcr_reference(self):
        candidates = candidate_repositories('', 'ghcr.io/immich-app/immich-server:v2.2.3')
        assert candidates[0] == ('immich-app', 'immich-server')

    def test_lowercased_and_deduplicated(self):
        raw = 'https://github.com/Foo/Bar and https://github.com/foo/bar'
        candidates = candidate_repositories(raw, 'foo/bar:1.0')
        assert candidates.count(('foo', 'bar')) == 1

    def test_single_segment_image_has_no_candidates(self):
        assert candidate_repositories('', 'nginx:1.27') == []

    def test_capped(self):
        raw = ' '.join(f'https://github.com/owner{i}/repo{i}' for i in range(20))
        assert len(candidate_repositories(raw, 'x/y:1')) == MAX_CANDIDATES


class TestReleaseStreams:
    def test_same_stream(self, make_release):
        releases = [make_release('v2', release_id=2), make_release('v1', release_id=1)]
        mirror = [make_release('v2', release_id=2), make_release('v1', release_id=1)]
        assert same_release_stream(releases, mirror)

    def test_different_length_is_different_stream(self, make_release):
        assert not same_release_stream(
            [make_release('v1', release_id=1)],
            [make_release('v1', release_id=1), make_release('v0', release_id=0)],
        )

    def test_empty_streams_never_match(self):
        assert not same_release_stream([], [])

    def test_deduplicate_keeps_mirror_name(self, make_release):
        shared = [make_release('v1.5.3-ls325', release_id=7), make_release('v1.5.3-ls324', release_id=6)]
        streams = {
            ('linuxserver', 'bazarr'): shared,
            ('linuxserver', 'docker-bazarr'): list(shared),
        }
        result = deduplicate_repositories(streams)
        assert list(result) == [('linuxserver', 'docker-bazarr')]

    def test_deduplicate_keeps_distinct_streams(self, make_release):
        streams = {
            ('a', 'one'): [make_release('v1')],
            ('b', 'two'): [make_release('v1')],
        }
        assert len(deduplicate_repositories(streams)) == 2


class TestChoosePrimary:
    def test_prefers_stream_containing_current_version(self, make_release):
        streams = {
            ('a', 'long'): [make_release(f'v9.{i}.0') for i in range(5)],
            ('b', 'match'): [make_release('v1.2.3')],
        }
        assert choose_primary(streams, 'v1.2.3') == ('b', 'match')

    def test_then_longest_stream(self, make_release):
        streams = {
            ('a', 'short'): [make_release('v1')],
            ('b', 'long'): [make_release('v2'), make_release('v1')],
        }
        assert choose_primary(streams, None) == ('b', 'long')

    def test_then_earliest_candidate(self, make_release):
        streams = {
            ('a', 'first'): [make_release('v1')],
            ('b', 'second'): [make_release('v1')],
        }
        assert choose_primary(streams, None) == ('a', 'first')


class TestUpstreamPattern:
    def test_uses_release_matching_current(self, make_release):
        releases = [make_release('n8n@1.120.0'), make_release('n8n@1.118.1')]
        assert upstream_pattern_for(releases, '1.118.1') == r'^n8n@\d+\.\d+\.\d+$'

    def test_falls_back_to_newest(self, make_release):
        releases = [make_release('v3.0.0'), make_release('v2.0.0')]
        assert upstream_pattern_for(releases, '9.9') == r'^v\d+\.\d+\.\d+$'

    def test_no_releases(self):
        assert upstream_pattern_for([], '1.0') is None


class TestRepositoryResolver:
    @pytest.mark.asyncio
    async def test_attach_sets_identity(self, session, make_stack, make_container, make_release, fake_github):
        fake_github.releases['adguard/adguardhome'] = [make_release('v0.107.70'), make_release('v0.107.69')]
        stack = make_stack()
        container = make_container(stack, 'adguard', 'adguard/adguardhome:v0.107.69', 'v0.107.69')

        result = await RepositoryResolver(fake_github).attach(container, '')

        assert result.primary == ('adguard', 'adguardhome')
        assert container.github_repo == 'adguard/adguardhome'
        assert container.github_version_regex == r'^v\d+\.\d+\.\d+$'
        assert container.secondary_github_repos is None
        assert ('adguard', 'docker-adguardhome') in result.failed

    @pytest.mark.asyncio
    async def test_secondary_repositories_recorded(self, session, make_stack, make_container,
                                                   make_release, fake_github):
        raw = 'source: https://github.com/immich-app/immich'
        fake_github.releases['immich-app/immich'] = [make_release('v2.3.0'), make_release('v2.2.3')]
        fake_github.releases['immich-app/immich-server'] = [make_release('v0.1.0')]
        container = make_container(make_stack(), 'immich_server', 'ghcr.io/immich-app/immich-server:v2.2.3', 'v2.2.3')

        await RepositoryResolver(fake_github).attach(container, raw)

        assert container.github_repo == 'immich-app/immich'
        assert container.secondary_github_repos == ['immich-app/immich-server']

    @pytest.mark.asyncio
    async def test_override_left_untouched(self, session, make_stack, make_container, fake_github):
        container = make_container(make_stack(), 'app', 'foo/app:1.0', '1.0', override_github_repo='me/app')

        result = await RepositoryResolver(fake_github).attach(container, '')

        assert result.primary is None
        assert fake_github.calls == []
        assert container.github_repo is None

    @pytest.mark.asyncio
    async def test_rate_limit_stops_probing(self, fake_github):
        fake_github.releases['linuxserver/bazarr'] = RateLimitedError(None, 60)

        result = await RepositoryResolver(fake_github).resolve('', 'lscr.io/linuxserver/bazarr:v1', 'v1')

        assert result.rate_limited
        assert result.primary is None
        assert fake_github.calls == ['linuxserver/bazarr']

    @pytest.mark.asyncio
    async def test_empty_release_list_is_a_failed_candidate(self, fake_github):
        fake_github.releases['foo/bar'] = []

        result = await RepositoryResolver(fake_github).resolve('', 'foo/bar:1.0', '1.0')

        assert result.primary is None
        assert ('foo', 'bar') in result.failed
