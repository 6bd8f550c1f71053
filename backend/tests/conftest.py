"""
Shared pytest fixtures for PatchPilot tests.

Fixtures provided:
- db_manager: DatabaseManager on a temporary SQLite file
- session: Session from db_manager, closed after the test
- make_stack / make_container / make_candidate: builders bound to session
- make_release: builder for GitHub Release models
- fake_github: in-memory release lister
- fake_storage: in-memory compose/.env file storage
- fake_runner: records compose subcommands instead of running docker
"""

import os
from datetime import timedelta
from itertools import count
from pathlib import Path
from typing import Dict, List, Optional

import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import CandidateVersion, ComposeStack, DatabaseManager, ManagedContainer, utcnow
from deployment.compose_runner import CommandResult, DockerCommandError
from models.release_models import Release
from updates.github_client import RepositoryNotFoundError
from updates.version_helper import build_pattern


@pytest.fixture
def db_manager(tmp_path):
    """Temporary database, one per test"""
    return DatabaseManager(str(tmp_path / "patchpilot-test.db"))


@pytest.fixture
def session(db_manager):
    session = db_manager.get_session()
    yield session
    session.close()


@pytest.fixture
def make_stack(session):
    def _make_stack(name: str = "stack", config_file: Optional[str] = None,
                    remote_hosted: bool = False) -> ComposeStack:
        stack = ComposeStack(stack_name=name, config_file=config_file, remote_hosted=remote_hosted)
        session.add(stack)
        session.flush()
        return stack
    return _make_stack


@pytest.fixture
def make_container(session):
    def _make_container(stack: ComposeStack, name: str, image: str, version: Optional[str] = None,
                        github_repo: Optional[str] = None, github_version_regex: Optional[str] = None,
                        **kwargs) -> ManagedContainer:
        container = ManagedContainer(
            name=name,
            target_image=image,
            version=version,
            version_regex=build_pattern(version),
            github_repo=github_repo,
            github_version_regex=github_version_regex,
            stack=stack,
            **kwargs,
        )
        session.add(container)
        session.flush()
        return container
    return _make_container


@pytest.fixture
def make_candidate(session):
    def _make_candidate(containers: List[ManagedContainer], version: str, age_hours: float = 0,
                        **kwargs) -> CandidateVersion:
        candidate = CandidateVersion(
            version_number=version,
            discovered_at=utcnow() - timedelta(hours=age_hours),
            **kwargs,
        )
        session.add(candidate)
        for container in containers:
            container.candidate_versions.append(candidate)
        session.flush()
        return candidate
    return _make_candidate


_release_ids = count(1000)


def build_release(tag_name: str, name: Optional[str] = None, body: Optional[str] = None,
                  prerelease: bool = False, release_id: Optional[int] = None) -> Release:
    return Release(
        id=release_id if release_id is not None else next(_release_ids),
        tag_name=tag_name,
        name=name,
        body=body,
        prerelease=prerelease,
    )


@pytest.fixture
def make_release():
    return build_release


class FakeGitHub:
    """
    Release lister backed by a dict of "owner/repo" -> releases (newest
    first) or an exception instance to raise.
    """

    def __init__(self):
        self.releases: Dict[str, object] = {}
        self.diffs: Dict[str, str] = {}
        self.calls: List[str] = []
        self.compare_calls: List[tuple] = []

    async def list_releases(self, owner: str, repo: str) -> List[Release]:
        key = f"{owner}/{repo}"
        self.calls.append(key)
        value = self.releases.get(key)
        if value is None:
            raise RepositoryNotFoundError(f"GitHub repository not found: {key}")
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def compare_commits(self, owner: str, repo: str, base: str, head: str) -> str:
        self.compare_calls.append((f"{owner}/{repo}", base, head))
        return self.diffs.get(f"{owner}/{repo}", "")


@pytest.fixture
def fake_github():
    return FakeGitHub()


class FakeStorage:
    """In-memory FileConfigStorage"""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})
        self.writes: List[str] = []

    async def exists(self, path) -> bool:
        return str(path) in self.files

    async def read_text(self, path) -> str:
        return self.files[str(path)]

    async def write_text(self, path, content: str) -> None:
        self.writes.append(str(path))
        self.files[str(path)] = content


@pytest.fixture
def fake_storage():
    return FakeStorage()


class FakeRunner:
    """
    ComposeRunner stand-in. ``failures`` maps a subcommand to how many of
    its next invocations exit non-zero.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, int] = {}

    async def run(self, stack, subcommand: str, on_output=None, check: bool = True) -> CommandResult:
        self.calls.append((stack.stack_name, subcommand))
        exit_code = 0
        if self.failures.get(subcommand, 0) > 0:
            self.failures[subcommand] -= 1
            exit_code = 1

        result = CommandResult(
            command=subcommand,
            exit_code=exit_code,
            stdout=f"{subcommand} done",
            stderr="" if exit_code == 0 else f"{subcommand} failed",
        )
        if on_output:
            on_output(result.stdout)
        if exit_code and check:
            raise DockerCommandError(subcommand, exit_code, result.stdout, result.stderr)
        return result

    @property
    def subcommands(self) -> List[str]:
        return [subcommand for _, subcommand in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def compose_dir(tmp_path) -> Path:
    directory = tmp_path / "stacks" / "app"
    directory.mkdir(parents=True)
    return directory
