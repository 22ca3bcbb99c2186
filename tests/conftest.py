"""Shared test fixtures for gitferry tests.

Provides settings tuned for fast tests, a file-backed Run Store, fake
hosting clients over local repositories and a valid submission payload.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from gitferry.config import Settings
from gitferry.database.run_store import RunStore
from gitferry.database.session import build_engine, build_session_maker, close_db, init_db
from gitferry.providers.factory import HostingClients
from gitferry.schemas import MergeRequestInfo

from tests.gitrepos import GITHUB_URL, GITLAB_URL, FakeHostingClient


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gitferry.db'}",
        progress_teardown_delay_seconds=0.0,
        progress_stream_idle_seconds=0.05,
        progress_stream_max_idle_seconds=0.1,
        clone_timeout_seconds=60.0,
        git_command_timeout_seconds=60.0,
        git_push_timeout_seconds=60.0,
        admin_token="",
    )


@pytest.fixture
async def store(settings: Settings):
    engine = build_engine(settings.database_url)
    await init_db(engine)
    yield RunStore(build_session_maker(engine))
    await close_db(engine)


@pytest.fixture
def hosting():
    """Shared state for the fake clients; ``factory`` builds fresh clients per run."""

    class Hosting:
        def __init__(self):
            self.remotes: dict[str, Path] = {}
            self.merge_requests: list[MergeRequestInfo] = []
            self.built: list[HostingClients] = []
            self.target_lease = True

        def factory(self, request, settings) -> HostingClients:
            clients = HostingClients(
                source=FakeHostingClient("github", self.remotes),
                target=FakeHostingClient(
                    "gitlab",
                    self.remotes,
                    merge_requests=self.merge_requests,
                    force_with_lease=self.target_lease,
                ),
            )
            self.built.append(clients)
            return clients

    return Hosting()


@pytest.fixture
def request_payload(tmp_path: Path) -> dict:
    """A valid submission; tests override what they need."""
    return {
        "github_repo_url": GITHUB_URL,
        "github_access_token": "ghp_test",
        "github_download_location": str(tmp_path / "work" / "github"),
        "gitlab_repo_url": GITLAB_URL,
        "gitlab_access_token": "glpat_test",
        "gitlab_branch_name": "sync/widgets",
        "gitlab_base_branch": "main",
        "gitlab_checkout_location": str(tmp_path / "work" / "gitlab"),
        "source_path": "src",
        "destination_path": "vendor/widgets",
        "files": ["app.py", "lib"],
        "copy_mode": "files",
        "merge_request": {
            "target_branch": "main",
            "title": "Sync widgets",
            "description": "Automated sync",
            "commit_message": "Sync widgets from GitHub",
        },
    }
