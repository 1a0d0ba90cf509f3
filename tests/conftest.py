"""Shared fixtures for SpecFirst tests."""

from pathlib import Path

import pytest
from git import Repo

from specfirst.config import SpecFirstConfig
from specfirst.ledger import GitCommitLedger, JournalLedger
from specfirst.models import ArtifactKind
from specfirst.workspace import ArtifactLocator


VALID_ISC = """## IDEAL
Every user signs in securely and sessions stay trustworthy.

## ISC TRACKER

| ID | Criterion | Status | Evidence | Verify |
|----|-----------|--------|----------|--------|
| ISC-C1 | User authentication endpoint responds with valid JWT token [E][CRITICAL] | ✅ | auth tests | Test: auth |
| ISC-C2 | Database connection pool maintains exactly five active connections | ✅ | pool metrics | CLI: pool |
| ISC-C3 | Error messages include timestamp and correlation request identifier | ✅ | log sample | Grep: fmt |
| ISC-C4 | Password reset emails expire after thirty minutes without any use | ✅ | expiry test | Test: reset |

## ANTI-CRITERIA

| ID | Criterion | Status | Verify |
|----|-----------|--------|--------|
| ISC-A1 | No credentials exposed in git commit history today | 👀 | Grep: secrets |

## PROGRESS

4/4 criteria verified.
"""


def write_constitution(root: Path, text: str = "# Constitution\n\n- Python 3.11\n") -> Path:
    path = Path(root) / "CONSTITUTION.md"
    path.write_text(text, encoding="utf-8")
    return path


def write_artifact(locator: ArtifactLocator, feature: str, kind: ArtifactKind, text: str = None) -> Path:
    path = locator.path_for(feature, kind)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text or f"---\nstatus: complete\n---\n\n# {kind.value}\n", encoding="utf-8")
    return path


def init_git_repo(root: Path, initial_commit: bool = True) -> Repo:
    repo = Repo.init(root)
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "SpecFirst Tests")
        writer.set_value("user", "email", "tests@example.com")
    if initial_commit:
        readme = Path(root) / "README.md"
        readme.write_text("# project\n", encoding="utf-8")
        repo.index.add([str(readme)])
        repo.index.commit("Initial commit")
    return repo


@pytest.fixture
def project_root(tmp_path):
    return tmp_path


@pytest.fixture
def git_repo(project_root):
    return init_git_repo(project_root)


@pytest.fixture
def locator(project_root):
    return ArtifactLocator(project_root)


@pytest.fixture
def git_ledger(git_repo, locator):
    return GitCommitLedger(locator)


@pytest.fixture
def journal_ledger(project_root, locator):
    return JournalLedger(locator, project_root / ".specfirst" / "ledger.jsonl")


@pytest.fixture(params=["git", "journal"])
def ledger(request, project_root, locator):
    """Both ledger backends, for behaviour they must share."""
    if request.param == "git":
        init_git_repo(project_root)
        return GitCommitLedger(locator)
    return JournalLedger(locator, project_root / ".specfirst" / "ledger.jsonl")


@pytest.fixture
def git_config(git_repo, project_root):
    return SpecFirstConfig(project_root=project_root.resolve())


@pytest.fixture
def journal_config(project_root):
    return SpecFirstConfig(project_root=project_root.resolve(), ledger_backend="journal")
