"""Append-only commit ledger of completed phases.

The ledger is the single source of truth for "did phase P complete for
feature F". Two backends implement the same interface:

* ``GitCommitLedger`` writes one git commit per completed phase, staging
  the phase artifact first, and answers queries with ``git log --grep``.
* ``JournalLedger`` appends JSON lines to a file inside the storage
  directory, for projects that are not git repositories.

Queries never cache: every call re-reads the durable source.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, cast

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .config import SpecFirstConfig
from .errors import ConfigurationError, LedgerReadError, LedgerWriteError
from .models import Phase, PhaseRecord, utc_now_iso
from .specfirst_logging import log_ledger_event
from .workspace import ArtifactLocator


logger = logging.getLogger("specfirst.ledger")

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = "--format=%H%x1f%aI%x1f%B%x1e"


class CommitLedger(ABC):
    """Append-only, searchable record of phase completions."""

    def __init__(self, locator: ArtifactLocator):
        self.locator = locator

    @abstractmethod
    async def append(self, phase: Phase, feature_name: str, artifact_path: Path | str) -> PhaseRecord:
        """Record that ``phase`` completed for ``feature_name``.

        Raises:
            LedgerWriteError: the artifact could not be staged or the record
                could not be written. Nothing is recorded in that case.
        """

    @abstractmethod
    async def latest(self, phase: Phase, feature_name: str) -> Optional[PhaseRecord]:
        """Most recent record for the pair, or None."""

    @abstractmethod
    async def all_for(self, feature_name: str) -> List[PhaseRecord]:
        """Every record for the feature, oldest first."""

    async def exists(self, phase: Phase, feature_name: str) -> bool:
        return await self.latest(phase, feature_name) is not None

    def _new_record(self, phase: Phase, feature_name: str, artifact_path: Path | str) -> PhaseRecord:
        return PhaseRecord(
            phase=Phase.parse(phase),
            feature_name=feature_name,
            artifact_path=self.locator.relative(artifact_path),
            timestamp=utc_now_iso(),
        )


class GitCommitLedger(CommitLedger):
    """Ledger backed by the project's git history."""

    def _open_repo(self, error_cls: type) -> Repo:
        try:
            return Repo(self.locator.root, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise error_cls(
                f"{self.locator.root} is not inside a git repository",
                resolution="Run 'git init' in the project root or set SPECFIRST_LEDGER=journal",
            ) from exc

    def _search(self, needle: str, reverse: bool = False) -> List[PhaseRecord]:
        repo = self._open_repo(LedgerReadError)
        if not repo.head.is_valid():
            return []

        args = ["--fixed-strings", f"--grep={needle}", _LOG_FORMAT]
        if reverse:
            args.insert(0, "--reverse")
        try:
            raw = cast(str, repo.git.log(*args))
        except GitCommandError as exc:
            raise LedgerReadError(
                f"Unable to read git log: {exc}",
                resolution="Check that the repository is not corrupt and git is installed",
            ) from exc

        records: List[PhaseRecord] = []
        for chunk in raw.split(_RECORD_SEP):
            chunk = chunk.strip("\n")
            if not chunk:
                continue
            parts = chunk.split(_FIELD_SEP, 2)
            if len(parts) != 3:
                continue
            sha, authored, body = parts
            record = PhaseRecord.from_message(body, record_id=sha.strip(), fallback_timestamp=authored.strip())
            if record is not None:
                records.append(record)
        return records

    async def latest(self, phase: Phase, feature_name: str) -> Optional[PhaseRecord]:
        phase = Phase.parse(phase)
        title = PhaseRecord.title_for(phase, feature_name)

        def _latest() -> Optional[PhaseRecord]:
            # --grep matches substrings, so "demo" would also hit "demo-2".
            for record in self._search(title):
                if record.phase is phase and record.feature_name == feature_name:
                    return record
            return None

        return await asyncio.to_thread(_latest)

    async def all_for(self, feature_name: str) -> List[PhaseRecord]:
        def _all() -> List[PhaseRecord]:
            return [
                record
                for record in self._search(f"phase complete for {feature_name}", reverse=True)
                if record.feature_name == feature_name
            ]

        return await asyncio.to_thread(_all)

    async def append(self, phase: Phase, feature_name: str, artifact_path: Path | str) -> PhaseRecord:
        record = self._new_record(phase, feature_name, artifact_path)
        target = self.locator.absolute(artifact_path)

        def _commit() -> PhaseRecord:
            repo = self._open_repo(LedgerWriteError)
            if not target.exists():
                raise LedgerWriteError(
                    f"Cannot record {record.phase.value} for {feature_name}: artifact {record.artifact_path} does not exist",
                    resolution="Write the phase artifact before recording completion",
                )
            try:
                repo.index.add([str(target)])
            except (GitCommandError, OSError, ValueError) as exc:
                raise LedgerWriteError(
                    f"Failed to stage {record.artifact_path}: {exc}",
                    resolution="Check that the artifact lives inside the repository and is not ignored",
                ) from exc
            try:
                # Pathspec limits the commit to the artifact; other staged changes stay staged.
                repo.git.commit("--allow-empty", "-m", record.to_message(), "--", str(target))
                commit = repo.head.commit
            except (GitCommandError, OSError, ValueError) as exc:
                raise LedgerWriteError(
                    f"Failed to commit {record.title}: {exc}",
                    resolution="Check git user configuration and repository permissions",
                ) from exc
            return PhaseRecord(
                phase=record.phase,
                feature_name=record.feature_name,
                artifact_path=record.artifact_path,
                status=record.status,
                timestamp=record.timestamp,
                record_id=commit.hexsha,
            )

        written = await asyncio.to_thread(_commit)
        logger.info(f"Recorded {written.title} ({written.record_id[:8]})")
        log_ledger_event("appended", written.phase.value, feature_name, record_id=written.record_id)
        return written


class JournalLedger(CommitLedger):
    """Ledger backed by a JSON-lines journal file."""

    def __init__(self, locator: ArtifactLocator, journal_path: Path):
        super().__init__(locator)
        self.journal_path = Path(journal_path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> List[PhaseRecord]:
        if not self.journal_path.exists():
            return []
        records: List[PhaseRecord] = []
        try:
            lines = self.journal_path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise LedgerReadError(
                f"Unable to read ledger journal {self.journal_path}: {exc}",
                resolution="Check file permissions on the storage directory",
            ) from exc
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
                record = PhaseRecord.from_dict(entry)
            except (ValueError, KeyError, TypeError) as exc:
                raise LedgerReadError(
                    f"Corrupt ledger journal entry at {self.journal_path}:{lineno}: {exc}",
                    resolution="Repair or remove the damaged line; the journal is append-only",
                ) from exc
            records.append(record)
        return records

    async def latest(self, phase: Phase, feature_name: str) -> Optional[PhaseRecord]:
        phase = Phase.parse(phase)
        records = await asyncio.to_thread(self._read_all)
        for record in reversed(records):
            if record.phase is phase and record.feature_name == feature_name:
                return record
        return None

    async def all_for(self, feature_name: str) -> List[PhaseRecord]:
        records = await asyncio.to_thread(self._read_all)
        return [record for record in records if record.feature_name == feature_name]

    async def append(self, phase: Phase, feature_name: str, artifact_path: Path | str) -> PhaseRecord:
        record = self._new_record(phase, feature_name, artifact_path)
        target = self.locator.absolute(artifact_path)

        def _write() -> PhaseRecord:
            try:
                digest = hashlib.sha256(target.read_bytes()).hexdigest()
            except OSError as exc:
                raise LedgerWriteError(
                    f"Failed to stage {record.artifact_path}: {exc}",
                    resolution="Write the phase artifact before recording completion",
                ) from exc
            written = PhaseRecord(
                phase=record.phase,
                feature_name=record.feature_name,
                artifact_path=record.artifact_path,
                status=record.status,
                timestamp=record.timestamp,
                record_id=uuid.uuid4().hex,
            )
            entry = {**written.to_dict(), "artifact_sha256": digest, "message": written.to_message()}
            try:
                self.journal_path.parent.mkdir(parents=True, exist_ok=True)
                with self.journal_path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry) + "\n")
            except OSError as exc:
                raise LedgerWriteError(
                    f"Failed to append to ledger journal {self.journal_path}: {exc}",
                    resolution="Check file permissions on the storage directory",
                ) from exc
            return written

        async with self._lock:
            written = await asyncio.to_thread(_write)
        logger.info(f"Recorded {written.title} in journal")
        log_ledger_event("appended", written.phase.value, feature_name, record_id=written.record_id)
        return written


def open_ledger(config: SpecFirstConfig, locator: Optional[ArtifactLocator] = None) -> CommitLedger:
    """Build the ledger backend selected by ``config.ledger_backend``."""
    locator = locator or ArtifactLocator(config.project_root, config.storage_dir_name)
    if config.ledger_backend == "git":
        return GitCommitLedger(locator)
    if config.ledger_backend == "journal":
        return JournalLedger(locator, config.journal_path)
    raise ConfigurationError(
        f"Unknown ledger backend '{config.ledger_backend}'",
        resolution="Set SPECFIRST_LEDGER to git or journal",
    )
