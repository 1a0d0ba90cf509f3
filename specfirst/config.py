"""Environment-driven configuration for SpecFirst."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError


DEFAULT_STORAGE_DIR = ".specfirst"
DEFAULT_GATE_TIMEOUT_MS = 5000
DEFAULT_MAX_ARTIFACT_KB = 50
LEDGER_BACKENDS = ("git", "journal")

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigurationError(
        f"Environment variable {name} must be a boolean, got '{raw}'",
        resolution=f"Set {name} to one of: true, false",
    )


def _parse_positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigurationError(
            f"Environment variable {name} must be an integer, got '{raw}'",
            resolution=f"Set {name} to a positive whole number",
        ) from None
    if value <= 0:
        raise ConfigurationError(
            f"Environment variable {name} must be positive, got {value}",
            resolution=f"Set {name} to a positive whole number",
        )
    return value


@dataclass(slots=True, frozen=True)
class SpecFirstConfig:
    """Resolved settings for one invocation against one project root."""

    project_root: Path
    storage_dir_name: str = DEFAULT_STORAGE_DIR
    ledger_backend: str = "git"
    gate_timeout_ms: int = DEFAULT_GATE_TIMEOUT_MS
    artifact_max_kb: int = DEFAULT_MAX_ARTIFACT_KB
    enforce_quality_gate: bool = False
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @property
    def storage_dir(self) -> Path:
        return self.project_root / self.storage_dir_name

    @property
    def db_path(self) -> Path:
        return self.storage_dir / "specfirst.db"

    @property
    def journal_path(self) -> Path:
        return self.storage_dir / "ledger.jsonl"

    @property
    def gate_budget_seconds(self) -> float:
        return self.gate_timeout_ms / 1000.0

    @classmethod
    def from_env(
        cls,
        root: Optional[Path | str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SpecFirstConfig":
        """Build a config from ``root`` (or SPECFIRST_PROJECT_ROOT) and the environment.

        Raises:
            ConfigurationError: when no usable root is available or a knob
                cannot be parsed.
        """
        env = os.environ if environ is None else environ

        raw_root = str(root) if root else env.get("SPECFIRST_PROJECT_ROOT")
        if not raw_root:
            raise ConfigurationError(
                "Unable to determine project root",
                resolution="Pass a project root or set the SPECFIRST_PROJECT_ROOT environment variable",
            )
        project_root = Path(raw_root).expanduser().resolve()
        if not project_root.is_dir():
            raise ConfigurationError(
                f"Project root '{raw_root}' does not exist or is not a directory",
                resolution="Create the directory or point SPECFIRST_PROJECT_ROOT at an existing project",
            )

        storage = env.get("SPECFIRST_STORAGE_DIR", DEFAULT_STORAGE_DIR).strip() or DEFAULT_STORAGE_DIR
        if Path(storage).is_absolute() or ".." in Path(storage).parts:
            raise ConfigurationError(
                f"Storage directory '{storage}' must be a relative path inside the project",
                resolution="Use a plain directory name such as .specfirst",
            )

        backend = env.get("SPECFIRST_LEDGER", "git").strip().lower() or "git"
        if backend not in LEDGER_BACKENDS:
            raise ConfigurationError(
                f"Unknown ledger backend '{backend}'",
                resolution=f"Set SPECFIRST_LEDGER to one of: {', '.join(LEDGER_BACKENDS)}",
            )

        gate_timeout_ms = DEFAULT_GATE_TIMEOUT_MS
        if env.get("SPECFIRST_GATE_TIMEOUT_MS"):
            gate_timeout_ms = _parse_positive_int("SPECFIRST_GATE_TIMEOUT_MS", env["SPECFIRST_GATE_TIMEOUT_MS"])

        artifact_max_kb = DEFAULT_MAX_ARTIFACT_KB
        if env.get("SPECFIRST_MAX_ARTIFACT_KB"):
            artifact_max_kb = _parse_positive_int("SPECFIRST_MAX_ARTIFACT_KB", env["SPECFIRST_MAX_ARTIFACT_KB"])

        enforce = _parse_bool("SPECFIRST_ENFORCE_QUALITY_GATE", env.get("SPECFIRST_ENFORCE_QUALITY_GATE", "false"))

        log_file = env.get("SPECFIRST_LOG_FILE")

        return cls(
            project_root=project_root,
            storage_dir_name=storage,
            ledger_backend=backend,
            gate_timeout_ms=gate_timeout_ms,
            artifact_max_kb=artifact_max_kb,
            enforce_quality_gate=enforce,
            log_level=env.get("SPECFIRST_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_file=Path(log_file).expanduser() if log_file else None,
        )
