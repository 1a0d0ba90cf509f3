"""Artifact locations and file helpers for SpecFirst workspaces.

``ArtifactLocator`` maps a feature name and artifact kind to a path; it
never touches the filesystem. The module-level helpers do the actual I/O
and come in async flavours that push blocking work onto a thread.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .models import ArtifactKind, Phase


CONSTITUTION_FILENAME = "CONSTITUTION.md"

ARTIFACT_FILENAMES: Dict[ArtifactKind, str] = {
    ArtifactKind.PROPOSAL: "proposal.md",
    ArtifactKind.SPEC: "spec.md",
    ArtifactKind.PLAN: "plan.md",
    ArtifactKind.TASKS: "tasks.md",
    ArtifactKind.RELEASE_NOTES: "RELEASE.md",
}

# Artifact each phase writes.
PHASE_OUTPUTS: Dict[Phase, ArtifactKind] = {
    Phase.PROPOSE: ArtifactKind.PROPOSAL,
    Phase.SPECIFY: ArtifactKind.SPEC,
    Phase.PLAN: ArtifactKind.PLAN,
    Phase.IMPLEMENT: ArtifactKind.TASKS,
    Phase.RELEASE: ArtifactKind.RELEASE_NOTES,
}

# Artifact whose frontmatter proves a phase complete. Release is judged on tasks.
PHASE_COMPLETION_ARTIFACT: Dict[Phase, ArtifactKind] = {
    Phase.PROPOSE: ArtifactKind.PROPOSAL,
    Phase.SPECIFY: ArtifactKind.SPEC,
    Phase.PLAN: ArtifactKind.PLAN,
    Phase.IMPLEMENT: ArtifactKind.TASKS,
    Phase.RELEASE: ArtifactKind.TASKS,
}

_FEATURE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_FRONTMATTER_PATTERN = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)


def validate_feature_name(feature_name: str) -> str:
    """Reject names that cannot safely become a directory or a ledger title."""
    name = (feature_name or "").strip()
    if not name or not _FEATURE_NAME_PATTERN.match(name) or name in {".", ".."}:
        raise ConfigurationError(
            f"Invalid feature name '{feature_name}'",
            resolution="Use letters, digits, '.', '_' or '-', starting with a letter or digit",
        )
    return name


class ArtifactLocator:
    """Pure mapping from (feature, artifact kind) to a path under the project root."""

    def __init__(self, root: Path | str, storage_dir_name: str = ".specfirst"):
        self.root = Path(root).resolve()
        self.storage_dir = self.root / storage_dir_name

    @property
    def constitution_path(self) -> Path:
        return self.root / CONSTITUTION_FILENAME

    def feature_dir(self, feature_name: str) -> Path:
        return self.storage_dir / validate_feature_name(feature_name)

    def specs_dir(self, feature_name: str) -> Path:
        return self.feature_dir(feature_name) / "specs"

    def path_for(self, feature_name: str, kind: ArtifactKind) -> Path:
        if kind is ArtifactKind.CONSTITUTION:
            return self.constitution_path
        return self.specs_dir(feature_name) / ARTIFACT_FILENAMES[kind]

    def phase_output_path(self, feature_name: str, phase: Phase) -> Path:
        return self.path_for(feature_name, PHASE_OUTPUTS[Phase.parse(phase)])

    def completion_artifact_path(self, feature_name: str, phase: Phase) -> Path:
        return self.path_for(feature_name, PHASE_COMPLETION_ARTIFACT[Phase.parse(phase)])

    def feature_paths(self, feature_name: str) -> Dict[str, str]:
        paths = {ArtifactKind.CONSTITUTION.value: str(self.constitution_path)}
        for kind in ARTIFACT_FILENAMES:
            paths[kind.value] = str(self.path_for(feature_name, kind))
        return paths

    def relative(self, path: Path | str) -> str:
        """Path relative to the project root, as written into ledger records."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        try:
            return candidate.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return candidate.as_posix()

    def absolute(self, path: Path | str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.root / candidate


def split_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """Split a markdown document into (frontmatter mapping, body).

    Documents without a leading ``---`` block, or with a block that is not a
    YAML mapping, yield an empty mapping and the full text.
    """
    match = _FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, text[match.end():]


def render_frontmatter(metadata: Dict[str, Any], body: str) -> str:
    header = yaml.safe_dump(metadata, sort_keys=False, default_flow_style=False).strip()
    return f"---\n{header}\n---\n\n{body.lstrip()}"


def read_frontmatter(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    metadata, _ = split_frontmatter(path.read_text(encoding="utf-8"))
    return metadata


def write_text(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not content.endswith("\n"):
        content += "\n"
    path.write_text(content, encoding="utf-8")
    return path


async def path_exists(path: Path) -> bool:
    return await asyncio.to_thread(path.exists)


async def read_text_async(path: Path) -> Optional[str]:
    """Read a file on a worker thread. Missing files read as None."""
    def _read() -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    return await asyncio.to_thread(_read)


async def write_text_async(path: Path, content: str) -> Path:
    return await asyncio.to_thread(write_text, path, content)


async def read_frontmatter_async(path: Path) -> Dict[str, Any]:
    return await asyncio.to_thread(read_frontmatter, path)
