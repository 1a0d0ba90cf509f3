"""Unit tests for gate checks."""

import pytest

from conftest import VALID_ISC, write_artifact, write_constitution
from specfirst.gates import (
    GATE_ARTIFACT,
    artifact_gate,
    evaluate_isc_content,
    isc_format_gate,
    phase_complete_gate,
    prerequisite_gate,
)
from specfirst.models import ArtifactKind, ErrorKind, Phase


class TestPrerequisiteGate:
    @pytest.mark.asyncio
    async def test_fails_without_constitution(self, locator):
        result = await prerequisite_gate(locator, "demo")

        assert not result.passed
        assert result.error_kind is ErrorKind.PREREQUISITE_MISSING
        assert result.missing_artifacts == ["constitution"]
        assert "CONSTITUTION.md" in result.resolution

    @pytest.mark.asyncio
    async def test_passes_with_constitution(self, locator, project_root):
        write_constitution(project_root)
        result = await prerequisite_gate(locator, "demo")
        assert result.passed


class TestArtifactGate:
    """The artifact gate lists every missing dependency."""

    @pytest.mark.asyncio
    async def test_release_lists_all_missing(self, locator, project_root):
        write_constitution(project_root)
        write_artifact(locator, "demo", ArtifactKind.PROPOSAL)

        result = await artifact_gate(locator, Phase.RELEASE, "demo")

        assert not result.passed
        assert result.gate == GATE_ARTIFACT
        assert set(result.missing_artifacts) == {"spec", "plan", "tasks"}
        assert result.error_kind is ErrorKind.ARTIFACT_MISSING
        assert "Run the 'implement' phase first" in result.resolution

    @pytest.mark.asyncio
    async def test_propose_only_needs_constitution(self, locator, project_root):
        assert not (await artifact_gate(locator, Phase.PROPOSE, "demo")).passed
        write_constitution(project_root)
        assert (await artifact_gate(locator, Phase.PROPOSE, "demo")).passed

    @pytest.mark.asyncio
    async def test_specify_passes_with_proposal(self, locator, project_root):
        write_constitution(project_root)
        write_artifact(locator, "demo", ArtifactKind.PROPOSAL)

        assert (await artifact_gate(locator, "specify", "demo")).passed
        assert not (await artifact_gate(locator, "plan", "demo")).passed

    @pytest.mark.asyncio
    async def test_is_read_only(self, locator):
        await artifact_gate(locator, Phase.PLAN, "demo")
        assert not locator.storage_dir.exists()


class TestISCFormatGate:
    @pytest.mark.asyncio
    async def test_missing_tasks(self, locator):
        result = await isc_format_gate(locator, "demo")

        assert not result.passed
        assert result.missing_artifacts == ["tasks"]

    @pytest.mark.asyncio
    async def test_valid_tracker(self, locator):
        write_artifact(locator, "demo", ArtifactKind.TASKS, VALID_ISC)

        result = await isc_format_gate(locator, "demo")

        assert result.passed
        assert result.details["criteria_count"] == 4
        assert result.details["quality_gate"]["passed"] is True

    @pytest.mark.asyncio
    async def test_structural_violation(self, locator):
        broken = VALID_ISC.replace("Password reset emails expire after thirty minutes without any use", "Reset expires")
        write_artifact(locator, "demo", ArtifactKind.TASKS, broken)

        result = await isc_format_gate(locator, "demo")

        assert not result.passed
        assert result.error_kind is ErrorKind.STRUCTURAL_VIOLATION
        assert result.violations[0]["actual"] == 2
        assert result.violations[0]["row_id"] == "ISC-C4"

    def test_quality_is_advisory_unless_enforced(self):
        weak = VALID_ISC.replace(
            "| ISC-A1 | No credentials exposed in git commit history today | 👀 | Grep: secrets |\n", ""
        )

        advisory = evaluate_isc_content(weak)
        enforced = evaluate_isc_content(weak, enforce_quality=True)

        assert advisory.passed
        assert any(warning.startswith("QG5") for warning in advisory.warnings)
        assert not enforced.passed
        assert "QG5" in enforced.error


class TestPhaseCompleteGate:
    """A phase is complete only with a ledger record and complete frontmatter."""

    @pytest.mark.asyncio
    async def test_missing_artifact(self, locator, ledger):
        result = await phase_complete_gate(locator, ledger, Phase.SPECIFY, "demo")

        assert not result.passed
        assert result.error_kind is ErrorKind.PHASE_INCOMPLETE
        assert result.details["ledger_record_found"] is False

    @pytest.mark.asyncio
    async def test_artifact_without_record(self, locator, ledger):
        write_artifact(locator, "demo", ArtifactKind.SPEC)

        result = await phase_complete_gate(locator, ledger, Phase.SPECIFY, "demo")

        assert not result.passed
        assert result.details["frontmatter_complete"] is True
        assert "SpecFirst: specify phase complete for demo" in result.error
        assert "ledger: SpecFirst: specify phase complete for demo" in result.resolution
        assert "{" not in result.resolution

    @pytest.mark.asyncio
    async def test_record_with_draft_frontmatter(self, locator, ledger):
        path = write_artifact(locator, "demo", ArtifactKind.SPEC, "---\nstatus: draft\n---\n\n# Spec\n")
        await ledger.append(Phase.SPECIFY, "demo", path)

        result = await phase_complete_gate(locator, ledger, Phase.SPECIFY, "demo")

        assert not result.passed
        assert result.details == {
            "ledger_record_found": True,
            "artifact_path": str(path),
            "frontmatter_complete": False,
        }
        assert '"draft"' in result.error

    @pytest.mark.asyncio
    async def test_complete(self, locator, ledger):
        path = write_artifact(locator, "demo", ArtifactKind.SPEC)
        await ledger.append(Phase.SPECIFY, "demo", path)

        assert (await phase_complete_gate(locator, ledger, "specify", "demo")).passed

    @pytest.mark.asyncio
    async def test_release_judged_on_tasks(self, locator, ledger):
        path = write_artifact(locator, "demo", ArtifactKind.TASKS, "---\nstatus: complete\n---\n" + VALID_ISC)
        await ledger.append(Phase.RELEASE, "demo", path)

        result = await phase_complete_gate(locator, ledger, Phase.RELEASE, "demo")

        assert result.passed
        assert result.details["artifact_path"].endswith("tasks.md")
