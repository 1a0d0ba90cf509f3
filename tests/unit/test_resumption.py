"""Unit tests for ledger-driven resumption."""

import pytest

from conftest import write_artifact, write_constitution
from specfirst.models import PHASE_ORDER, ArtifactKind, Phase, PhaseResult
from specfirst.orchestrator import Orchestrator
from specfirst.resumption import ResumptionEngine, first_incomplete, furthest_complete


async def record(ledger, locator, phase, feature="demo"):
    kinds = {
        Phase.PROPOSE: ArtifactKind.PROPOSAL,
        Phase.SPECIFY: ArtifactKind.SPEC,
        Phase.PLAN: ArtifactKind.PLAN,
        Phase.IMPLEMENT: ArtifactKind.TASKS,
        Phase.RELEASE: ArtifactKind.RELEASE_NOTES,
    }
    path = write_artifact(locator, feature, kinds[phase])
    return await ledger.append(phase, feature, path)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def engine(ledger, locator, calls):
    async def phase_function(context):
        calls.append(context.phase)
        return PhaseResult(success=True, artifact_path=context.artifact_path)

    orchestrator = Orchestrator(locator, {phase: phase_function for phase in PHASE_ORDER})
    return ResumptionEngine(ledger, orchestrator)


class TestDetection:
    """Test cases for next/current phase detection."""

    @pytest.mark.asyncio
    async def test_fresh_feature(self, engine):
        assert await engine.detect_next_phase("demo") is Phase.PROPOSE
        assert await engine.current_phase("demo") is Phase.NONE
        assert await engine.get_workflow_status("demo") == {phase: False for phase in PHASE_ORDER}

    @pytest.mark.asyncio
    async def test_partial_progress(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)
        await record(ledger, locator, Phase.SPECIFY)

        assert await engine.detect_next_phase("demo") is Phase.PLAN
        assert await engine.current_phase("demo") is Phase.SPECIFY
        status = await engine.get_workflow_status("demo")
        assert status[Phase.SPECIFY] and not status[Phase.PLAN]

    @pytest.mark.asyncio
    async def test_first_gap_wins(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)
        await record(ledger, locator, Phase.PLAN)

        assert await engine.detect_next_phase("demo") is Phase.SPECIFY

    @pytest.mark.asyncio
    async def test_fresh_engine_reads_same_answer(self, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)

        fresh = ResumptionEngine(ledger, Orchestrator(locator, {}))

        assert await fresh.detect_next_phase("demo") is Phase.SPECIFY

    @pytest.mark.asyncio
    async def test_other_features_do_not_leak(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE, feature="demo-2")
        assert await engine.detect_next_phase("demo") is Phase.PROPOSE


class TestResume:
    @pytest.mark.asyncio
    async def test_runs_next_phase(self, engine, ledger, locator, project_root, calls):
        write_constitution(project_root)
        await record(ledger, locator, Phase.PROPOSE)

        outcome = await engine.resume_workflow("demo")

        assert outcome.success
        assert outcome.phase is Phase.SPECIFY
        assert calls == [Phase.SPECIFY]

    @pytest.mark.asyncio
    async def test_complete_workflow_runs_nothing(self, engine, ledger, locator, calls):
        for phase in PHASE_ORDER:
            await record(ledger, locator, phase)

        outcome = await engine.resume_workflow("demo")

        assert outcome.success
        assert outcome.workflow_complete
        assert outcome.next_phase is None
        assert calls == []


@pytest.mark.parametrize("done, first, furthest", [
    ([], Phase.PROPOSE, Phase.NONE),
    ([Phase.PROPOSE, Phase.SPECIFY], Phase.PLAN, Phase.SPECIFY),
    ([Phase.PROPOSE, Phase.PLAN], Phase.SPECIFY, Phase.PLAN),
    (list(PHASE_ORDER), None, Phase.RELEASE),
])
def test_status_helpers(done, first, furthest):
    status = {phase: phase in done for phase in PHASE_ORDER}

    assert first_incomplete(status) is first
    assert furthest_complete(status) is furthest
