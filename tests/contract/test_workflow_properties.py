"""Contract tests for the resumption engine, gates and claims.

These pin the externally observable behaviour: ledger-derived state,
gate failure shapes, atomic claiming and the ISC word-count boundaries.
"""

import asyncio
from contextlib import AsyncExitStack

import pytest

from conftest import VALID_ISC, write_artifact, write_constitution
from specfirst.gates import artifact_gate, evaluate_isc_content
from specfirst.isc import RULE_WORD_COUNT
from specfirst.ledger import GitCommitLedger, JournalLedger
from specfirst.models import PHASE_ORDER, ArtifactKind, ErrorKind, Phase
from specfirst.orchestrator import Orchestrator
from specfirst.resumption import ResumptionEngine
from specfirst.store import open_store
from specfirst.workspace import ArtifactLocator

KIND_FOR_PHASE = {
    Phase.PROPOSE: ArtifactKind.PROPOSAL,
    Phase.SPECIFY: ArtifactKind.SPEC,
    Phase.PLAN: ArtifactKind.PLAN,
    Phase.IMPLEMENT: ArtifactKind.TASKS,
    Phase.RELEASE: ArtifactKind.RELEASE_NOTES,
}


async def record(ledger, locator, phase, feature="demo"):
    return await ledger.append(phase, feature, write_artifact(locator, feature, KIND_FOR_PHASE[phase]))


def tracker_doc(criterion):
    return VALID_ISC.replace("Password reset emails expire after thirty minutes without any use", criterion)


@pytest.fixture
def engine(ledger, locator):
    return ResumptionEngine(ledger, Orchestrator(locator, {}))


class TestLedgerDerivedState:
    """Workflow state comes from the ledger alone."""

    @pytest.mark.asyncio
    async def test_demo_after_propose_and_specify(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)
        await record(ledger, locator, Phase.SPECIFY)

        assert await engine.detect_next_phase("demo") is Phase.PLAN
        status = await engine.get_workflow_status("demo")
        assert {phase.value: done for phase, done in status.items()} == {
            "propose": True,
            "specify": True,
            "plan": False,
            "implement": False,
            "release": False,
        }

    @pytest.mark.asyncio
    async def test_detection_is_idempotent(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)

        answers = [await engine.detect_next_phase("demo") for _ in range(5)]

        assert answers == [Phase.SPECIFY] * 5

    @pytest.mark.asyncio
    async def test_concurrent_readers_agree(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)
        await record(ledger, locator, Phase.SPECIFY)

        results = await asyncio.gather(*(engine.get_workflow_status("demo") for _ in range(4)))
        nexts = await asyncio.gather(*(engine.detect_next_phase("demo") for _ in range(4)))

        assert all(result == results[0] for result in results)
        assert set(nexts) == {Phase.PLAN}

    @pytest.mark.asyncio
    async def test_out_of_order_records_report_first_gap(self, engine, ledger, locator):
        await record(ledger, locator, Phase.PROPOSE)
        await record(ledger, locator, Phase.IMPLEMENT)

        assert await engine.detect_next_phase("demo") is Phase.SPECIFY
        assert await engine.current_phase("demo") is Phase.IMPLEMENT

    @pytest.mark.asyncio
    async def test_cold_start_matches_writer(self, ledger, locator, project_root):
        writer = ResumptionEngine(ledger, Orchestrator(locator, {}))
        for phase in PHASE_ORDER[:3]:
            await record(ledger, locator, phase)
        before = await writer.get_workflow_status("demo")

        fresh_locator = ArtifactLocator(project_root)
        if isinstance(ledger, GitCommitLedger):
            fresh_ledger = GitCommitLedger(fresh_locator)
        else:
            fresh_ledger = JournalLedger(fresh_locator, ledger.journal_path)
        reader = ResumptionEngine(fresh_ledger, Orchestrator(fresh_locator, {}))

        assert await reader.get_workflow_status("demo") == before
        assert await reader.detect_next_phase("demo") is Phase.IMPLEMENT


class TestGateContracts:
    """Gate failure shapes."""

    @pytest.mark.asyncio
    async def test_release_missing_exactly_spec_plan_tasks(self, locator, project_root):
        write_constitution(project_root)
        write_artifact(locator, "demo", ArtifactKind.PROPOSAL)

        result = await artifact_gate(locator, "release", "demo")

        assert not result.passed
        assert sorted(result.missing_artifacts) == ["plan", "spec", "tasks"]

    def test_three_word_criterion(self):
        result = evaluate_isc_content(tracker_doc("User auth works"))

        assert not result.passed
        assert result.error_kind is ErrorKind.STRUCTURAL_VIOLATION
        [violation] = result.violations
        assert violation["rule"] == RULE_WORD_COUNT
        assert (violation["actual"], violation["expected_min"], violation["expected_max"]) == (3, 8, 12)

    @pytest.mark.parametrize("criterion, passes", [
        ("Password reset emails expire after thirty minutes", False),
        ("Password reset emails expire after thirty idle minutes", True),
        ("Password reset emails expire after thirty idle minutes for every user account", True),
        ("Password reset emails expire after thirty idle minutes for every single user account", False),
    ])
    def test_word_count_boundaries(self, criterion, passes):
        result = evaluate_isc_content(tracker_doc(criterion))

        assert result.passed is passes
        flagged = [v for v in result.violations if v["rule"] == RULE_WORD_COUNT]
        assert bool(flagged) is not passes

    def test_every_violation_reported(self):
        content = VALID_ISC.replace(
            "Database connection pool maintains exactly five active connections", "Pool ok"
        ).replace("Error messages include timestamp and correlation request identifier", "Errors fine")

        result = evaluate_isc_content(content)

        assert [v["row_id"] for v in result.violations] == ["ISC-C2", "ISC-C3"]


class TestExclusiveClaim:
    @pytest.mark.asyncio
    async def test_exactly_one_claim_wins(self, tmp_path):
        path = tmp_path / "specfirst.db"
        async with open_store(path) as store:
            await store.add_feature("f1", "auth")
            sessions = [await store.create_session() for _ in range(4)]

        async with AsyncExitStack() as stack:
            opened = [await stack.enter_async_context(open_store(path)) for _ in sessions]
            results = await asyncio.gather(*(
                handle.claim_feature(session.id, "f1") for handle, session in zip(opened, sessions)
            ))

        assert results.count(True) == 1
        async with open_store(path) as store:
            owner = (await store.get_feature("f1")).session_id
        assert owner == sessions[results.index(True)].id
