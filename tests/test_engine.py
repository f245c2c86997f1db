import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from engine import (
    CycleResult,
    CycleStatus,
    MomentumEngine,
    ProposalStateError,
    ProposalStatus,
    RepositoryRecord,
    current_cycle,
)
from fakes import ScriptedProvider, propose_turn, text_turn, verdict_turn
from gatekeeper import Gatekeeper
from pulse import PulseChecker
from researcher import Researcher
from scout import GitHubAPIError, ScoutResult
from storage import StorageError
from tools import ContextGatherer


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


@pytest.fixture
def build_engine(store, scout, cortex):
    """Crea un engine con guiones para el modelo investigador y el evaluador."""

    def build(model_turns=(), verdicts=()):
        model = ScriptedProvider(model_turns)
        evaluator = ScriptedProvider(verdicts)
        gatekeeper = Gatekeeper(evaluator, cortex, sleep=AsyncMock())
        researcher = Researcher(model, gatekeeper, ContextGatherer(scout), scout=scout)
        engine = MomentumEngine(store, scout, PulseChecker(scout), cortex, researcher)
        return engine, model, evaluator

    return build


async def test_active_repository_skips_research(build_engine, scout, store):
    scout.get_pushed_at.return_value = days_ago(1)
    engine, model, _ = build_engine()

    result = await engine.plan("https://github.com/acme/widgets")

    assert result.status == CycleStatus.ACTIVE
    assert result.days_since == pytest.approx(1.0, abs=1e-3)
    assert result.is_stagnant is False
    assert len(model.calls) == 0
    assert store.get_repository("acme/widgets")["status"] == "ACTIVE"


async def test_stagnant_repository_gets_reviewed_proposal(build_engine, scout, store):
    scout.get_pushed_at.return_value = days_ago(10)
    engine, _, _ = build_engine([propose_turn()], [verdict_turn(8, True)])

    result = await engine.plan("acme/widgets")

    assert result.status == CycleStatus.STAGNANT_PLANNING
    assert result.proposal.target_file == "README.md"
    assert result.evaluation.score == 8
    assert result.evaluation.is_safe is True

    payload = result.to_dict()
    assert payload["evaluation"] == {"score": 8, "reasoning": "ok", "is_safe": True}
    assert payload["proposal"]["cycle_id"] == result.cycle_id

    record = store.get_repository("acme/widgets")
    assert record["status"] == "STAGNANT_PLANNING"
    assert record["active_proposal"]["description"] == "Add a contributing guide"
    assert store.get_proposal(result.cycle_id)["status"] == "PENDING"


async def test_rejections_are_learned_before_acceptance(build_engine, scout, store):
    scout.get_pushed_at.return_value = days_ago(10)
    engine, model, evaluator = build_engine(
        [
            propose_turn(description="first idea"),
            propose_turn(description="second idea"),
            propose_turn(description="third idea"),
        ],
        [verdict_turn(4), verdict_turn(5), verdict_turn(8)],
    )

    result = await engine.plan("acme/widgets")

    assert result.status == CycleStatus.STAGNANT_PLANNING
    assert result.proposal.description == "third idea"
    assert store.count_memories("negative") == 2
    assert len(evaluator.calls) == 3
    assert len(model.calls) == 3


async def test_pulse_failure_is_not_persisted(build_engine, scout, store):
    scout.get_pushed_at.side_effect = GitHubAPIError("GET repo failed: Not found", 404)
    engine, model, _ = build_engine()

    result = await engine.plan("acme/missing")

    assert result.status == CycleStatus.FAILED
    assert "Not found" in result.error
    assert store.get_repository("acme/missing") is None
    assert len(model.calls) == 0


async def test_research_without_proposal_fails_cycle(build_engine, scout, store):
    scout.get_pushed_at.return_value = days_ago(10)
    engine, _, _ = build_engine([text_turn("nothing to do")])

    result = await engine.plan("acme/widgets")

    assert result.status == CycleStatus.FAILED
    assert "FINISHED_EMPTY" in result.error
    record = store.get_repository("acme/widgets")
    assert record["status"] == "FAILED"
    assert record["error"] == result.error
    assert record["days_since"] == pytest.approx(10.0, abs=1e-3)


async def test_storage_failure_during_research_fails_cycle(build_engine, scout, store):
    scout.get_pushed_at.return_value = days_ago(10)
    engine, _, _ = build_engine([propose_turn()], [verdict_turn(3)])

    with patch.object(store, "add_memory", side_effect=StorageError("disk full")):
        result = await engine.plan("acme/widgets")

    assert result.status == CycleStatus.FAILED
    assert "StorageError" in result.error


async def test_plan_merges_metadata(build_engine, scout, store):
    scout.get_pushed_at.return_value = days_ago(1)
    engine, _, _ = build_engine()

    await engine.plan("acme/widgets", {"owner": "team-a"})
    await engine.plan("acme/widgets", {"channel": "ops"})

    assert store.get_repository("acme/widgets")["metadata"] == {"owner": "team-a", "channel": "ops"}


async def planned_proposal(build_engine, scout):
    scout.get_pushed_at.return_value = days_ago(10)
    engine, _, _ = build_engine([propose_turn()], [verdict_turn(8)])
    result = await engine.plan("acme/widgets")
    return engine, result.proposal


async def test_execute_files_issue_once(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)

    result = await engine.execute(proposal)

    assert result.status == CycleStatus.COMPLETE
    assert result.issue_url == "https://github.com/acme/widgets/issues/1"
    scout.create_issue.assert_awaited_once_with("acme/widgets", proposal.title, proposal.body)

    record = store.get_repository("acme/widgets")
    assert record["status"] == "COMPLETE"
    assert record["unblocks"] == 1
    assert record["active_proposal"] is None
    assert store.get_proposal(proposal.cycle_id)["status"] == "ACCEPTED"
    assert store.count_memories("positive") == 1


async def test_execute_tracker_error_creates_no_positive_memory(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)
    scout.create_issue.side_effect = GitHubAPIError("Create issue failed: HTTP 500", 500)

    result = await engine.execute(proposal)

    assert result.status == CycleStatus.FAILED
    assert "HTTP 500" in result.error
    scout.create_issue.assert_awaited_once()
    assert store.count_memories("positive") == 0
    assert store.get_repository("acme/widgets")["status"] == "FAILED"


async def test_execute_propagates_memory_failure(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)

    with patch.object(store, "add_memory", side_effect=StorageError("disk full")):
        with pytest.raises(StorageError):
            await engine.execute(proposal)


async def test_human_rejection_is_remembered(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)

    await engine.reject(proposal, "We do not want docs changes")

    memories = store.recent_memories()
    assert memories[0]["type"] == "negative"
    assert "We do not want docs changes" in memories[0]["text"]
    assert memories[0]["metadata"]["source"] == "human"
    assert engine.proposal_status(proposal.cycle_id) == ProposalStatus.REJECTED
    assert store.get_repository("acme/widgets")["status"] == "STAGNANT_PLANNING"


async def test_load_proposal_crosses_the_boundary(build_engine, scout):
    engine, proposal = await planned_proposal(build_engine, scout)

    assert engine.load_proposal(proposal.cycle_id) == proposal
    assert engine.load_proposal("unknown") is None


async def test_list_and_untrack(build_engine, scout):
    scout.get_pushed_at.return_value = days_ago(1)
    engine, _, _ = build_engine()
    await engine.plan("acme/widgets")

    records = engine.list_repos()
    assert [r.repo_ref for r in records] == ["acme/widgets"]
    assert isinstance(records[0], RepositoryRecord)
    assert records[0].status == CycleStatus.ACTIVE

    assert engine.untrack("https://github.com/acme/widgets") == {"success": True}
    assert engine.list_repos() == []
    assert engine.untrack("acme/widgets")["success"] is False


def test_list_repos_degrades_on_read_error(build_engine, store):
    engine, _, _ = build_engine()
    with patch.object(store, "list_repositories", side_effect=StorageError("locked")):
        assert engine.list_repos() == []


def test_repository_record_round_trip():
    record = RepositoryRecord(repo_ref="acme/widgets", status=CycleStatus.COMPLETE, unblocks=2)
    assert RepositoryRecord.from_dict(record.to_dict()) == record


async def test_patrol_isolates_crashing_cycles(build_engine, store):
    store.upsert_repository("acme/gadgets", {"status": "ACTIVE"})
    store.upsert_repository("acme/widgets", {"status": "ACTIVE"})
    engine, _, _ = build_engine()

    async def fake_plan(repo_ref, metadata=None, research=True):
        if repo_ref == "acme/gadgets":
            raise RuntimeError("unexpected")
        return CycleResult(status=CycleStatus.ACTIVE, repo_ref=repo_ref)

    with patch.object(engine, "plan", side_effect=fake_plan):
        results = await engine.patrol(concurrency=2)

    assert [r.repo_ref for r in results] == ["acme/gadgets", "acme/widgets"]
    assert results[0].status == CycleStatus.FAILED
    assert "unexpected" in results[0].error
    assert results[1].status == CycleStatus.ACTIVE


async def test_reject_after_execute_is_refused(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)
    await engine.execute(proposal)

    with pytest.raises(ProposalStateError, match="ACCEPTED"):
        await engine.reject(proposal, "too late")

    assert engine.proposal_status(proposal.cycle_id) == ProposalStatus.ACCEPTED
    assert store.count_memories("negative") == 0


async def test_execute_twice_files_a_single_issue(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)
    await engine.execute(proposal)

    with pytest.raises(ProposalStateError):
        await engine.execute(proposal)

    scout.create_issue.assert_awaited_once()
    assert store.get_repository("acme/widgets")["unblocks"] == 1
    assert store.count_memories("positive") == 1


async def test_execute_after_rejection_is_refused(build_engine, scout, store):
    engine, proposal = await planned_proposal(build_engine, scout)
    await engine.reject(proposal, "not now")

    with pytest.raises(ProposalStateError, match="REJECTED"):
        await engine.execute(proposal)

    scout.create_issue.assert_not_awaited()
    assert store.get_repository("acme/widgets")["status"] == "STAGNANT_PLANNING"


async def test_execute_without_issue_url_warns(build_engine, scout, store, caplog):
    engine, proposal = await planned_proposal(build_engine, scout)
    scout.create_issue.return_value = ""
    caplog.set_level(logging.INFO, logger="momentum.engine")

    result = await engine.execute(proposal)

    assert result.status == CycleStatus.COMPLETE
    assert result.issue_url is None
    assert store.get_repository("acme/widgets")["issue_url"] is None
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING and r.name == "momentum.engine"]
    assert any("no URL" in r.getMessage() for r in warnings)


async def test_maintenance_plan_records_stagnation_without_model(build_engine, scout, store, embedder):
    scout.get_pushed_at.return_value = days_ago(10)
    engine, model, evaluator = build_engine()

    result = await engine.plan("acme/widgets", research=False)

    assert result.status == CycleStatus.STAGNANT_PLANNING
    assert result.proposal is None
    assert result.days_since == pytest.approx(10.0, abs=1e-3)
    assert len(model.calls) == 0
    assert len(evaluator.calls) == 0
    assert embedder.embed_calls == []

    record = store.get_repository("acme/widgets")
    assert record["status"] == "STAGNANT_PLANNING"
    assert record["days_since"] == pytest.approx(10.0, abs=1e-3)
    assert record["last_pulse_at"]
    assert record.get("active_proposal") is None
    assert store.get_proposal(result.cycle_id) is None


async def test_maintenance_patrol_refreshes_every_repository(build_engine, scout, store):
    store.upsert_repository("acme/gadgets", {"status": "ACTIVE", "days_since": 0.5})
    store.upsert_repository("acme/widgets", {"status": "ACTIVE", "days_since": 0.5})
    scout.get_pushed_at.return_value = days_ago(12)
    engine, model, _ = build_engine()

    results = await engine.patrol(maintenance_only=True)

    assert [r.status for r in results] == [CycleStatus.STAGNANT_PLANNING] * 2
    assert len(model.calls) == 0
    for ref in ("acme/gadgets", "acme/widgets"):
        record = store.get_repository(ref)
        assert record["days_since"] == pytest.approx(12.0, abs=1e-3)
        assert record["status"] == "STAGNANT_PLANNING"


async def test_plan_traces_phases_under_its_cycle(build_engine, scout, caplog):
    scout.get_pushed_at.return_value = days_ago(10)
    seen = []

    async def readme(full_name):
        seen.append(current_cycle.get())
        return ScoutResult(success=True, data="# Demo")

    scout.get_readme.side_effect = readme
    engine, _, _ = build_engine([propose_turn()], [verdict_turn(8)])
    caplog.set_level(logging.INFO, logger="momentum.engine")

    result = await engine.plan("acme/widgets")

    assert seen == [result.cycle_id]
    assert current_cycle.get() == "-"
    messages = [r.getMessage() for r in caplog.records if r.name == "momentum.engine"]
    assert any(m.startswith("[Trace] pulse finished") for m in messages)
    assert any(m.startswith("[Trace] research finished") for m in messages)
