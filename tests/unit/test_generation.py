"""
Unit tests for generation sessions and their state machine.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from runstore.core.constants import ArtifactKind, GenerationPhase, RunFamily, RunState
from runstore.core.exceptions import (
    FinalizationFailure,
    GenerationCancelledError,
    GenerationError,
    RunCreationError,
    StateTransitionError,
)
from runstore.orchestration.generation import (
    CancellationToken,
    GenerationCoordinator,
    GenerationSession,
)
from runstore.orchestration.state_machine import GenerationStateMachine
from runstore.services.snapshot_view import create_views


class TestGenerationStateMachine:
    """Tests for allowed transitions and history."""

    def test_initial_state(self) -> None:
        machine = GenerationStateMachine(RunFamily.PRODUCT_DOCS)

        assert machine.current == GenerationPhase.IDLE
        assert not machine.is_terminal
        assert [h.state for h in machine.history] == [GenerationPhase.IDLE]

    def test_iteration_cycle(self) -> None:
        machine = GenerationStateMachine(RunFamily.ARCHITECTURE_INSIGHTS)

        for _ in range(2):
            machine.transition(GenerationPhase.AWAITING_ITERATION, iteration=1)
            machine.transition(GenerationPhase.SUBMITTING)
        machine.transition(GenerationPhase.FINALIZING)
        machine.transition(GenerationPhase.COMPLETE)

        assert machine.is_terminal
        assert machine.history[1].data == {"iteration": 1}
        assert len(machine.history) == 7

    def test_repeated_submission_keeps_history_short(self) -> None:
        machine = GenerationStateMachine(RunFamily.PRODUCT_DOCS)

        for _ in range(5):
            machine.transition(GenerationPhase.SUBMITTING)

        assert [h.state for h in machine.history] == [GenerationPhase.IDLE, GenerationPhase.SUBMITTING]

    @pytest.mark.parametrize(
        "path,target",
        [
            ([], GenerationPhase.COMPLETE),
            ([GenerationPhase.FINALIZING], GenerationPhase.CANCELLED),
            ([GenerationPhase.CANCELLED], GenerationPhase.SUBMITTING),
            ([GenerationPhase.FINALIZING, GenerationPhase.COMPLETE], GenerationPhase.FAILED),
        ],
    )
    def test_invalid_transitions(self, path, target) -> None:
        machine = GenerationStateMachine(RunFamily.PRODUCT_DOCS)
        for state in path:
            machine.transition(state)

        with pytest.raises(StateTransitionError) as exc_info:
            machine.transition(target)

        assert exc_info.value.code == "INVALID_STATE_TRANSITION"
        assert exc_info.value.details["to_state"] == target.value

    def test_fail_records_error(self) -> None:
        machine = GenerationStateMachine(RunFamily.PRODUCT_DOCS)
        machine.transition(GenerationPhase.SUBMITTING)

        machine.fail("disk full")

        assert machine.current == GenerationPhase.FAILED
        assert machine.history[-1].error == "disk full"


class TestGenerationSession:
    """Tests for the producer contract."""

    @pytest.mark.asyncio
    async def test_product_docs_flow(self, writer, run_context, reconstructor) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()

        await session.on_product_purpose_analysis({"productPurpose": "Docs"})
        await session.on_file_summary({"file": "src/a.ts", "role": "ui"}, 1, 2)
        await session.on_file_summary({"file": "src/b.ts", "role": "api"}, 2, 2)
        await session.on_module_summary({"module": "src", "summary": "Sources"}, 1, 1)
        run_id = session.run_id
        path = await session.finalize({"overview": "Final", "modules": []})

        assert session.phase == GenerationPhase.COMPLETE
        assert path.parent.name == run_id
        assert run_context.current_run(RunFamily.PRODUCT_DOCS) is None

        snapshot = await reconstructor.snapshot_latest(RunFamily.PRODUCT_DOCS)
        assert snapshot.state == RunState.FINALIZED
        assert snapshot.document["overview"] == "Final"

    @pytest.mark.asyncio
    async def test_insights_flow(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.ARCHITECTURE_INSIGHTS, writer, run_context).begin()

        session.on_insights_iteration_start(1, 2)
        assert session.phase == GenerationPhase.AWAITING_ITERATION
        path = await session.on_insights_iteration({"strengths": ["a"]}, 1, 2)

        assert session.phase == GenerationPhase.SUBMITTING
        assert path.name.endswith("-iteration-1.json")
        assert session.run_id == path.parent.name

    @pytest.mark.asyncio
    async def test_rejects_output_of_other_family(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.ARCHITECTURE_INSIGHTS, writer, run_context)

        with pytest.raises(GenerationError):
            await session.on_file_summary({"file": "a.ts"}, 1)

        with pytest.raises(GenerationError):
            GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).on_insights_iteration_start(1)

    @pytest.mark.asyncio
    async def test_cancel_rejects_later_items(self, writer, run_context, docs_dir: Path) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()
        await session.on_file_summary({"file": "a.ts"}, 1)
        run_dir = docs_dir / session.run_id
        before = sorted(p.name for p in run_dir.rglob("*"))

        session.cancel()

        with pytest.raises(GenerationCancelledError) as exc_info:
            await session.on_file_summary({"file": "b.ts"}, 2)
        assert exc_info.value.status_code == 409
        assert session.phase == GenerationPhase.CANCELLED
        assert sorted(p.name for p in run_dir.rglob("*")) == before

    @pytest.mark.asyncio
    async def test_external_token_cancels_session(self, writer, run_context) -> None:
        token = CancellationToken()
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context, token)

        token.cancel()

        with pytest.raises(GenerationCancelledError):
            await session.on_module_summary({"module": "src"}, 1)
        assert session.phase == GenerationPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_finalize_failure_fails_session(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()
        await session.on_file_summary({"file": "a.ts"}, 1)
        writer.artifact_repository.write_text = AsyncMock(side_effect=OSError("read-only"))

        with pytest.raises(FinalizationFailure):
            await session.finalize({"overview": "x"})

        assert session.phase == GenerationPhase.FAILED
        assert session.machine.history[-1].error.startswith("Failed to finalize")

        with pytest.raises(GenerationError):
            await session.on_file_summary({"file": "b.ts"}, 2)

    @pytest.mark.asyncio
    async def test_fail_starts_fresh_run_next_time(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()
        await session.on_file_summary({"file": "a.ts"}, 1)

        session.fail(RuntimeError("model unavailable"))

        assert session.phase == GenerationPhase.FAILED
        assert run_context.current_run(RunFamily.PRODUCT_DOCS) is None
        assert session.to_dict()["history"][-1]["error"] == "model unavailable"



    @pytest.mark.asyncio
    async def test_non_text_values_still_finalize(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.ARCHITECTURE_INSIGHTS, writer, run_context).begin()
        await session.on_insights_iteration({"overallAssessment": {"score": 3}}, 1, 1)

        path = await session.finalize({"overallAssessment": 42, "strengths": [1, {"a": "b"}]})

        assert session.phase == GenerationPhase.COMPLETE
        markdown = path.with_suffix(".md").read_text()
        assert "42" in markdown
        assert '- {"a": "b"}' in markdown

    @pytest.mark.asyncio
    async def test_render_error_fails_session(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()
        await session.on_file_summary({"file": "a.ts"}, 1)
        writer.formatter.render = Mock(side_effect=ValueError("bad template"))

        with pytest.raises(FinalizationFailure):
            await session.finalize({"overview": "x"})

        assert session.phase == GenerationPhase.FAILED
        assert run_context.current_run(RunFamily.PRODUCT_DOCS) is None

    @pytest.mark.asyncio
    async def test_cancel_while_finalizing_lets_finalize_complete(self, writer, run_context) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()
        await session.on_file_summary({"file": "a.ts"}, 1)
        finalizing = asyncio.create_task(session.finalize({"overview": "x"}))
        await asyncio.sleep(0)

        session.cancel()
        path = await finalizing

        assert path.exists()
        assert session.phase == GenerationPhase.COMPLETE

    @pytest.mark.asyncio
    async def test_run_creation_failure_keeps_session_open(self, writer, run_context, docs_dir: Path) -> None:
        session = GenerationSession(RunFamily.PRODUCT_DOCS, writer, run_context).begin()
        docs_dir.parent.mkdir(parents=True)
        docs_dir.write_text("")

        with pytest.raises(RunCreationError):
            await session.on_file_summary({"file": "a.ts"}, 1)
        assert session.phase == GenerationPhase.SUBMITTING

        docs_dir.unlink()
        path = await session.on_file_summary({"file": "a.ts"}, 1)

        assert path.exists()
        assert session.phase == GenerationPhase.SUBMITTING
        assert session.run_id == path.parent.parent.name


class TestGenerationCoordinator:
    """Tests for starting sessions and clearing runs."""

    @pytest.fixture
    def coordinator(self, writer, run_context, run_repository, reconstructor, hub, docs_dir) -> GenerationCoordinator:
        return GenerationCoordinator(
            writer=writer,
            run_context=run_context,
            run_repository=run_repository,
            reconstructor=reconstructor,
            views=create_views(reconstructor, hub, docs_dir),
        )

    @pytest.mark.asyncio
    async def test_new_session_supersedes_active_one(self, coordinator) -> None:
        first = coordinator.start("product-docs")
        await first.on_file_summary({"file": "a.ts"}, 1)

        second = coordinator.start(RunFamily.PRODUCT_DOCS)
        await second.on_file_summary({"file": "a.ts"}, 1)

        assert first.phase == GenerationPhase.CANCELLED
        assert coordinator.get_session(RunFamily.PRODUCT_DOCS) is second
        assert second.run_id != first.run_id

    @pytest.mark.asyncio
    async def test_clear_all_removes_runs_and_empties_views(self, coordinator, run_repository) -> None:
        docs = coordinator.start(RunFamily.PRODUCT_DOCS)
        await docs.on_file_summary({"file": "a.ts"}, 1)
        insights = coordinator.start(RunFamily.ARCHITECTURE_INSIGHTS)
        await insights.on_insights_iteration({"strengths": ["s"]}, 1)
        for view in coordinator.views.values():
            await view.start(watch=False)

        removed = await coordinator.clear_all()

        assert removed == {"product-docs": 1, "architecture-insights": 1}
        assert await run_repository.list() == []
        assert docs.phase == GenerationPhase.CANCELLED
        assert coordinator.get_session(RunFamily.PRODUCT_DOCS) is None
        assert all(view.get_snapshot().is_empty for view in coordinator.views.values())

    @pytest.mark.asyncio
    async def test_clear_one_family(self, coordinator, reconstructor) -> None:
        docs = coordinator.start(RunFamily.PRODUCT_DOCS)
        await docs.on_file_summary({"file": "a.ts"}, 1)
        insights = coordinator.start(RunFamily.ARCHITECTURE_INSIGHTS)
        await insights.on_insights_iteration({"strengths": ["s"]}, 1)

        removed = await coordinator.clear_all("architecture-insights")

        assert removed == {"architecture-insights": 1}
        assert (await reconstructor.snapshot_latest(RunFamily.ARCHITECTURE_INSIGHTS)).is_empty
        assert not (await reconstructor.snapshot_latest(RunFamily.PRODUCT_DOCS)).is_empty
        assert docs.phase == GenerationPhase.SUBMITTING

    @pytest.mark.asyncio
    async def test_superseded_write_stays_out_of_the_new_run(self, coordinator, docs_dir: Path) -> None:
        first = coordinator.start(RunFamily.PRODUCT_DOCS)
        in_flight = asyncio.create_task(first.on_file_summary({"file": "old.ts"}, 1, 2))
        await asyncio.sleep(0)

        second = coordinator.start(RunFamily.PRODUCT_DOCS)
        await second.on_file_summary({"file": "new.ts"}, 1, 1)

        with pytest.raises(GenerationCancelledError):
            await in_flight

        runs = [p for p in docs_dir.iterdir() if p.is_dir()]
        assert [p.name for p in runs] == [second.run_id]
        aggregate = json.loads((runs[0] / "file-summaries.json").read_text())
        assert aggregate["items"] == [{"file": "new.ts"}]

    @pytest.mark.asyncio
    async def test_pinned_run_is_not_recreated_after_clear(self, coordinator, writer, docs_dir: Path) -> None:
        session = coordinator.start(RunFamily.PRODUCT_DOCS)
        await session.on_file_summary({"file": "a.ts"}, 1, 2)
        run = coordinator.run_context.current_run(RunFamily.PRODUCT_DOCS)

        await coordinator.clear_all(RunFamily.PRODUCT_DOCS)
        # A write that was already past the session's checks when the clear ran
        result = await writer.save_item(ArtifactKind.FILE_SUMMARIES, {"file": "b.ts"}, 2, 2, run=run)

        assert result is None
        assert not run.path.exists()
        assert not any(docs_dir.iterdir())
