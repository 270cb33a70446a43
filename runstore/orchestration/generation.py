"""
Generation sessions: the producer-facing side of the store.

A session receives the partial outputs of one generation invocation,
advances its state machine and hands every output to the writer.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from runstore.core.constants import (
    PRODUCT_PURPOSE_DOCUMENT,
    ArtifactKind,
    GenerationPhase,
    RunFamily,
)
from runstore.core.exceptions import (
    GenerationCancelledError,
    GenerationError,
    PersistenceError,
    RunCreationError,
)
from runstore.core.logging import LogContext, get_logger
from runstore.domain.run import Run
from runstore.orchestration.state_machine import GenerationStateMachine
from runstore.repositories.run_repo import FileSystemRunRepository, parse_family
from runstore.services.artifact_writer import IncrementalArtifactWriter
from runstore.services.reconstructor import SnapshotReconstructor
from runstore.services.run_context import RunContextManager
from runstore.services.snapshot_view import SnapshotView

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation signal checked between items."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self, family: str = "generation") -> None:
        if self.cancelled:
            raise GenerationCancelledError(family)


class GenerationSession:
    """
    Producer contract for one generation invocation of a family.

    The session writes into the run it opened first and nowhere else, so a
    superseded session can never touch its successor's run. Items arriving
    after cancellation or after the session ended are rejected; the run
    directory is left exactly as it is.
    """

    def __init__(
        self,
        family: RunFamily | str,
        writer: IncrementalArtifactWriter,
        run_context: RunContextManager,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.family = parse_family(family)
        self.writer = writer
        self.run_context = run_context
        self.token = token or CancellationToken()
        self.machine = GenerationStateMachine(self.family)
        self._run: Optional[Run] = None

    @property
    def phase(self) -> GenerationPhase:
        return self.machine.current

    @property
    def run_id(self) -> Optional[str]:
        return self.machine.state.run_id

    def begin(self) -> "GenerationSession":
        """Start a fresh run for this family on the next write."""
        self.run_context.reset_run(self.family)
        logger.info("Generation started", family=self.family.value)
        return self

    def _guard(self) -> None:
        if self.token.cancelled and not self.machine.is_terminal:
            self.machine.transition(GenerationPhase.CANCELLED)
        self.token.raise_if_cancelled(self.family.value)
        if self.machine.is_terminal:
            raise GenerationError(
                self.family.value,
                message=f"Generation of {self.family.value} has already ended",
                state=self.phase.value,
            )

    def _require_family(self, family: RunFamily) -> None:
        if self.family != family:
            raise GenerationError(
                self.family.value,
                message=f"{family.value} output sent to a {self.family.value} session",
                state=self.phase.value,
            )

    async def _resolve_run(self) -> Run:
        if self._run is None:
            run = await self.run_context.get_or_create_run(self.family)
            if self.token.cancelled and self.phase != GenerationPhase.FINALIZING:
                # Superseded while the run was being opened
                self.run_context.discard(run)
                self._guard()
            self._run = run
            self.machine.state.run_id = run.run_id
        return self._run

    def _close_run(self) -> None:
        if self._run is not None:
            self.writer.release(self._run)
        else:
            self.run_context.reset_run(self.family)

    async def _persist(self, save: Callable[[Run], Awaitable[Optional[Path]]]) -> Optional[Path]:
        try:
            run = await self._resolve_run()
            return await save(run)
        except RunCreationError:
            # Nothing was opened; the next output tries again
            raise
        except PersistenceError as e:
            self.machine.fail(e.message)
            raise

    async def _save_item(self, kind: ArtifactKind, item: dict[str, Any], index: int, total: Optional[int]) -> Optional[Path]:
        self._guard()
        self._require_family(RunFamily.PRODUCT_DOCS)
        self.machine.transition(GenerationPhase.SUBMITTING)
        return await self._persist(lambda run: self.writer.save_item(kind, item, index, total, run=run))

    async def on_file_summary(self, item: dict[str, Any], index: int, total: Optional[int] = None) -> Optional[Path]:
        """A file summary arrived."""
        return await self._save_item(ArtifactKind.FILE_SUMMARIES, item, index, total)

    async def on_module_summary(self, item: dict[str, Any], index: int, total: Optional[int] = None) -> Optional[Path]:
        """A module summary arrived."""
        return await self._save_item(ArtifactKind.MODULE_SUMMARIES, item, index, total)

    async def on_product_purpose_analysis(self, document: dict[str, Any]) -> Optional[Path]:
        """The product purpose analysis arrived."""
        self._guard()
        self.machine.transition(GenerationPhase.SUBMITTING)
        return await self._persist(
            lambda run: self.writer.save_document(self.family, PRODUCT_PURPOSE_DOCUMENT, document, run=run)
        )

    def on_insights_iteration_start(self, iteration: int, max_iterations: Optional[int] = None) -> None:
        """An insights iteration request was sent."""
        self._guard()
        self._require_family(RunFamily.ARCHITECTURE_INSIGHTS)
        self.machine.transition(
            GenerationPhase.AWAITING_ITERATION,
            iteration=iteration,
            max_iterations=max_iterations,
        )

    async def on_insights_iteration(
        self,
        document: dict[str, Any],
        iteration: int,
        max_iterations: Optional[int] = None,
    ) -> Optional[Path]:
        """The result of an insights iteration arrived."""
        self._guard()
        self._require_family(RunFamily.ARCHITECTURE_INSIGHTS)
        self.machine.transition(GenerationPhase.SUBMITTING, iteration=iteration)
        return await self._persist(
            lambda run: self.writer.save_iteration(document, iteration, max_iterations, run=run)
        )

    async def finalize(self, document: dict[str, Any]) -> Path:
        """
        Write the consolidated document and complete the session.

        Raises:
            FinalizationFailure: If the document could not be rendered or
                written; the session is then ``failed``
        """
        self._guard()
        self.machine.transition(GenerationPhase.FINALIZING)
        with LogContext(family=self.family.value, run_id=self.run_id):
            try:
                run = await self._resolve_run()
                path = await self.writer.save_final(self.family, document, run=run)
            except GenerationError:
                raise
            except PersistenceError as e:
                self.machine.fail(e.message)
                raise
            except Exception as e:
                self.machine.fail(str(e))
                self._close_run()
                raise
            self.machine.transition(GenerationPhase.COMPLETE)
            logger.info("Generation complete", path=str(path))
        return path

    def fail(self, error: BaseException | str) -> None:
        """Abandon the session after a producer error."""
        if self.machine.is_terminal:
            return
        self.machine.fail(str(error))
        self._close_run()
        logger.warning("Generation failed", family=self.family.value, run_id=self.run_id, error=str(error))

    def cancel(self) -> None:
        """Request cancellation; later outputs are rejected."""
        self.token.cancel()
        # A finalizing session completes or fails on its own
        if self.machine.is_terminal or self.phase == GenerationPhase.FINALIZING:
            return
        self.machine.transition(GenerationPhase.CANCELLED)
        self._close_run()
        logger.info("Generation cancelled", family=self.family.value, run_id=self.run_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "family": self.family.value,
            "phase": self.phase.value,
            "run_id": self.run_id,
            "history": [
                {
                    "state": entry.state.value,
                    "entered_at": entry.entered_at.isoformat(),
                    "error": entry.error,
                }
                for entry in self.machine.history
            ],
        }


class GenerationCoordinator:
    """
    Starts generation sessions and clears stored runs.

    At most one active session exists per family; starting another cancels it.
    """

    def __init__(
        self,
        writer: IncrementalArtifactWriter,
        run_context: RunContextManager,
        run_repository: FileSystemRunRepository,
        reconstructor: SnapshotReconstructor,
        views: Optional[dict[RunFamily, SnapshotView]] = None,
    ) -> None:
        self.writer = writer
        self.run_context = run_context
        self.run_repository = run_repository
        self.reconstructor = reconstructor
        self.views = views or {}
        self._sessions: dict[RunFamily, GenerationSession] = {}

    def start(self, family: RunFamily | str, token: Optional[CancellationToken] = None) -> GenerationSession:
        """Begin a new generation of ``family``."""
        family = parse_family(family)
        previous = self._sessions.get(family)
        if previous is not None and not previous.machine.is_terminal:
            logger.info("Superseding active generation", family=family.value, run_id=previous.run_id)
            previous.cancel()

        session = GenerationSession(family, self.writer, self.run_context, token).begin()
        self._sessions[family] = session
        return session

    def get_session(self, family: RunFamily | str) -> Optional[GenerationSession]:
        """Most recent session of a family."""
        return self._sessions.get(parse_family(family))

    async def clear_all(self, family: Optional[RunFamily | str] = None) -> dict[str, int]:
        """
        Delete stored runs and consolidated files of one family, or of all.

        Active sessions of the cleared families are cancelled and views are
        refreshed to the empty snapshot.

        Returns:
            Number of run directories removed per family
        """
        families = [parse_family(family)] if family is not None else list(RunFamily)
        removed: dict[str, int] = {}
        for target in families:
            session = self._sessions.pop(target, None)
            if session is not None:
                session.cancel()

            removed[target.value] = await self.run_repository.delete_family(target)
            self.run_context.reset_run(target)
            self.reconstructor.invalidate(target)

            view = self.views.get(target)
            if view is not None:
                await view.refresh()

        logger.info("Runs cleared", removed=removed)
        return removed
