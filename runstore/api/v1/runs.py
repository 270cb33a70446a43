"""
Run and snapshot endpoints.
"""

from typing import Any

from fastapi import APIRouter, Depends

from runstore.api.deps import ServiceContainer, get_container, get_coordinator, get_reconstructor
from runstore.core.exceptions import RunNotFoundError
from runstore.core.logging import get_logger
from runstore.orchestration.generation import GenerationCoordinator
from runstore.repositories.run_repo import parse_family
from runstore.services.reconstructor import SnapshotReconstructor

logger = get_logger(__name__)

router = APIRouter(prefix="/runs")


@router.get("/{family}")
async def list_runs(
    family: str,
    reconstructor: SnapshotReconstructor = Depends(get_reconstructor),
    coordinator: GenerationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    List the runs of a family, newest first.
    """
    run_family = parse_family(family)
    summaries = await reconstructor.list_runs(run_family)
    session = coordinator.get_session(run_family)

    return {
        "family": run_family.value,
        "runs": [
            {
                "run_id": summary.run.run_id,
                "path": str(summary.run.path),
                "created_at": summary.run.created_at.isoformat(),
                "modified_at": summary.modified_at.isoformat() if summary.modified_at else None,
                "state": summary.state,
                "is_latest": summary.is_latest,
            }
            for summary in summaries
        ],
        "session": session.to_dict() if session else None,
    }


@router.get("/{family}/snapshot")
async def get_snapshot(
    family: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Current snapshot of the latest run of a family.
    """
    view = container.views[parse_family(family)]
    return view.get_snapshot().to_payload()


@router.get("/{family}/{run_id}/snapshot")
async def get_run_snapshot(
    family: str,
    run_id: str,
    reconstructor: SnapshotReconstructor = Depends(get_reconstructor),
) -> dict[str, Any]:
    """
    Snapshot of one specific run, including superseded ones.
    """
    run_family = parse_family(family)
    run = await reconstructor.run_repository.require(run_id)
    if run.family != run_family:
        raise RunNotFoundError(run_id)
    snapshot = await reconstructor.reconstruct(run)
    return snapshot.to_payload()


@router.post("/{family}/refresh")
async def refresh_snapshot(
    family: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Re-derive the snapshot from disk.
    """
    view = container.views[parse_family(family)]
    snapshot = await view.refresh()
    return snapshot.to_payload()


@router.delete("/{family}")
async def clear_family(
    family: str,
    coordinator: GenerationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Delete every run and consolidated file of a family.
    """
    removed = await coordinator.clear_all(parse_family(family))
    return {"status": "cleared", "removed": removed}


@router.delete("")
async def clear_all(
    coordinator: GenerationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Delete every run of every family.
    """
    removed = await coordinator.clear_all()
    return {"status": "cleared", "removed": removed}
