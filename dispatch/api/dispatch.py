from fastapi import APIRouter, Depends

from dispatch.application.actors import Actor
from dispatch.application.coordinator import DispatchCoordinator
from dispatch.application.schemas import QueueEntryRead, TimeoutRead, SweepRead
from .deps import require_admin, get_coordinator

router = APIRouter(prefix="/dispatch", tags=["dispatch"])

@router.get("/queue", response_model=list[QueueEntryRead])
def queue(actor: Actor = Depends(require_admin), coordinator: DispatchCoordinator = Depends(get_coordinator)):
    """Orders waiting for a courier."""
    return coordinator.queue_snapshot()

@router.get("/timeouts", response_model=list[TimeoutRead])
def timeouts(actor: Actor = Depends(require_admin), coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return [report.to_dict() for report in coordinator.timeouts]

@router.post("/sweep", response_model=SweepRead)
def sweep(actor: Actor = Depends(require_admin), coordinator: DispatchCoordinator = Depends(get_coordinator)):
    report = coordinator.sweep()
    return {
        "stale_couriers": report.stale_couriers,
        "expired_assignments": report.expired_assignments,
        "recovered": report.recovered,
        "assigned": report.assigned,
        "requeued": report.requeued,
        "dropped": report.dropped,
        "timeouts": [t.to_dict() for t in report.timeouts],
    }
