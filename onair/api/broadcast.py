from fastapi import APIRouter, BackgroundTasks, Depends, Header, Response
from sqlalchemy.orm import Session

from onair.db import get_db, utcnow
from onair.errors import STATUS_BY_KIND
from onair.schemas.broadcast import ActionRequest, ActionResult
from onair.services.events import EventQueue, deliver_events
from onair.services.orchestrator import Orchestrator
from onair.services.provider import TranscodingProvider, get_provider

router = APIRouter(prefix="/broadcast", tags=["broadcast"])


def get_clock():
    return utcnow


def _run(
    db: Session,
    provider: TranscodingProvider,
    clock,
    background_tasks: BackgroundTasks,
    response: Response,
    channel_id: str,
    request: ActionRequest,
    account_id: str | None,
) -> ActionResult:
    events = EventQueue()
    orchestrator = Orchestrator(db, provider, events=events, clock=clock)
    result = orchestrator.dispatch(request.action, channel_id, request.data, request.output_config, account_id)
    if not result.success and result.error is not None:
        response.status_code = STATUS_BY_KIND.get(result.error.kind, 500)
    # Audit rows are written after the response so they never delay or fail the action.
    background_tasks.add_task(deliver_events, db.get_bind(), events.drain())
    return result


@router.post("/{channel_id}/actions", response_model=ActionResult)
def run_action(
    channel_id: str,
    payload: ActionRequest,
    background_tasks: BackgroundTasks,
    response: Response,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
    provider: TranscodingProvider = Depends(get_provider),
    clock=Depends(get_clock),
):
    return _run(db, provider, clock, background_tasks, response, channel_id, payload, x_account_id)


@router.get("/{channel_id}/status", response_model=ActionResult)
def channel_status(
    channel_id: str,
    background_tasks: BackgroundTasks,
    response: Response,
    include_provider: bool = False,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
    provider: TranscodingProvider = Depends(get_provider),
    clock=Depends(get_clock),
):
    request = ActionRequest(action="status", data={"include_provider": include_provider})
    return _run(db, provider, clock, background_tasks, response, channel_id, request, x_account_id)
