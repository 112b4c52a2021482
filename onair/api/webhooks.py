import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from onair.api.broadcast import get_clock
from onair.db import get_db
from onair.errors import OnAirError
from onair.schemas.broadcast import ProviderWebhookIn
from onair.services.events import EventQueue, deliver_events
from onair.services.orchestrator import Orchestrator
from onair.services.provider import TranscodingProvider, get_provider

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/provider")
def provider_webhook(
    payload: ProviderWebhookIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    provider: TranscodingProvider = Depends(get_provider),
    clock=Depends(get_clock),
):
    events = EventQueue()
    orchestrator = Orchestrator(db, provider, events=events, clock=clock)
    try:
        data = orchestrator.handle_provider_event(payload)
        result = {"received": True, "handled": True, "data": data}
    except OnAirError as exc:
        db.rollback()
        # The provider only needs the acknowledgement; the audit row keeps the event.
        logger.warning("webhook %s not applied channel=%s: %s", payload.event, payload.channel_id, exc.message)
        result = {"received": True, "handled": False, "error": exc.to_dict()}
    background_tasks.add_task(deliver_events, db.get_bind(), events.drain())
    return result
