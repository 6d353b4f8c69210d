"""
Internal endpoints for other platform services.

Authenticated with the shared internal API key, never with user tokens.
"""

import logging

from fastapi import APIRouter, Body, Depends, status

from app.api.deps import get_offer_handler
from app.middleware.auth import verify_internal_api_key
from app.services.offer_events import OfferEvent, OfferEventHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", dependencies=[Depends(verify_internal_api_key)])


@router.post("/offer-events", status_code=status.HTTP_202_ACCEPTED)
async def receive_offer_event(
    event: OfferEvent = Body(...),
    handler: OfferEventHandler = Depends(get_offer_handler),
):
    """
    Record an offer event from the task service.

    Returns the id of the notification created for it.
    """
    notification = await handler.handle(event)
    logger.info(f"Handled {event.event} for offer {event.offerId}")
    return {"notificationId": notification.id, "userId": notification.user_id}
