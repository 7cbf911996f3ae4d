"""
Module: events.py
Description: Event publishing and retrieval handlers.

Implements the event endpoints of the event bus:
- POST /events: Publish an event (immediate, delayed or recurring)
- GET /events/{event_id}: Event details with its deliveries
- POST /events/{event_id}/ack: Out-of-band acknowledgment by a subscriber
- DELETE /events/{event_id}: Cancel an event (publisher only)

Dependencies: FastAPI, typing
Author: Event Bus Team
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as status_codes

from eventbus.bus import EventBus
from eventbus.exceptions import DuplicateEventError, EventBusError
from eventbus.handlers.dependencies import get_connection_id, get_event_bus
from eventbus.models.request import PublishEventRequest
from eventbus.models.response import EventResponse, OperationResponse
from eventbus.utils.logger import get_logger

router = APIRouter(prefix="/events", tags=["events"])
logger = get_logger(__name__)


@router.post("", status_code=status_codes.HTTP_201_CREATED, response_model=EventResponse)
async def publish_event(
    request: PublishEventRequest,
    connection_id: str = Depends(get_connection_id),
    bus: EventBus = Depends(get_event_bus)
) -> EventResponse:
    """
    Publish a new event.

    The calling connection becomes the event source. Matching
    subscriptions receive the event immediately, at deliver_at, or on
    every run of the cron schedule.

    Raises:
        HTTPException: 400 if deliver_at and cron are combined or cron is invalid
        HTTPException: 409 if the event id is already taken

    Example:
        POST /events
        X-Connection-Id: conn_shop
        {"type": "order.created", "data": {"order_id": 42}}
    """
    try:
        event = await bus.publish(
            source=connection_id,
            event_type=request.type,
            data=request.data,
            subject=request.subject,
            dataschema=request.dataschema,
            deliver_at=request.deliver_at,
            cron=request.cron,
            event_id=request.id,
            target=request.target,
        )

    except DuplicateEventError as e:
        raise HTTPException(status_code=status_codes.HTTP_409_CONFLICT, detail=str(e))

    except EventBusError as e:
        logger.warning(
            "Event validation failed",
            error=str(e),
            event_type=request.type,
            connection_id=connection_id
        )
        raise HTTPException(
            status_code=status_codes.HTTP_400_BAD_REQUEST,
            detail=f"Invalid event data: {e}"
        )

    return EventResponse.from_event(event)


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: str,
    bus: EventBus = Depends(get_event_bus)
) -> EventResponse:
    """
    Retrieve an event with the state of each of its deliveries.

    Raises:
        HTTPException: 404 if event not found
    """
    event = await bus.get_event(event_id)
    if event is None:
        raise HTTPException(
            status_code=status_codes.HTTP_404_NOT_FOUND,
            detail=f"Event {event_id} not found"
        )

    deliveries = await bus.get_deliveries(event_id)
    return EventResponse.from_event(event, deliveries)


@router.post("/{event_id}/ack", response_model=OperationResponse)
async def ack_event(
    event_id: str,
    connection_id: str = Depends(get_connection_id),
    bus: EventBus = Depends(get_event_bus)
) -> OperationResponse:
    """
    Acknowledge an event processed out-of-band by the calling connection.

    Used by subscribers that answered a delivery with retryAfter and
    finished the work later.

    Raises:
        HTTPException: 404 if the connection has no pending delivery of the event
    """
    if not await bus.ack(event_id, connection_id):
        raise HTTPException(
            status_code=status_codes.HTTP_404_NOT_FOUND,
            detail=f"No pending delivery of event {event_id} for connection {connection_id}"
        )

    logger.info("Event acknowledged", event_id=event_id, connection_id=connection_id)
    return OperationResponse(success=True, message="Event acknowledged")


@router.delete("/{event_id}", response_model=OperationResponse)
async def cancel_event(
    event_id: str,
    connection_id: str = Depends(get_connection_id),
    bus: EventBus = Depends(get_event_bus)
) -> OperationResponse:
    """
    Cancel an event published by the calling connection.

    Raises:
        HTTPException: 404 if the event does not exist or was published by another connection
    """
    if not await bus.cancel(event_id, connection_id):
        raise HTTPException(
            status_code=status_codes.HTTP_404_NOT_FOUND,
            detail=f"Event {event_id} not found"
        )

    return OperationResponse(success=True, message="Event cancelled")
