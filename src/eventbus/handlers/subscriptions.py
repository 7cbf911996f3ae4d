"""
Module: subscriptions.py
Description: Subscription management handlers.

- POST /subscriptions: Subscribe the calling connection to an event type
- GET /subscriptions: List the calling connection's subscriptions
- PUT /subscriptions: Replace the calling connection's subscriptions
- GET /subscriptions/{subscription_id}: Subscription details
- DELETE /subscriptions/{subscription_id}: Unsubscribe
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi import status as status_codes

from eventbus.bus import EventBus
from eventbus.exceptions import EventBusError
from eventbus.handlers.dependencies import get_connection_id, get_event_bus
from eventbus.models.request import SubscribeRequest, SyncSubscriptionsRequest
from eventbus.models.response import SubscriptionResponse, SyncSubscriptionsResponse

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", status_code=status_codes.HTTP_201_CREATED, response_model=SubscriptionResponse)
async def create_subscription(
    request: SubscribeRequest,
    connection_id: str = Depends(get_connection_id),
    bus: EventBus = Depends(get_event_bus)
) -> SubscriptionResponse:
    """
    Subscribe the calling connection to an event type.

    Subscribing again with the same type, publisher and filter returns the
    existing subscription.

    Raises:
        HTTPException: 400 if the filter is invalid
    """
    try:
        subscription = await bus.subscribe(
            connection_id,
            request.event_type,
            publisher=request.publisher,
            filter_spec=request.filter,
        )
    except EventBusError as e:
        raise HTTPException(
            status_code=status_codes.HTTP_400_BAD_REQUEST,
            detail=f"Invalid subscription: {e}"
        )

    return SubscriptionResponse.from_subscription(subscription)


@router.get("", response_model=List[SubscriptionResponse])
async def list_subscriptions(
    connection_id: str = Depends(get_connection_id),
    bus: EventBus = Depends(get_event_bus)
) -> List[SubscriptionResponse]:
    subscriptions = await bus.list_subscriptions(connection_id)
    return [SubscriptionResponse.from_subscription(s) for s in subscriptions]


@router.put("", response_model=SyncSubscriptionsResponse)
async def sync_subscriptions(
    request: SyncSubscriptionsRequest,
    connection_id: str = Depends(get_connection_id),
    bus: EventBus = Depends(get_event_bus)
) -> SyncSubscriptionsResponse:
    """
    Replace the calling connection's subscriptions with the given list.

    Subscriptions are matched by (event_type, publisher); unlisted ones
    are removed and changed filters are updated in place.

    Raises:
        HTTPException: 400 if the list is rejected by the bus
    """
    try:
        result = await bus.sync_subscriptions(connection_id, request.subscriptions)
    except EventBusError as e:
        raise HTTPException(
            status_code=status_codes.HTTP_400_BAD_REQUEST,
            detail=f"Invalid subscription: {e}"
        )

    return SyncSubscriptionsResponse.from_result(result)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    bus: EventBus = Depends(get_event_bus)
) -> SubscriptionResponse:
    subscription = await bus.get_subscription(subscription_id)
    if subscription is None:
        raise HTTPException(
            status_code=status_codes.HTTP_404_NOT_FOUND,
            detail=f"Subscription {subscription_id} not found"
        )
    return SubscriptionResponse.from_subscription(subscription)


@router.delete("/{subscription_id}", status_code=status_codes.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: str,
    bus: EventBus = Depends(get_event_bus)
) -> Response:
    if not await bus.unsubscribe(subscription_id):
        raise HTTPException(
            status_code=status_codes.HTTP_404_NOT_FOUND,
            detail=f"Subscription {subscription_id} not found"
        )
    return Response(status_code=status_codes.HTTP_204_NO_CONTENT)
