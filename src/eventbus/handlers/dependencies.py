"""
Module: dependencies.py
Description: Shared FastAPI dependencies for the event bus routers.
"""

from fastapi import Header, HTTPException, Request
from fastapi import status as status_codes

from eventbus.bus import EventBus


def get_event_bus(request: Request) -> EventBus:
    """
    Dependency to get the application's event bus.

    The bus is created by the application lifespan (or passed to
    create_app) and kept on app.state.

    Returns:
        EventBus instance shared by all requests
    """
    bus = getattr(request.app.state, "event_bus", None)
    if bus is None:
        raise HTTPException(
            status_code=status_codes.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event bus is not initialized"
        )
    return bus


def get_connection_id(x_connection_id: str = Header(..., alias="X-Connection-Id")) -> str:
    """
    Identity of the calling connection.

    Publishers are recorded as the event source; subscribers receive
    deliveries under this id.
    """
    connection_id = x_connection_id.strip()
    if not connection_id:
        raise HTTPException(
            status_code=status_codes.HTTP_400_BAD_REQUEST,
            detail="X-Connection-Id header must not be empty"
        )
    return connection_id
