from fastapi import Request

from family_events.services.container import Services


def get_services(request: Request) -> Services:
    """Services built by the app lifespan."""
    return request.app.state.services
