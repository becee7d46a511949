"""Request-scoped access to the application's service container."""

from fastapi import Request

from wind_tavern.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
