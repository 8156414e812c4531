"""
Service container dependency (overridden in tests).
"""
from app.domain.services.container import ServiceContainer, get_services


def get_service_container() -> ServiceContainer:
    return get_services()
