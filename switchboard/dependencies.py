from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.account_manager import AccountManager
from switchboard.modules.proxy.account_selector import AccountSelector
from switchboard.modules.proxy.router import Router
from switchboard.modules.routing.service import RoutingService


@dataclass(slots=True)
class Services:
    """Process-wide singletons built once in the application lifespan."""

    store: AccountStore
    manager: AccountManager
    selector: AccountSelector
    routing: RoutingService
    router: Router


@dataclass(slots=True)
class RoutingContext:
    service: RoutingService


@dataclass(slots=True)
class HealthContext:
    store: AccountStore
    selector: AccountSelector


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services not initialized")
    return services


def get_routing_context(request: Request) -> RoutingContext:
    return RoutingContext(service=get_services(request).routing)


def get_health_context(request: Request) -> HealthContext:
    services = get_services(request)
    return HealthContext(store=services.store, selector=services.selector)
