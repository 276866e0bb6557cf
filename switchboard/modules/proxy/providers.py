from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from switchboard.core.balancer.types import ProviderKind
from switchboard.core.errors import ClientConfigError
from switchboard.modules.routing.schemas import ModelOption


@dataclass(frozen=True, slots=True)
class AccountCredential:
    provider: ProviderKind
    account_id: str
    access_token: str
    display: str
    project_id: str | None = None


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: Any


@dataclass(slots=True)
class CompletionRequest:
    model: str
    messages: list[ChatMessage]
    tools: list[dict[str, Any]] | None = None
    stream: bool = False


@dataclass(slots=True)
class CompletionResult:
    content_blocks: list[dict[str, Any]]
    stop_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class CompletionEvent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RoutedCompletion:
    result: CompletionResult
    provider: ProviderKind
    account_id: str
    model_id: str
    attempts: int


class ProviderClient(Protocol):
    """Wire adapter for one provider kind.

    Implementations raise :class:`switchboard.core.errors.UpstreamError` for every
    non-success upstream status; the router only inspects its status, body and
    retry hint.
    """

    async def complete(
        self,
        credential: AccountCredential,
        model_id: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> CompletionResult: ...

    def stream(
        self,
        credential: AccountCredential,
        model_id: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[CompletionEvent]: ...


@runtime_checkable
class ModelListingClient(Protocol):
    """Optional capability: providers whose model list is discovered per account."""

    async def list_models(self, credential: AccountCredential) -> list[ModelOption]: ...


class ProviderRegistry:
    def __init__(self, clients: Mapping[ProviderKind, ProviderClient] | None = None) -> None:
        self._clients: dict[ProviderKind, ProviderClient] = dict(clients or {})

    def register(self, provider: ProviderKind, client: ProviderClient) -> None:
        self._clients[provider] = client

    def find(self, provider: ProviderKind) -> ProviderClient | None:
        return self._clients.get(provider)

    def get(self, provider: ProviderKind) -> ProviderClient:
        client = self.find(provider)
        if client is None:
            raise ClientConfigError(
                f"No completion client registered for provider {provider.value}",
                reason="provider_unavailable",
            )
        return client
