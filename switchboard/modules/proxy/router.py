from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

from switchboard.core.balancer.logic import is_rate_limit_status
from switchboard.core.balancer.types import AUTO_ACCOUNT_ID, PRIMARY_PROVIDER, ProviderKind
from switchboard.core.errors import (
    AllAccountsExhausted,
    AttemptRecord,
    ClientConfigError,
    UpstreamError,
    UpstreamHardError,
)
from switchboard.core.metrics import get_metrics
from switchboard.core.utils.request_id import ensure_request_id, get_request_id
from switchboard.core.utils.time import now_ms
from switchboard.modules.accounts.store import AccountStore
from switchboard.modules.proxy.account_manager import AccountManager, ReleaseFn
from switchboard.modules.proxy.account_selector import AccountSelector
from switchboard.modules.proxy.providers import (
    AccountCredential,
    CompletionEvent,
    CompletionRequest,
    ProviderRegistry,
    RoutedCompletion,
)
from switchboard.modules.proxy.sticky import FlowCursorStore, StickyCursor
from switchboard.modules.routing.models import ModelCatalog, normalize_model_name
from switchboard.modules.routing.repository import RoutingConfigRepository
from switchboard.modules.routing.schemas import RoutingConfig, RoutingFlow

ROUTE_PREFIX = "route:"

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RouteMode(str, Enum):
    FLOW = "flow"
    ACCOUNT = "account"


@dataclass(frozen=True, slots=True)
class RouteCandidate:
    index: int
    provider: ProviderKind
    account_id: str
    model_id: str


@dataclass(frozen=True, slots=True)
class RoutePlan:
    mode: RouteMode
    key: str
    candidates: tuple[RouteCandidate, ...]
    # Cursor namespace for flow routing; None for account routing.
    cursor_key: str | None = None


@dataclass(slots=True)
class _Success(Generic[T]):
    value: T
    candidate: RouteCandidate
    credential: AccountCredential
    attempts: int
    release: ReleaseFn


@dataclass(slots=True)
class _ChainState:
    attempts: list[AttemptRecord] = field(default_factory=list)
    attempted_indices: set[int] = field(default_factory=set)
    last_error: UpstreamError | None = None
    last_reason: str | None = None
    calls: int = 0


def _noop_release() -> None:
    return None


async def _aclose(iterator: AsyncIterator[CompletionEvent]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


class Router:
    """Resolves an inbound model id to a candidate chain and walks it until one succeeds.

    Only rate-limit class failures (429 and 5xx) advance the chain. Any other
    upstream status is a configuration or permission problem and is raised on
    first occurrence without touching rate-limit bookkeeping.
    """

    def __init__(
        self,
        *,
        config_repository: RoutingConfigRepository,
        store: AccountStore,
        selector: AccountSelector,
        manager: AccountManager,
        providers: ProviderRegistry,
        catalog: ModelCatalog,
        cursors: FlowCursorStore | None = None,
    ) -> None:
        self._config_repository = config_repository
        self._store = store
        self._selector = selector
        self._manager = manager
        self._providers = providers
        self._catalog = catalog
        self._cursors = cursors or FlowCursorStore()

    def resolve(self, model: str) -> RoutePlan:
        config = self._config_repository.load()
        requested = model.strip()

        if requested.startswith(ROUTE_PREFIX):
            name = requested[len(ROUTE_PREFIX) :].strip()
            flow = config.find_flow(name)
            if flow is None:
                raise ClientConfigError(f'No routing flow named "{name}"', reason="unknown_flow")
            return self._flow_plan(flow)

        flow = config.find_flow(requested)
        if flow is not None:
            return self._flow_plan(flow)

        active = config.active_flow()
        if active is not None:
            return self._flow_plan(active)

        canonical = normalize_model_name(requested)
        plan = self._account_plan(config, canonical)
        if plan is not None:
            return plan
        reason = "no_route" if self._catalog.is_official_model(canonical) else "unknown_model"
        raise ClientConfigError(f'No account routing configured for model "{requested}"', reason=reason)

    def _flow_plan(self, flow: RoutingFlow) -> RoutePlan:
        if not flow.entries:
            raise ClientConfigError(f'Routing flow "{flow.name}" has no entries', reason="empty_flow")
        candidates = tuple(
            RouteCandidate(index=index, provider=entry.provider, account_id=entry.account_id, model_id=entry.model_id)
            for index, entry in enumerate(flow.entries)
        )
        return RoutePlan(mode=RouteMode.FLOW, key=flow.name, candidates=candidates, cursor_key=flow.id)

    def _account_plan(self, config: RoutingConfig, model_id: str) -> RoutePlan | None:
        route = config.find_route(model_id)
        pairs: list[tuple[ProviderKind, str]] = []
        if route is not None and route.entries:
            pairs = [(entry.provider, entry.account_id) for entry in route.entries]
        elif config.account_routing.smart_switch:
            for kind in ProviderKind:
                if not self._catalog.serves(kind, model_id):
                    continue
                pairs.extend((kind, account.id) for account in self._store.list_accounts(kind) if not account.disabled)
        if not pairs:
            return None
        candidates = tuple(
            RouteCandidate(index=index, provider=provider, account_id=account_id, model_id=model_id)
            for index, (provider, account_id) in enumerate(pairs)
        )
        return RoutePlan(mode=RouteMode.ACCOUNT, key=model_id, candidates=candidates)

    async def route_completion(self, request: CompletionRequest) -> RoutedCompletion:
        ensure_request_id()
        plan = self.resolve(request.model)

        async def _call(candidate: RouteCandidate, credential: AccountCredential):
            client = self._providers.get(candidate.provider)
            return await client.complete(credential, candidate.model_id, request.messages, request.tools)

        success = await self._execute(plan, _call, keep_lock=False)
        return RoutedCompletion(
            result=success.value,
            provider=success.candidate.provider,
            account_id=success.credential.account_id,
            model_id=success.candidate.model_id,
            attempts=success.attempts,
        )

    async def route_completion_stream(self, request: CompletionRequest) -> AsyncIterator[CompletionEvent]:
        """Stream from the first candidate that produces an event.

        Failover happens only before the first event; once output has been
        yielded to the caller, upstream errors propagate unchanged.
        """
        ensure_request_id()
        plan = self.resolve(request.model)

        async def _open(candidate: RouteCandidate, credential: AccountCredential):
            client = self._providers.get(candidate.provider)
            iterator = client.stream(credential, candidate.model_id, request.messages, request.tools).__aiter__()
            try:
                first = await anext(iterator)
            except StopAsyncIteration:
                first = None
            except BaseException:
                await _aclose(iterator)
                raise
            return first, iterator

        success = await self._execute(plan, _open, keep_lock=True)
        first, iterator = success.value
        try:
            if first is not None:
                yield first
            async for event in iterator:
                yield event
        finally:
            try:
                await _aclose(iterator)
            finally:
                success.release()

    async def _execute(
        self,
        plan: RoutePlan,
        call: Callable[[RouteCandidate, AccountCredential], Awaitable[T]],
        *,
        keep_lock: bool,
    ) -> _Success[T]:
        state = _ChainState()
        try:
            if plan.mode == RouteMode.FLOW:
                success = await self._run_flow(plan, call, state, keep_lock=keep_lock)
            else:
                success = await self._run_in_order(plan, call, state, keep_lock=keep_lock)
        except UpstreamHardError:
            get_metrics().observe_route_request(mode=plan.mode.value, outcome="hard_error", attempts=state.calls)
            raise
        if success is None:
            get_metrics().observe_route_request(mode=plan.mode.value, outcome="exhausted", attempts=state.calls)
            raise self._exhausted(plan, state)
        get_metrics().observe_route_request(mode=plan.mode.value, outcome="success", attempts=state.calls)
        return success

    async def _run_flow(
        self,
        plan: RoutePlan,
        call: Callable[[RouteCandidate, AccountCredential], Awaitable[T]],
        state: _ChainState,
        *,
        keep_lock: bool,
    ) -> _Success[T] | None:
        candidates = plan.candidates
        total = len(candidates)
        cursor_key = plan.cursor_key or plan.key
        cursor = await self._cursors.get(cursor_key)
        cursor_index = self._cursor_index(candidates, cursor)

        start = 0
        if cursor is not None and cursor_index is not None:
            sticky = candidates[cursor_index]
            if not self._known_exhausted(sticky.provider, cursor.last_account_id):
                start = cursor_index

        for offset in range(total):
            candidate = candidates[(start + offset) % total]
            success = await self._try_candidate(plan, candidate, call, state, keep_lock=keep_lock)
            if success is not None:
                await self._cursors.record(cursor_key, candidate.index, success.credential.account_id)
                return success

        # Every entry was skipped or rate limited: one last attempt at the raw cursor position.
        fallback_index = cursor_index if cursor_index is not None else 0
        if fallback_index in state.attempted_indices:
            return None
        candidate = candidates[fallback_index]
        logger.info(
            "router_cursor_fallback flow=%s index=%s provider=%s account=%s request_id=%s",
            plan.key,
            fallback_index,
            candidate.provider.value,
            candidate.account_id,
            get_request_id(),
        )
        success = await self._try_candidate(plan, candidate, call, state, keep_lock=keep_lock, ignore_rate_limit=True)
        if success is not None:
            await self._cursors.record(cursor_key, candidate.index, success.credential.account_id)
        return success

    async def _run_in_order(
        self,
        plan: RoutePlan,
        call: Callable[[RouteCandidate, AccountCredential], Awaitable[T]],
        state: _ChainState,
        *,
        keep_lock: bool,
    ) -> _Success[T] | None:
        for candidate in plan.candidates:
            success = await self._try_candidate(plan, candidate, call, state, keep_lock=keep_lock)
            if success is not None:
                return success
        return None

    async def _try_candidate(
        self,
        plan: RoutePlan,
        candidate: RouteCandidate,
        call: Callable[[RouteCandidate, AccountCredential], Awaitable[T]],
        state: _ChainState,
        *,
        keep_lock: bool,
        ignore_rate_limit: bool = False,
    ) -> _Success[T] | None:
        if (
            not ignore_rate_limit
            and candidate.account_id != AUTO_ACCOUNT_ID
            and self._selector.is_rate_limited(candidate.provider, candidate.account_id)
        ):
            self._skip(plan, candidate, state, reason="rate_limited")
            return None
        if candidate.account_id != AUTO_ACCOUNT_ID and self._selector.is_disabled(
            candidate.provider, candidate.account_id
        ):
            self._skip(plan, candidate, state, reason="disabled")
            return None

        credential = await self._credential_for(candidate, ignore_rate_limit=ignore_rate_limit)
        if credential is None:
            self._skip(plan, candidate, state, reason="unavailable")
            return None

        state.attempted_indices.add(candidate.index)
        state.calls += 1
        logger.info(
            "router_attempt mode=%s key=%s index=%s provider=%s account=%s model=%s request_id=%s",
            plan.mode.value,
            plan.key,
            candidate.index,
            candidate.provider.value,
            credential.display,
            candidate.model_id,
            get_request_id(),
        )

        release = await self._selector.acquire_lock(candidate.provider, credential.account_id)
        try:
            value = await call(candidate, credential)
        except UpstreamError as exc:
            release()
            return self._handle_failure(plan, candidate, credential, exc, state)
        except BaseException:
            release()
            raise
        if not keep_lock:
            release()

        self._selector.mark_success(candidate.provider, credential.account_id)
        get_metrics().observe_route_attempt(provider=candidate.provider.value, outcome="success")
        state.attempts.append(
            AttemptRecord(
                provider=candidate.provider.value,
                account_id=credential.account_id,
                model_id=candidate.model_id,
                status=200,
                reason="success",
            )
        )
        return _Success(
            value=value,
            candidate=candidate,
            credential=credential,
            attempts=state.calls,
            release=release if keep_lock else _noop_release,
        )

    def _handle_failure(
        self,
        plan: RoutePlan,
        candidate: RouteCandidate,
        credential: AccountCredential,
        exc: UpstreamError,
        state: _ChainState,
    ) -> None:
        if not is_rate_limit_status(exc.status):
            get_metrics().observe_route_attempt(provider=candidate.provider.value, outcome="hard_error")
            logger.warning(
                "router_hard_error mode=%s key=%s provider=%s account=%s status=%s request_id=%s",
                plan.mode.value,
                plan.key,
                candidate.provider.value,
                credential.display,
                exc.status,
                get_request_id(),
            )
            raise UpstreamHardError(exc, account_id=credential.account_id) from exc

        decision = self._selector.mark_rate_limited_from_error(
            candidate.provider,
            credential.account_id,
            exc.status,
            exc.body,
            exc.retry_after,
            candidate.model_id,
        )
        reason = decision.reason.value if decision is not None else "rate_limited"
        if candidate.provider == PRIMARY_PROVIDER and candidate.account_id == AUTO_ACCOUNT_ID:
            self._selector.move_to_end_of_queue(candidate.provider, credential.account_id)
        state.last_error = exc
        state.last_reason = reason
        state.attempts.append(
            AttemptRecord(
                provider=candidate.provider.value,
                account_id=credential.account_id,
                model_id=candidate.model_id,
                status=exc.status,
                reason=reason,
            )
        )
        get_metrics().observe_route_attempt(provider=candidate.provider.value, outcome="rate_limited")
        return None

    def _skip(self, plan: RoutePlan, candidate: RouteCandidate, state: _ChainState, *, reason: str) -> None:
        logger.debug(
            "router_skip mode=%s key=%s index=%s provider=%s account=%s reason=%s",
            plan.mode.value,
            plan.key,
            candidate.index,
            candidate.provider.value,
            candidate.account_id,
            reason,
        )
        state.attempts.append(
            AttemptRecord(
                provider=candidate.provider.value,
                account_id=candidate.account_id,
                model_id=candidate.model_id,
                status=None,
                reason=reason,
            )
        )
        get_metrics().observe_route_attempt(provider=candidate.provider.value, outcome="skipped")

    def _cursor_index(self, candidates: tuple[RouteCandidate, ...], cursor: StickyCursor | None) -> int | None:
        """Position of the sticky entry in the current chain, or None when the cursor is stale.

        Flows can be edited while a cursor is held, so the recorded index is only
        trusted while it still names the recorded account. Otherwise the account is
        looked up by id.
        """
        if cursor is None:
            return None
        if cursor.last_index < len(candidates) and self._names_account(
            candidates[cursor.last_index], cursor.last_account_id
        ):
            return cursor.last_index
        for candidate in candidates:
            if candidate.account_id == cursor.last_account_id:
                return candidate.index
        return None

    def _names_account(self, candidate: RouteCandidate, account_id: str) -> bool:
        if candidate.account_id == AUTO_ACCOUNT_ID:
            # ``auto`` resolves to whichever primary account won last time.
            return candidate.provider == PRIMARY_PROVIDER and self._store.has_account(PRIMARY_PROVIDER, account_id)
        return candidate.account_id == account_id

    def _known_exhausted(self, provider: ProviderKind, account_id: str) -> bool:
        if account_id == AUTO_ACCOUNT_ID:
            return False
        return self._selector.is_rate_limited(provider, account_id)

    async def _credential_for(
        self,
        candidate: RouteCandidate,
        *,
        ignore_rate_limit: bool = False,
    ) -> AccountCredential | None:
        match candidate.provider:
            case ProviderKind.ANTIGRAVITY:
                if candidate.account_id == AUTO_ACCOUNT_ID:
                    return await self._manager.get_next_available_account()
                return await self._manager.get_account_by_id(
                    candidate.account_id,
                    ignore_rate_limit=ignore_rate_limit,
                )
            case ProviderKind.CODEX | ProviderKind.COPILOT:
                if candidate.account_id == AUTO_ACCOUNT_ID:
                    return None
                account = self._store.get_account(candidate.provider, candidate.account_id)
                if account is None:
                    return None
                return AccountCredential(
                    provider=candidate.provider,
                    account_id=account.id,
                    access_token=account.access_token,
                    display=account.display_name(),
                    project_id=account.project_id,
                )

    def _exhausted(self, plan: RoutePlan, state: _ChainState) -> AllAccountsExhausted:
        now = now_ms()
        waits = [
            until - now
            for candidate in plan.candidates
            if candidate.account_id != AUTO_ACCOUNT_ID
            and (until := self._selector.get_rate_limited_until(candidate.provider, candidate.account_id)) is not None
        ]
        retry_after_ms = max(0, min(waits)) if waits else None
        last = state.last_error
        logger.warning(
            "router_exhausted mode=%s key=%s attempts=%s last_status=%s reason=%s retry_after_ms=%s request_id=%s",
            plan.mode.value,
            plan.key,
            [f"{record.provider}:{record.account_id}:{record.status}:{record.reason}" for record in state.attempts],
            last.status if last is not None else None,
            state.last_reason,
            retry_after_ms,
            get_request_id(),
        )
        return AllAccountsExhausted(
            f'All accounts exhausted for {plan.mode.value} "{plan.key}"',
            reason=state.last_reason or "no_available_account",
            last_status=last.status if last is not None else None,
            last_body=last.body if last is not None else None,
            retry_after_ms=retry_after_ms,
            attempts=state.attempts,
        )
