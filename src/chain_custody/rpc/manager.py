"""Per-chain RPC endpoint pools with health tracking and failover.

Every network call a chain provider makes goes through
:meth:`RpcFailoverManager.request`.  Endpoints are tried in priority order
(configuration list order), skipping any that are Unhealthy and still inside
their backoff window.  Transient failures demote the endpoint and move on to
the next one, up to ``max_endpoints_per_call`` distinct endpoints.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from chain_custody.config import CustodyConfig, FailoverPolicy
from chain_custody.errors import (
    EndpointRateLimited,
    EndpointTimeout,
    JsonRpcError,
    MalformedResponse,
    ProviderUnavailable,
    RateLimited,
    SubmissionOutcomeUnknown,
    TransientRpcError,
    UnsupportedChain,
)
from chain_custody.rpc.transport import JsonRpcTransport
from chain_custody.wallet.chains import ChainFamily, get_chain

logger = logging.getLogger("chain_custody.rpc.manager")

_PROBE_METHODS = {
    ChainFamily.EVM: "eth_blockNumber",
    ChainFamily.SOLANA: "getHealth",
}


class EndpointHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class EndpointSnapshot:
    """Point-in-time view of one endpoint, for operators."""

    chain: str
    url: str
    priority: int
    health: EndpointHealth
    consecutive_failures: int
    backoff_remaining: float
    last_error: Optional[str]


@dataclass(frozen=True)
class RpcResponse:
    result: Any
    endpoint: str


class RpcEndpoint:
    """One endpoint and its health state machine.

    All mutation happens under ``_lock``, which is never held across an
    ``await``.
    """

    def __init__(
        self,
        chain: str,
        url: str,
        priority: int,
        policy: FailoverPolicy,
        clock: Callable[[], float],
    ) -> None:
        self.chain = chain
        self.url = url
        self.priority = priority
        self._policy = policy
        self._clock = clock
        self._lock = threading.Lock()
        self._health = EndpointHealth.HEALTHY
        self._failures = 0
        self._backoff_until = 0.0
        self._last_error: Optional[str] = None

    @property
    def health(self) -> EndpointHealth:
        with self._lock:
            return self._health

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def in_backoff(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            return now < self._backoff_until

    def is_excluded(self, now: float) -> bool:
        """Unhealthy endpoints sit out their whole backoff window."""
        with self._lock:
            return self._health is EndpointHealth.UNHEALTHY and now < self._backoff_until

    def needs_probe(self, now: float) -> bool:
        with self._lock:
            return self._health is EndpointHealth.UNHEALTHY and now >= self._backoff_until

    def record_failure(self, error: str) -> EndpointHealth:
        with self._lock:
            previous = self._health
            self._failures += 1
            self._last_error = error
            self._backoff_until = self._clock() + self._policy.backoff_for(self._failures)
            if self._failures >= self._policy.failure_threshold:
                self._health = EndpointHealth.UNHEALTHY
            else:
                self._health = EndpointHealth.DEGRADED
            health, failures = self._health, self._failures

        if health is not previous:
            logger.warning(
                "%s endpoint %s demoted %s -> %s after %d consecutive failure(s): %s",
                self.chain, self.url, previous.value, health.value, failures, error,
            )
        return health

    def record_success(self) -> None:
        with self._lock:
            previous = self._health
            self._health = EndpointHealth.HEALTHY
            self._failures = 0
            self._backoff_until = 0.0
            self._last_error = None

        if previous is not EndpointHealth.HEALTHY:
            logger.info("%s endpoint %s restored to healthy", self.chain, self.url)

    def snapshot(self) -> EndpointSnapshot:
        now = self._clock()
        with self._lock:
            return EndpointSnapshot(
                chain=self.chain,
                url=self.url,
                priority=self.priority,
                health=self._health,
                consecutive_failures=self._failures,
                backoff_remaining=max(0.0, self._backoff_until - now),
                last_error=self._last_error,
            )

    def __repr__(self) -> str:
        return f"RpcEndpoint({self.chain}, {self.url!r}, priority={self.priority})"


class RpcFailoverManager:
    """Routes JSON-RPC calls across each chain's endpoint pool.

    Parameters
    ----------
    transport:
        Anything satisfying :class:`JsonRpcTransport`; in production an
        :class:`~chain_custody.rpc.transport.HttpxTransport`.
    pools:
        Chain tag (or alias) to priority-ordered endpoint URLs.
    policy:
        Timeouts, backoff and health thresholds.
    clock:
        Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        transport: JsonRpcTransport,
        pools: Mapping[str, Sequence[str]],
        policy: Optional[FailoverPolicy] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._transport = transport
        self.policy = policy or FailoverPolicy()
        self._clock = clock or time.monotonic
        self._pools: dict[str, list[RpcEndpoint]] = {}
        for chain, urls in pools.items():
            tag = get_chain(chain).tag
            endpoints = [
                RpcEndpoint(tag, url, priority, self.policy, self._clock)
                for priority, url in enumerate(urls)
            ]
            if endpoints:
                self._pools[tag] = endpoints

    @classmethod
    def from_config(cls, config: CustodyConfig, transport: JsonRpcTransport) -> "RpcFailoverManager":
        pools = {chain: config.rpc_urls(chain) for chain in config.configured_chains()}
        return cls(transport, pools, policy=config.rpc)

    # ------------------------------------------------------------------
    # Pool inspection
    # ------------------------------------------------------------------

    def chains(self) -> list[str]:
        return list(self._pools)

    def endpoints(self, chain: str) -> list[RpcEndpoint]:
        tag = get_chain(chain).tag
        if tag not in self._pools:
            raise UnsupportedChain(f"No RPC endpoints configured for {tag}")
        return list(self._pools[tag])

    def endpoint_status(self, chain: Optional[str] = None) -> list[EndpointSnapshot]:
        chains = [chain] if chain else self.chains()
        return [ep.snapshot() for c in chains for ep in self.endpoints(c)]

    def _ranked(self, chain: str) -> list[RpcEndpoint]:
        now = self._clock()
        eligible = [ep for ep in self.endpoints(chain) if not ep.is_excluded(now)]
        return sorted(eligible, key=lambda ep: (ep.in_backoff(now), ep.priority))

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def _probe(self, endpoint: RpcEndpoint) -> bool:
        method = _PROBE_METHODS[get_chain(endpoint.chain).family]
        try:
            await asyncio.wait_for(
                self._transport.request(
                    endpoint.url, method, [], timeout=self.policy.probe_timeout
                ),
                timeout=self.policy.probe_timeout,
            )
        except asyncio.TimeoutError:
            endpoint.record_failure(f"probe {method} timed out")
            return False
        except (TransientRpcError, JsonRpcError) as exc:
            endpoint.record_failure(f"probe {method} failed: {exc}")
            return False
        endpoint.record_success()
        return True

    async def probe_all(self, chain: str) -> list[EndpointSnapshot]:
        """Actively probe every endpoint of *chain* and return fresh snapshots."""
        endpoints = self.endpoints(chain)
        await asyncio.gather(*(self._probe(ep) for ep in endpoints))
        return [ep.snapshot() for ep in endpoints]

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(
        self, chain: str, method: str, params: Optional[list] = None, *, idempotent: bool = True
    ) -> Any:
        """Like :meth:`request` but returns only the result."""
        response = await self.request(chain, method, params, idempotent=idempotent)
        return response.result

    async def request(
        self, chain: str, method: str, params: Optional[list] = None, *, idempotent: bool = True
    ) -> RpcResponse:
        """Send one logical JSON-RPC call with failover.

        A JSON-RPC error object is an answer from a working node, so it
        counts as success for the endpoint and is re-raised as
        :class:`JsonRpcError` without trying elsewhere.

        With ``idempotent=False`` (transaction submission) only failures that
        prove the request never reached a node are retried on another
        endpoint.  A timeout or malformed reply raises
        :class:`SubmissionOutcomeUnknown`.

        Raises
        ------
        RateLimited
            Every endpoint tried answered HTTP 429.
        ProviderUnavailable
            The pool is exhausted or entirely excluded.
        """
        tag = get_chain(chain).tag
        params = [] if params is None else params
        candidates = self._ranked(tag)
        if not candidates:
            raise ProviderUnavailable(f"All {tag} RPC endpoints are unhealthy")

        failures: list[TransientRpcError] = []
        attempts = 0
        timeout = self.policy.request_timeout

        for endpoint in candidates:
            if attempts >= self.policy.max_endpoints_per_call:
                break
            if endpoint.needs_probe(self._clock()) and not await self._probe(endpoint):
                continue
            attempts += 1

            try:
                result = await asyncio.wait_for(
                    self._transport.request(endpoint.url, method, params, timeout=timeout),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                error: TransientRpcError = EndpointTimeout(
                    endpoint.url, f"{method} exceeded {timeout}s"
                )
            except JsonRpcError:
                endpoint.record_success()
                raise
            except TransientRpcError as exc:
                error = exc
            else:
                endpoint.record_success()
                return RpcResponse(result=result, endpoint=endpoint.url)

            endpoint.record_failure(str(error))
            failures.append(error)

            if not idempotent and isinstance(error, (EndpointTimeout, MalformedResponse)):
                raise SubmissionOutcomeUnknown(tag, endpoint.url, str(error)) from error

            logger.warning(
                "%s %s failed on %s (%s); trying next endpoint",
                tag, method, endpoint.url, type(error).__name__,
            )

        if failures and all(isinstance(f, EndpointRateLimited) for f in failures):
            raise RateLimited(f"Every {tag} endpoint tried is rate limiting requests")
        detail = "; ".join(str(f) for f in failures) or "no endpoint could be reached"
        raise ProviderUnavailable(f"{tag} {method} failed: {detail}")
