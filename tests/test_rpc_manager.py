"""RPC endpoint pools: failover, health transitions, backoff and probing."""

import threading

import pytest

from chain_custody.config import FailoverPolicy
from chain_custody.errors import (
    EndpointRateLimited,
    EndpointServerError,
    EndpointUnreachable,
    JsonRpcError,
    MalformedResponse,
    ProviderUnavailable,
    RateLimited,
    SubmissionOutcomeUnknown,
    UnsupportedChain,
)
from chain_custody.rpc.manager import EndpointHealth, RpcEndpoint, RpcFailoverManager

from conftest import ETH_URLS, HANG, SOL_URLS


def _manager(transport, clock, **policy):
    policy = FailoverPolicy(request_timeout=0.05, probe_timeout=0.05, **policy)
    return RpcFailoverManager(transport, {"ETH": ETH_URLS, "SOLANA": SOL_URLS}, policy=policy, clock=clock)


def _health(rpc, chain="ETH"):
    return [ep.health for ep in rpc.endpoints(chain)]


class TestFailover:
    async def test_primary_answers(self, rpc, transport):
        transport.on("eth_blockNumber", "0x10")
        response = await rpc.request("ETH", "eth_blockNumber")
        assert response.result == "0x10"
        assert response.endpoint == ETH_URLS[0]
        assert _health(rpc) == [EndpointHealth.HEALTHY] * 3

    async def test_two_timeouts_then_third_endpoint(self, rpc, transport):
        """Slow endpoints are abandoned after the per-attempt timeout."""
        transport.script(ETH_URLS[0], HANG)
        transport.script(ETH_URLS[1], HANG)
        transport.on("eth_blockNumber", "0x10")

        response = await rpc.request("ETH", "eth_blockNumber")

        assert response.endpoint == ETH_URLS[2]
        assert [c[0] for c in transport.calls] == ETH_URLS
        assert _health(rpc) == [
            EndpointHealth.DEGRADED,
            EndpointHealth.DEGRADED,
            EndpointHealth.HEALTHY,
        ]

    async def test_threshold_marks_unhealthy(self, transport, clock):
        rpc = _manager(transport, clock, failure_threshold=1)
        transport.script(ETH_URLS[0], EndpointUnreachable(ETH_URLS[0]))
        transport.on("eth_chainId", "0x1")

        await rpc.request("ETH", "eth_chainId")

        assert _health(rpc)[0] is EndpointHealth.UNHEALTHY

    async def test_json_rpc_error_is_not_retried(self, rpc, transport):
        transport.script(ETH_URLS[0], JsonRpcError(-32000, "execution reverted"))

        with pytest.raises(JsonRpcError):
            await rpc.request("ETH", "eth_call", [{}])

        assert len(transport.calls) == 1
        assert _health(rpc)[0] is EndpointHealth.HEALTHY

    async def test_all_rate_limited(self, rpc, transport):
        for url in ETH_URLS:
            transport.script(url, EndpointRateLimited(url))

        with pytest.raises(RateLimited):
            await rpc.request("ETH", "eth_blockNumber")

    async def test_mixed_failures_are_provider_unavailable(self, rpc, transport):
        transport.script(ETH_URLS[0], EndpointRateLimited(ETH_URLS[0]))
        transport.script(ETH_URLS[1], EndpointServerError(ETH_URLS[1], 502))
        transport.script(ETH_URLS[2], MalformedResponse(ETH_URLS[2], "not json"))

        with pytest.raises(ProviderUnavailable):
            await rpc.request("ETH", "eth_blockNumber")

    async def test_attempts_capped_per_call(self, transport, clock):
        rpc = _manager(transport, clock, max_endpoints_per_call=2)
        for url in ETH_URLS:
            transport.script(url, EndpointUnreachable(url))

        with pytest.raises(ProviderUnavailable):
            await rpc.request("ETH", "eth_blockNumber")

        assert [c[0] for c in transport.calls] == ETH_URLS[:2]

    async def test_unconfigured_chain(self, rpc):
        with pytest.raises(UnsupportedChain):
            await rpc.request("BSC", "eth_blockNumber")


class TestNonIdempotent:
    async def test_timeout_is_unknown_outcome_and_not_resent(self, rpc, transport):
        transport.script(ETH_URLS[0], HANG)
        transport.on("eth_sendRawTransaction", "0xabc")

        with pytest.raises(SubmissionOutcomeUnknown) as exc_info:
            await rpc.request("ETH", "eth_sendRawTransaction", ["0x00"], idempotent=False)

        assert exc_info.value.url == ETH_URLS[0]
        assert len(transport.calls_to("eth_sendRawTransaction")) == 1

    async def test_malformed_reply_is_unknown_outcome(self, rpc, transport):
        transport.script(ETH_URLS[0], MalformedResponse(ETH_URLS[0], "truncated"))

        with pytest.raises(SubmissionOutcomeUnknown):
            await rpc.request("ETH", "eth_sendRawTransaction", ["0x00"], idempotent=False)

    async def test_unreachable_fails_over(self, rpc, transport):
        transport.script(ETH_URLS[0], EndpointUnreachable(ETH_URLS[0]))
        transport.on("eth_sendRawTransaction", "0xabc")

        response = await rpc.request("ETH", "eth_sendRawTransaction", ["0x00"], idempotent=False)

        assert response.endpoint == ETH_URLS[1]


class TestBackoffAndRecovery:
    async def test_backed_off_endpoint_is_tried_last(self, rpc, transport):
        transport.script(ETH_URLS[0], EndpointUnreachable(ETH_URLS[0]))
        transport.on("eth_blockNumber", "0x1")

        await rpc.request("ETH", "eth_blockNumber")
        await rpc.request("ETH", "eth_blockNumber")

        assert [c[0] for c in transport.calls] == [ETH_URLS[0], ETH_URLS[1], ETH_URLS[1]]

    async def test_unhealthy_excluded_then_restored_by_probe(self, transport, clock):
        rpc = _manager(transport, clock, failure_threshold=1, backoff_base=10)
        transport.script(ETH_URLS[0], EndpointUnreachable(ETH_URLS[0]))
        transport.on("eth_chainId", "0x1")
        transport.on("eth_blockNumber", "0x99")

        await rpc.request("ETH", "eth_chainId")
        clock.advance(5)
        response = await rpc.request("ETH", "eth_chainId")
        assert response.endpoint == ETH_URLS[1]

        clock.advance(10)
        response = await rpc.request("ETH", "eth_chainId")

        assert response.endpoint == ETH_URLS[0]
        assert _health(rpc)[0] is EndpointHealth.HEALTHY
        assert [c[1] for c in transport.calls if c[0] == ETH_URLS[0]] == [
            "eth_chainId",
            "eth_blockNumber",
            "eth_chainId",
        ]

    async def test_failed_probe_extends_backoff(self, transport, clock):
        rpc = _manager(transport, clock, failure_threshold=1)
        transport.script(ETH_URLS[0], EndpointUnreachable(ETH_URLS[0]))
        transport.on("eth_chainId", "0x1")
        await rpc.request("ETH", "eth_chainId")

        clock.advance(1.5)
        transport.script(ETH_URLS[0], EndpointUnreachable(ETH_URLS[0]))
        response = await rpc.request("ETH", "eth_chainId")

        assert response.endpoint == ETH_URLS[1]
        snapshot = rpc.endpoint_status("ETH")[0]
        assert snapshot.consecutive_failures == 2
        assert snapshot.backoff_remaining == 2.0
        assert snapshot.health is EndpointHealth.UNHEALTHY

    async def test_whole_pool_excluded(self, transport, clock):
        rpc = _manager(transport, clock, failure_threshold=1)
        for url in ETH_URLS:
            transport.script(url, EndpointUnreachable(url))
        with pytest.raises(ProviderUnavailable):
            await rpc.request("ETH", "eth_blockNumber")

        calls = len(transport.calls)
        with pytest.raises(ProviderUnavailable):
            await rpc.request("ETH", "eth_blockNumber")
        assert len(transport.calls) == calls

    async def test_probe_all(self, rpc, transport):
        transport.on("getHealth", "ok")
        transport.script(SOL_URLS[1], EndpointServerError(SOL_URLS[1], 503))

        snapshots = await rpc.probe_all("SOLANA")

        assert [s.health for s in snapshots] == [EndpointHealth.HEALTHY, EndpointHealth.DEGRADED]
        assert snapshots[1].last_error is not None
        assert {c[1] for c in transport.calls} == {"getHealth"}


class TestEndpointState:
    def test_success_resets(self, policy, clock):
        ep = RpcEndpoint("ETH", ETH_URLS[0], 0, policy, clock)
        ep.record_failure("boom")
        ep.record_failure("boom")
        ep.record_success()
        snap = ep.snapshot()
        assert snap.health is EndpointHealth.HEALTHY
        assert snap.consecutive_failures == 0
        assert snap.backoff_remaining == 0
        assert snap.last_error is None

    def test_concurrent_failures_are_all_counted(self, clock):
        ep = RpcEndpoint("ETH", ETH_URLS[0], 0, FailoverPolicy(failure_threshold=10_000), clock)

        def hammer():
            for _ in range(200):
                ep.record_failure("boom")

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ep.consecutive_failures == 1600
        assert ep.health is EndpointHealth.DEGRADED
