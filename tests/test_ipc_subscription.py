import asyncio

import pytest
from web3.exceptions import ProviderConnectionError, TransactionNotFound, Web3RPCError

from infra import ipc as ipc_mod
from infra.ipc import IpcSubscription
from infra.metrics import Metrics
from mempool.errors import ConnectionFailed, SubscriptionFailed


HASH_A = "0x" + "aa" * 32
HASH_B = "0x" + "bb" * 32
HASH_C = "0x" + "cc" * 32
SENDER_A = "0x" + "11" * 20
SENDER_B = "0x" + "22" * 20
RAW_A = b"\xf8\x01a"
RAW_B = b"\xf8\x01b"
RAW_C = b"\xf8\x01c"


class DummyEth:
    def __init__(self, raw=None, senders=None, raw_errors=None, subscribe_error=None, subscribe_delay_s=0.0) -> None:
        self.raw = raw or {}
        self.senders = senders or {}
        self.raw_errors = raw_errors or {}
        self.subscribe_error = subscribe_error
        self.subscribe_delay_s = subscribe_delay_s
        self.get_transaction_calls = []
        self.unsubscribed = []

    async def subscribe(self, kind, full_transactions):
        if self.subscribe_delay_s:
            await asyncio.sleep(self.subscribe_delay_s)
        if self.subscribe_error is not None:
            raise self.subscribe_error
        return "0xsub1"

    async def get_raw_transaction(self, tx_hash):
        if tx_hash in self.raw_errors:
            raise self.raw_errors[tx_hash]
        return self.raw[tx_hash]

    async def get_transaction(self, tx_hash):
        self.get_transaction_calls.append(tx_hash)
        return {"hash": tx_hash, "from": self.senders[tx_hash]}

    async def unsubscribe(self, subscription_id):
        self.unsubscribed.append(subscription_id)
        return True


class DummySocket:
    def __init__(self, results, error=None) -> None:
        self.results = list(results)
        self.error = error

    async def process_subscriptions(self):
        for result in self.results:
            yield {"subscription": "0xsub1", "result": result}
        if self.error is not None:
            raise self.error


class DummyProvider:
    def __init__(self) -> None:
        self.disconnects = 0

    async def disconnect(self) -> None:
        self.disconnects += 1


class DummyW3:
    def __init__(self, eth: DummyEth, socket: DummySocket = None, provider: DummyProvider = None) -> None:
        self.eth = eth
        self.socket = socket or DummySocket([])
        self.provider = provider or DummyProvider()

    def __await__(self):
        return self._connect().__await__()

    async def _connect(self):
        return self


async def _drain(sub: IpcSubscription):
    items = []
    with pytest.raises(ConnectionFailed):
        async for pending in sub:
            items.append(pending)
    return items


@pytest.mark.asyncio
async def test_hash_notification_fetches_sender() -> None:
    eth = DummyEth(raw={HASH_A: RAW_A}, senders={HASH_A: SENDER_A})
    sub = IpcSubscription(DummyW3(eth, DummySocket([HASH_A])), "0xsub1", metrics=Metrics())

    items = await _drain(sub)
    assert len(items) == 1
    assert items[0].raw == RAW_A
    assert items[0].from_addr == bytes.fromhex("11" * 20)
    assert items[0].tx_hash == HASH_A
    assert items[0].received_at_ms > 0
    assert eth.get_transaction_calls == [HASH_A]


@pytest.mark.asyncio
async def test_full_notification_uses_its_own_sender() -> None:
    eth = DummyEth(raw={HASH_B: RAW_B})
    notification = {"hash": bytes.fromhex("bb" * 32), "from": SENDER_B, "nonce": 4}
    sub = IpcSubscription(DummyW3(eth, DummySocket([notification])), "0xsub1", metrics=Metrics())

    items = await _drain(sub)
    assert [p.tx_hash for p in items] == [HASH_B]
    assert items[0].from_addr == bytes.fromhex("22" * 20)
    assert eth.get_transaction_calls == []


@pytest.mark.asyncio
async def test_missing_tx_is_skipped_and_counted() -> None:
    metrics = Metrics()
    eth = DummyEth(
        raw={HASH_B: RAW_B},
        senders={HASH_B: SENDER_B},
        raw_errors={HASH_A: TransactionNotFound("Transaction with hash not found")},
    )
    sub = IpcSubscription(DummyW3(eth, DummySocket([HASH_A, HASH_B])), "0xsub1", metrics=metrics)

    items = await _drain(sub)
    assert [p.tx_hash for p in items] == [HASH_B]
    assert metrics.counter("ipc_raw_miss") == 1


@pytest.mark.asyncio
async def test_fetch_error_skips_only_that_tx() -> None:
    metrics = Metrics()
    eth = DummyEth(
        raw={HASH_B: RAW_B},
        senders={HASH_B: SENDER_B},
        raw_errors={HASH_A: Web3RPCError("internal error: tx pool busy")},
    )
    sub = IpcSubscription(DummyW3(eth, DummySocket([HASH_A, HASH_B])), "0xsub1", metrics=metrics)

    items = await _drain(sub)
    assert [p.tx_hash for p in items] == [HASH_B]
    assert metrics.counter("ipc_fetch_error") == 1
    assert metrics.snapshot()["reason_counters"]["ipc_fetch_error"] == {"Web3RPCError": 1}


@pytest.mark.asyncio
async def test_bad_sender_skips_only_that_tx() -> None:
    metrics = Metrics()
    eth = DummyEth(raw={HASH_A: RAW_A, HASH_C: RAW_C})
    notifications = [{"hash": HASH_A, "from": "0x1234"}, {"hash": HASH_C, "from": SENDER_A}]
    sub = IpcSubscription(DummyW3(eth, DummySocket(notifications)), "0xsub1", metrics=metrics)

    items = await _drain(sub)
    assert [p.tx_hash for p in items] == [HASH_C]
    assert metrics.counter("ipc_fetch_error") == 1


@pytest.mark.asyncio
async def test_transport_failure_during_fetch_ends_stream() -> None:
    eth = DummyEth(
        raw={HASH_B: RAW_B},
        senders={HASH_B: SENDER_B},
        raw_errors={HASH_A: ProviderConnectionError("IPC pipe closed")},
    )
    sub = IpcSubscription(DummyW3(eth, DummySocket([HASH_A, HASH_B])), "0xsub1", metrics=Metrics())
    assert await _drain(sub) == []


@pytest.mark.asyncio
async def test_socket_error_maps_to_connection_failed() -> None:
    eth = DummyEth(raw={HASH_A: RAW_A}, senders={HASH_A: SENDER_A})
    socket = DummySocket([HASH_A], error=BrokenPipeError("broken pipe"))
    sub = IpcSubscription(DummyW3(eth, socket), "0xsub1", metrics=Metrics())

    items = []
    with pytest.raises(ConnectionFailed) as info:
        async for pending in sub:
            items.append(pending)
    assert len(items) == 1
    assert "broken pipe" in str(info.value)


@pytest.mark.asyncio
async def test_clean_end_of_stream_is_connection_failure() -> None:
    sub = IpcSubscription(DummyW3(DummyEth(), DummySocket([])), "0xsub1", metrics=Metrics())
    with pytest.raises(ConnectionFailed) as info:
        async for _ in sub:
            pass
    assert "subscription stream ended" in str(info.value)


@pytest.mark.asyncio
async def test_close_is_idempotent() -> None:
    eth = DummyEth()
    provider = DummyProvider()
    sub = IpcSubscription(DummyW3(eth, provider=provider), "0xsub1", metrics=Metrics())
    await sub.close()
    await sub.close()
    assert eth.unsubscribed == ["0xsub1"]
    assert provider.disconnects == 1


def _patch_web3(monkeypatch, eth: DummyEth, provider: DummyProvider) -> None:
    monkeypatch.setattr(ipc_mod, "AsyncIPCProvider", lambda path: provider)
    monkeypatch.setattr(ipc_mod, "AsyncWeb3", lambda p: DummyW3(eth, provider=p))


@pytest.mark.asyncio
async def test_open_subscribes(monkeypatch) -> None:
    provider = DummyProvider()
    _patch_web3(monkeypatch, DummyEth(), provider)
    sub = await IpcSubscription.open("/tmp/anvil.ipc")
    assert sub.subscription_id == "0xsub1"
    assert provider.disconnects == 0


@pytest.mark.asyncio
async def test_open_subscribe_failure_disconnects(monkeypatch) -> None:
    provider = DummyProvider()
    _patch_web3(monkeypatch, DummyEth(subscribe_error=ValueError("method not supported")), provider)
    with pytest.raises(SubscriptionFailed) as info:
        await IpcSubscription.open("/tmp/anvil.ipc")
    assert "method not supported" in str(info.value)
    assert provider.disconnects == 1


@pytest.mark.asyncio
async def test_open_cancelled_by_timeout_disconnects(monkeypatch) -> None:
    provider = DummyProvider()
    _patch_web3(monkeypatch, DummyEth(subscribe_delay_s=10.0), provider)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(IpcSubscription.open("/tmp/anvil.ipc"), timeout=0.05)
    assert provider.disconnects == 1
