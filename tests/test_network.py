import asyncio
import threading
import time
from dataclasses import dataclass

import pytest

from dsskit.codec import FieldKind, Message, encode, proto_field
from dsskit.rpc.client import RpcHooks
from dsskit.rpc.errors import CanceledError, OtherError, RpcTimeout, StoppedError
from dsskit.rpc.network import Network
from dsskit.rpc.server import ServerBuilder
from dsskit.rpc.service import Service, ServiceClient, add_service, rpc


@dataclass
class JunkArgs(Message):
    x: int = proto_field(1, FieldKind.INT64)


@dataclass
class JunkReply(Message):
    x: str = proto_field(1, FieldKind.STRING)


class JunkService(Service, name="junk"):
    def __init__(self):
        self.log2 = []
        self._lock = threading.Lock()

    @rpc(JunkArgs, JunkReply)
    async def handler2(self, args):
        with self._lock:
            self.log2.append(args.x)
        return JunkReply(x=f"handler2-{args.x}")

    @rpc(JunkArgs, JunkReply)
    async def handler3(self, args):
        await asyncio.sleep(20)
        return JunkReply(x=f"handler3-{-args.x}")

    @rpc(JunkArgs, JunkReply)
    async def handler4(self, args):
        return JunkReply(x="pointer")


@dataclass
class BenchArgs(Message):
    x: int = proto_field(1, FieldKind.INT64)


@dataclass
class BenchReply(Message):
    x: str = proto_field(1, FieldKind.STRING)


class BenchService(Service, name="bench"):
    def __init__(self):
        self.log2 = []

    @rpc(BenchArgs, BenchReply)
    async def handler(self, args):
        self.log2.append(args.x)
        return BenchReply(x=f"handler-{args.x}")


@pytest.fixture
def suit():
    net = Network.new()
    builder = ServerBuilder("test_server")
    junk = JunkService()
    add_service(junk, builder)
    server = builder.build()
    net.add_server(server)
    yield net, server, junk
    net.close()


def make_client(net, name, server_name="test_server", enable=True):
    client = ServiceClient(JunkService, net.create_client(name))
    net.connect(name, server_name)
    net.enable(name, enable)
    return client


@pytest.mark.asyncio
async def test_network_client_rpc():
    builder = ServerBuilder("test")
    add_service(JunkService(), builder)
    builder.build()

    net, incoming = Network.create()
    try:
        client = ServiceClient(JunkService, net.create_client("test_client"))

        pending = client.handler4(JunkArgs(x=777))
        received = await incoming.recv()
        reply = JunkReply(x="boom!!!")
        resp = received.take_resp_sender()
        resp.set_result(encode(reply))
        assert received.take_resp_sender() is None
        assert received.client_name == "test_client"
        assert received.fq_name == "junk.handler4"
        assert len(received.req) > 0
        assert await pending == reply

        pending = client.handler4(JunkArgs(x=777))
        received = await incoming.recv()
        received.resp.cancel()
        with pytest.raises(CanceledError):
            await pending

        incoming.close()
        with pytest.raises(StoppedError):
            await client.handler4(JunkArgs())
    finally:
        net.close()


@pytest.mark.asyncio
async def test_basic(suit):
    net, _, _ = suit
    client = make_client(net, "test_client")
    assert await client.handler4(JunkArgs()) == JunkReply(x="pointer")


@pytest.mark.asyncio
async def test_disconnect(suit):
    net, _, _ = suit
    client = make_client(net, "test_client", enable=False)
    with pytest.raises(RpcTimeout):
        await client.handler4(JunkArgs())
    net.enable("test_client", True)
    assert await client.handler4(JunkArgs()) == JunkReply(x="pointer")


@pytest.mark.asyncio
async def test_count(suit):
    net, _, _ = suit
    client = make_client(net, "test_client")
    for i in range(17):
        reply = await client.handler2(JunkArgs(x=i))
        assert reply.x == f"handler2-{i}"
    assert net.count("test_server") == 17


@pytest.mark.asyncio
async def test_concurrent_many(suit):
    net, server, _ = suit
    nclients, nrpcs = 20, 10

    async def run(i):
        client = make_client(net, f"client-{i}", server.name())
        n = 0
        for j in range(nrpcs):
            x = i * 100 + j
            reply = await client.handler2(JunkArgs(x=x))
            assert reply.x == f"handler2-{x}"
            n += 1
        return n

    total = sum(await asyncio.gather(*(run(i) for i in range(nclients))))
    assert total == nrpcs * nclients
    assert net.count(server.name()) == total


@pytest.mark.asyncio
async def test_unreliable(suit):
    net, server, _ = suit
    net.set_reliable(False)
    nclients = 300

    async def run(i):
        client = make_client(net, f"client-{i}", server.name())
        x = i * 100
        try:
            reply = await client.handler2(JunkArgs(x=x))
        except RpcTimeout:
            return 0
        assert reply.x == f"handler2-{x}"
        return 1

    total = sum(await asyncio.gather(*(run(i) for i in range(nclients))))
    assert total not in (0, nclients), (
        f"all RPCs succeeded despite unreliable total {total}, nclients {nclients}"
    )
    assert net.total_count() == nclients
    assert net.count(server.name()) >= total


@pytest.mark.asyncio
async def test_concurrent_one(suit):
    net, server, junk = suit
    nrpcs = 20
    clients = [make_client(net, f"client-{i}", server.name()) for i in range(nrpcs)]

    async def run(i, client):
        x = i + 100
        reply = await client.handler2(JunkArgs(x=x))
        assert reply.x == f"handler2-{x}"
        return 1

    total = sum(await asyncio.gather(*(run(i, c) for i, c in enumerate(clients))))
    assert total == nrpcs
    assert len(junk.log2) == nrpcs
    assert net.count(server.name()) == total


@pytest.mark.asyncio
async def test_regression1(suit):
    net, server, junk = suit
    client = make_client(net, "client", server.name(), enable=False)

    pending = [client.handler2(JunkArgs(x=i + 100)) for i in range(20)]
    await asyncio.sleep(0.3)

    t0 = time.monotonic()
    net.enable("client", True)
    reply = await client.handler2(JunkArgs(x=99))
    duration = time.monotonic() - t0
    assert reply.x == "handler2-99"
    assert duration < 0.5, f"RPC took too long ({duration}s) after enable"

    for call in pending:
        with pytest.raises(RpcTimeout):
            await call

    assert junk.log2 == [99]
    assert net.count(server.name()) == 1


@pytest.mark.asyncio
async def test_killed(suit):
    net, server, _ = suit
    client = make_client(net, "client", server.name())

    async def call():
        return await client.handler3(JunkArgs(x=99))

    task = client.spawn(call())
    await asyncio.sleep(0.5)
    assert not task.done()

    net.delete_server(server.name())
    with pytest.raises(StoppedError):
        await asyncio.wait_for(task, 1.0)


class Hooks(RpcHooks):
    def __init__(self):
        self.drop_req = False
        self.drop_resp = False

    def before_dispatch(self, fq_name, req):
        if self.drop_req:
            raise OtherError("reqhook")

    def after_dispatch(self, fq_name, resp):
        if self.drop_resp:
            raise OtherError("resphook")
        return super().after_dispatch(fq_name, resp)


@pytest.mark.asyncio
async def test_rpc_hooks(suit):
    net, _, _ = suit
    raw_client = net.create_client("test_client")
    hooks = Hooks()
    raw_client.set_hooks(hooks)
    client = ServiceClient(JunkService, raw_client)
    net.connect("test_client", "test_server")
    net.enable("test_client", True)

    reply = await client.handler2(JunkArgs(x=100))
    assert reply.x == "handler2-100"

    hooks.drop_req = True
    with pytest.raises(OtherError) as info:
        await client.handler2(JunkArgs(x=100))
    assert info.value == OtherError("reqhook")

    hooks.drop_req = False
    hooks.drop_resp = True
    with pytest.raises(OtherError) as info:
        await client.handler2(JunkArgs(x=100))
    assert info.value == OtherError("resphook")

    hooks.drop_resp = False
    reply = await client.handler2(JunkArgs(x=100))
    assert reply.x == "handler2-100"

    raw_client.clear_hooks()
    hooks.drop_req = True
    reply = await client.handler2(JunkArgs(x=5))
    assert reply.x == "handler2-5"


@pytest.mark.asyncio
async def test_bench_service_rpc():
    net = Network.new()
    try:
        builder = ServerBuilder("test_server")
        bench = BenchService()
        add_service(bench, builder)
        server = builder.build()
        net.add_server(server)
        client = ServiceClient(BenchService, net.create_client("client"))
        net.connect("client", server.name())
        net.enable("client", True)
        for _ in range(100):
            reply = await client.handler(BenchArgs(x=111))
            assert reply == BenchReply(x="handler-111")
        assert bench.log2 == [111] * 100
        assert net.count(server.name()) == 100
    finally:
        net.close()


@pytest.mark.asyncio
async def test_total_count_includes_undelivered_calls(suit):
    net, server, _ = suit
    client = make_client(net, "client", server.name(), enable=False)
    with pytest.raises(RpcTimeout):
        await client.handler4(JunkArgs())
    net.enable("client", True)
    await client.handler4(JunkArgs())
    assert net.total_count() == 2
    assert net.count(server.name()) == 1


@pytest.mark.asyncio
async def test_connect_to_unknown_server_times_out(suit):
    net, _, _ = suit
    client = make_client(net, "client", "missing")
    with pytest.raises(RpcTimeout):
        await client.handler4(JunkArgs())


def test_count_of_unknown_or_deleted_server(suit):
    net, server, _ = suit
    with pytest.raises(KeyError):
        net.count("nope")
    net.delete_server(server.name())
    with pytest.raises(KeyError):
        net.count(server.name())


@pytest.mark.asyncio
async def test_unknown_method_reports_unimplemented(suit):
    net, _, _ = suit
    raw_client = net.create_client("client")
    net.connect("client", "test_server")
    net.enable("client", True)
    from dsskit.rpc.errors import UnimplementedError

    with pytest.raises(UnimplementedError):
        await raw_client.call("junk.nothing", JunkArgs(), JunkReply)


@pytest.mark.asyncio
async def test_spawn_runs_on_network():
    net = Network.new()
    try:
        async def answer():
            await asyncio.sleep(0.01)
            return 42

        assert await asyncio.wrap_future(net.spawn(answer())) == 42
    finally:
        net.close()

    async def never():
        return 0

    with pytest.raises(StoppedError):
        net.spawn(never())


@pytest.mark.asyncio
async def test_close_stops_calls(suit):
    net, server, _ = suit
    client = make_client(net, "client", server.name())
    in_flight = client.handler3(JunkArgs(x=1))
    await asyncio.sleep(0.2)
    net.close()
    with pytest.raises(StoppedError):
        await asyncio.wait_for(in_flight, 1.0)
    with pytest.raises(StoppedError):
        await client.handler4(JunkArgs())


@pytest.mark.asyncio
async def test_context_manager_closes():
    with Network.new() as net:
        builder = ServerBuilder("s")
        add_service(JunkService(), builder)
        net.add_server(builder.build())
        client = make_client(net, "c", "s")
        assert (await client.handler4(JunkArgs())).x == "pointer"
    with pytest.raises(StoppedError):
        await client.handler4(JunkArgs())