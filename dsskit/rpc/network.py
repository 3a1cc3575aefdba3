"""A simulated network that carries RPCs from clients to servers.

Clients can be enabled or disabled and connected to servers by name; the
network can drop, delay and reorder traffic to mimic an unreliable link.
Requests are processed on an event loop owned by the network and running
in its own thread, so callers on any loop or thread can use it.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import random
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .client import Client, Rpc, RpcChannel
from .errors import OtherError, RpcError, RpcTimeout, StoppedError
from .server import Server

__all__ = ["Network"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SERVER_CHECK_INTERVAL = 0.1
_SHUTDOWN_TIMEOUT = 5.0


@dataclass(frozen=True)
class _EndInfo:
    enabled: bool
    reliable: bool
    long_reordering: bool
    server: Server | None


def _deliver(resp: concurrent.futures.Future, result: bytes | RpcError) -> None:
    if resp.done():
        logger.error("fail to send resp: reply channel already closed")
        return
    try:
        if isinstance(result, BaseException):
            resp.set_exception(result)
        else:
            resp.set_result(result)
    except concurrent.futures.InvalidStateError:
        logger.error("fail to send resp: reply channel already closed")


async def _run_dispatch(server: Server, fq_name: str, req: bytes) -> bytes | RpcError:
    try:
        return await server.dispatch(fq_name, req)
    except RpcError as exc:
        return exc
    except Exception as exc:  # a handler failed outside the RPC error model
        return OtherError(str(exc))


class Network:
    """Routes calls from named clients to named servers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reliable = True
        # pause a long time on send on a disabled connection
        self._long_delays = False
        # sometimes delay replies a long time
        self._long_reordering = False
        self._enabled: dict[str, bool] = {}
        self._servers: dict[str, Server | None] = {}
        self._connections: dict[str, str | None] = {}
        self._total = 0
        self._closed = False
        self._sender = RpcChannel()
        self._tasks: set[asyncio.Task] = set()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, name="dsskit-network", daemon=True
        )
        self._thread.start()

    # ------------------------------------------------------------ lifecycle

    @classmethod
    def create(cls) -> tuple[Network, RpcChannel]:
        """Create a network that is not yet serving, with its incoming channel."""
        net = cls()
        return net, net._sender

    @classmethod
    def new(cls) -> Network:
        """Create a network that already serves incoming calls."""
        net, incoming = cls.create()
        net.start(incoming)
        return net

    def start(self, incoming: RpcChannel) -> None:
        """Start processing the calls that arrive on ``incoming``."""
        if self._closed:
            raise StoppedError()
        asyncio.run_coroutine_threadsafe(self._pump(incoming), self._loop)

    def close(self) -> None:
        """Stop the network: pending and later calls fail with StoppedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._sender.close()
        shutdown = asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop)
        try:
            shutdown.result(timeout=_SHUTDOWN_TIMEOUT)
        except (concurrent.futures.TimeoutError, concurrent.futures.CancelledError):
            logger.error("network shutdown did not finish in time")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=_SHUTDOWN_TIMEOUT)

    def __enter__(self) -> Network:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
        finally:
            self._loop.close()

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------ topology

    def add_server(self, server: Server) -> None:
        with self._lock:
            self._servers[server.name()] = server

    def delete_server(self, name: str) -> None:
        """Kill a server; calls in flight to it fail with StoppedError."""
        with self._lock:
            if name in self._servers:
                self._servers[name] = None

    def create_client(self, name: str) -> Client:
        """Create a client end-point; it starts disabled and unconnected."""
        with self._lock:
            self._enabled[name] = False
            self._connections[name] = None
        return Client(name, self._sender)

    def connect(self, client_name: str, server_name: str) -> None:
        """Connect a client to a server."""
        with self._lock:
            self._connections[client_name] = server_name

    def enable(self, client_name: str, enabled: bool) -> None:
        """Enable or disable a client."""
        logger.debug(
            "client %s is %s", client_name, "enabled" if enabled else "disabled"
        )
        with self._lock:
            self._enabled[client_name] = enabled

    def set_reliable(self, yes: bool) -> None:
        with self._lock:
            self._reliable = yes

    def set_long_reordering(self, yes: bool) -> None:
        with self._lock:
            self._long_reordering = yes

    def set_long_delays(self, yes: bool) -> None:
        with self._lock:
            self._long_delays = yes

    def count(self, server_name: str) -> int:
        """Number of requests the live server ``server_name`` has dispatched."""
        with self._lock:
            server = self._servers.get(server_name)
        if server is None:
            raise KeyError(server_name)
        return server.count()

    def total_count(self) -> int:
        """Number of calls the network has processed."""
        with self._lock:
            return self._total

    def spawn(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        """Run ``coro`` on the network's event loop."""
        if self._closed:
            coro.close()
            raise StoppedError()
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    # ------------------------------------------------------------ processing

    def _end_info(self, client_name: str) -> _EndInfo:
        with self._lock:
            server = None
            server_name = self._connections.get(client_name)
            if server_name is not None:
                server = self._servers.get(server_name)
            return _EndInfo(
                enabled=self._enabled.get(client_name, False),
                reliable=self._reliable,
                long_reordering=self._long_reordering,
                server=server,
            )

    def _is_server_dead(self, client_name: str, server_name: str, server_id: int) -> bool:
        with self._lock:
            if not self._enabled.get(client_name, False):
                return True
            server = self._servers.get(server_name)
            return server is None or server.id() != server_id

    async def _pump(self, incoming: RpcChannel) -> None:
        loop = asyncio.get_running_loop()
        async for rpc in incoming:
            resp = rpc.take_resp_sender()
            if resp is None:
                continue
            task = loop.create_task(self._serve(rpc, resp))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _serve(self, rpc: Rpc, resp: concurrent.futures.Future) -> None:
        try:
            result: bytes | RpcError = await self._process_rpc(rpc)
        except asyncio.CancelledError:
            _deliver(resp, StoppedError())
            raise
        except RpcError as exc:
            result = exc
        except Exception as exc:
            result = OtherError(str(exc))
        _deliver(resp, result)

    async def _process_rpc(self, rpc: Rpc) -> bytes:
        with self._lock:
            self._total += 1
            long_delays = self._long_delays
        info = self._end_info(rpc.client_name)
        logger.debug("%r process with %r", rpc, info)

        if info.enabled and info.server is not None:
            short_delay = None if info.reliable else random.randrange(27)
            if not info.reliable and random.randrange(1000) < 100:
                # drop the request, return as if timeout
                await asyncio.sleep(short_delay / 1000)
                raise RpcTimeout()
            drop_reply = not info.reliable and random.randrange(1000) < 100
            reordering = None
            if info.long_reordering and random.randrange(900) < 600:
                # delay the response for a while
                upper_bound = 1 + random.randrange(2000)
                reordering = 200 + random.randrange(upper_bound)
            return await self._dispatch(rpc, info.server, short_delay, drop_reply, reordering)

        # simulate no reply and eventual timeout
        if long_delays:
            # lets callers check that they do not send calls synchronously
            ms = random.randrange(7000)
        else:
            # many callers need to try each server in fairly rapid succession
            ms = random.randrange(100)
        logger.debug("%r delay %dms then timeout", rpc, ms)
        await asyncio.sleep(ms / 1000)
        raise RpcTimeout()

    async def _dispatch(
        self,
        rpc: Rpc,
        server: Server,
        delay: int | None,
        drop_reply: bool,
        long_reordering: int | None,
    ) -> bytes:
        if delay is not None:
            await asyncio.sleep(delay / 1000)

        fq_name = rpc.fq_name
        req, rpc.req = rpc.req or b"", None
        hooks = rpc.hooks
        if hooks is not None:
            hooks.before_dispatch(fq_name, req)

        # Run the handler while watching for the server to be killed, so a
        # killed server never produces a positive reply.
        loop = asyncio.get_running_loop()
        server_name, server_id = server.name(), server.id()
        dispatch_task = loop.create_task(_run_dispatch(server, fq_name, req))
        dead_task = loop.create_task(
            self._server_dead(rpc.client_name, server_name, server_id)
        )
        try:
            done, _ = await asyncio.wait(
                {dispatch_task, dead_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (dispatch_task, dead_task):
                if not task.done():
                    task.cancel()
        resp: bytes | RpcError
        if dispatch_task in done:
            resp = dispatch_task.result()
        else:
            resp = StoppedError()

        hooks = rpc.hooks
        if hooks is not None:
            payload = hooks.after_dispatch(fq_name, resp)
        elif isinstance(resp, RpcError):
            raise resp
        else:
            payload = resp

        if self._is_server_dead(rpc.client_name, server_name, server_id):
            raise StoppedError()
        if drop_reply:
            # drop the reply, return as if timeout
            raise RpcTimeout()
        if long_reordering is not None:
            logger.debug("%r next long reordering %dms", rpc, long_reordering)
            await asyncio.sleep(long_reordering / 1000)
        return payload

    async def _server_dead(self, client_name: str, server_name: str, server_id: int) -> None:
        while True:
            await asyncio.sleep(_SERVER_CHECK_INTERVAL)
            if self._is_server_dead(client_name, server_name, server_id):
                logger.debug("%r is dead", server_name)
                return