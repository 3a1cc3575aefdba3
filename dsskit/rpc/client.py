"""Client ends of the simulated RPC network and the channel they send on."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Coroutine, Generator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from ..codec import DecodeError, EncodeError, Message, decode, encode
from .errors import (
    CanceledError,
    DecodeFailedError,
    EncodeFailedError,
    RpcError,
    StoppedError,
)

__all__ = ["RpcHooks", "Rpc", "RpcChannel", "Client"]

M = TypeVar("M", bound=Message)
T = TypeVar("T")


class RpcHooks:
    """Callbacks run around the dispatch of each call made by a client."""

    def before_dispatch(self, fq_name: str, req: bytes) -> None:
        """Run before the request reaches the server; raise to fail the call."""
        return None

    def after_dispatch(self, fq_name: str, resp: bytes | RpcError) -> bytes:
        """Run on the server's reply (bytes or the error it failed with).

        Return the reply to deliver, or raise to fail the call.
        """
        if isinstance(resp, BaseException):
            raise resp
        return resp


class _HookCell:
    __slots__ = ("value",)

    def __init__(self) -> None:
        self.value: RpcHooks | None = None


@dataclass(eq=False)
class Rpc:
    """A call in flight from a client to the network.

    ``resp`` is a :class:`concurrent.futures.Future` that receives the encoded
    reply or an :class:`RpcError`; cancelling it drops the reply channel and
    the caller sees :class:`CanceledError`.
    """

    client_name: str
    fq_name: str
    req: bytes | None = field(default=None, repr=False)
    resp: concurrent.futures.Future | None = field(default=None, repr=False)
    hooks_cell: _HookCell = field(default_factory=_HookCell, repr=False)

    @property
    def hooks(self) -> RpcHooks | None:
        """The hooks currently installed on the calling client."""
        return self.hooks_cell.value

    def take_resp_sender(self) -> concurrent.futures.Future | None:
        """Remove and return the reply future; later calls return None."""
        resp, self.resp = self.resp, None
        return resp


def _set_done(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


def _wake(waiters: list[asyncio.Future]) -> None:
    for waiter in waiters:
        try:
            waiter.get_loop().call_soon_threadsafe(_set_done, waiter)
        except RuntimeError:
            pass


class RpcChannel:
    """Unbounded, thread-safe queue of calls from clients to the network."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: deque[Rpc] = deque()
        self._waiters: deque[asyncio.Future] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, rpc: Rpc) -> None:
        """Queue ``rpc``; raises :class:`StoppedError` once the channel is closed."""
        with self._lock:
            if self._closed:
                raise StoppedError()
            self._queue.append(rpc)
            waiters = list(self._waiters)
            self._waiters.clear()
        _wake(waiters)

    def close(self) -> None:
        """Close the receiving end; queued calls fail with :class:`CanceledError`."""
        with self._lock:
            self._closed = True
            pending = list(self._queue)
            self._queue.clear()
            waiters = list(self._waiters)
            self._waiters.clear()
        for rpc in pending:
            sender = rpc.take_resp_sender()
            if sender is not None:
                sender.cancel()
        _wake(waiters)

    async def recv(self) -> Rpc | None:
        """Wait for the next call; None once the channel is closed."""
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                if self._queue:
                    return self._queue.popleft()
                if self._closed:
                    return None
                waiter = loop.create_future()
                self._waiters.append(waiter)
            try:
                await waiter
            finally:
                with self._lock:
                    try:
                        self._waiters.remove(waiter)
                    except ValueError:
                        pass

    async def __aiter__(self) -> AsyncIterator[Rpc]:
        while (rpc := await self.recv()) is not None:
            yield rpc


def _copy_state(source: concurrent.futures.Future, target: asyncio.Future) -> None:
    if target.done():
        return
    if source.cancelled():
        target.set_exception(CanceledError())
        return
    error = source.exception()
    if error is not None:
        target.set_exception(error)
    else:
        target.set_result(source.result())


class _Reply(Generic[M]):
    """Awaitable reply of a call that has already been sent."""

    __slots__ = ("_future", "_reply_type", "_error")

    def __init__(
        self,
        future: concurrent.futures.Future | None,
        reply_type: type[M] | None,
        error: RpcError | None = None,
    ):
        self._future = future
        self._reply_type = reply_type
        self._error = error

    @classmethod
    def failed(cls, error: RpcError) -> _Reply[M]:
        return cls(None, None, error)

    def __await__(self) -> Generator[Any, None, M]:
        return self._wait().__await__()

    async def _wait(self) -> M:
        if self._error is not None:
            raise self._error
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        source = self._future

        def transfer(done: concurrent.futures.Future) -> None:
            try:
                loop.call_soon_threadsafe(_copy_state, done, waiter)
            except RuntimeError:
                pass

        source.add_done_callback(transfer)
        payload = await waiter
        try:
            return decode(self._reply_type, payload)
        except DecodeError as exc:
            raise DecodeFailedError(exc) from exc


class Client:
    """A named end-point that sends calls into a network channel."""

    def __init__(self, name: str, sender: RpcChannel):
        self.name = name
        self.sender = sender
        self._hooks = _HookCell()
        self._tasks: set[asyncio.Task] = set()

    @property
    def hooks(self) -> RpcHooks | None:
        return self._hooks.value

    def call(self, fq_name: str, req: Message, reply_type: type[M]) -> Awaitable[M]:
        """Send ``req`` to ``fq_name`` now and return the awaitable reply.

        Failures (encoding, a stopped network, the remote error) are raised
        when the result is awaited.
        """
        try:
            buf = encode(req)
        except EncodeError as exc:
            return _Reply.failed(EncodeFailedError(exc))
        resp: concurrent.futures.Future = concurrent.futures.Future()
        rpc = Rpc(
            client_name=self.name,
            fq_name=fq_name,
            req=buf,
            resp=resp,
            hooks_cell=self._hooks,
        )
        try:
            self.sender.send(rpc)
        except StoppedError as exc:
            return _Reply.failed(exc)
        return _Reply(resp, reply_type)

    def set_hooks(self, hooks: RpcHooks) -> None:
        self._hooks.value = hooks

    def clear_hooks(self) -> None:
        self._hooks.value = None

    def spawn(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Run ``coro`` as a task on the running event loop."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task