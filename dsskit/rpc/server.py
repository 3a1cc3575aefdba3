"""RPC servers: named sets of services dispatched by fully qualified method name."""

from __future__ import annotations

import abc
import itertools
import threading
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType

from .errors import OtherError, RpcError, UnimplementedError

__all__ = ["Handler", "HandlerFactory", "ServerBuilder", "Server"]

Handler = Callable[[bytes], Awaitable[bytes]]
"""Takes an encoded request and returns an awaitable of the encoded reply."""

_ID_ALLOC = itertools.count()


async def _fail(error: RpcError) -> bytes:
    raise error


class HandlerFactory(abc.ABC):
    """Produces request handlers for the methods of one service."""

    @abc.abstractmethod
    def handler(self, name: str) -> Handler:
        """Return the handler for method ``name``.

        A handler for an unknown method must fail with
        :class:`UnimplementedError` when awaited.
        """


class ServerBuilder:
    """Collects services under a server name, then builds a :class:`Server`."""

    def __init__(self, name: str):
        self.name = name
        self.services: dict[str, HandlerFactory] = {}

    def add_service(self, service_name: str, factory: HandlerFactory) -> None:
        """Register ``factory`` under ``service_name``; names must be unique."""
        if service_name in self.services:
            raise OtherError(f"{service_name} has already registered")
        self.services[service_name] = factory

    def build(self) -> Server:
        """Build a server with a fresh, process-wide unique id."""
        return Server(self.name, self.services, next(_ID_ALLOC))


class Server:
    """A built server: dispatches requests and counts them."""

    def __init__(self, name: str, services: Mapping[str, HandlerFactory], server_id: int):
        self._name = name
        self._services = MappingProxyType(dict(services))
        self._id = server_id
        self._count = 0
        self._lock = threading.Lock()

    def count(self) -> int:
        """Number of requests dispatched so far, failed ones included."""
        with self._lock:
            return self._count

    def name(self) -> str:
        return self._name

    def id(self) -> int:
        return self._id

    def dispatch(self, fq_name: str, req: bytes) -> Awaitable[bytes]:
        """Route ``req`` to ``service.method`` and return the awaitable reply."""
        with self._lock:
            self._count += 1
        parts = fq_name.split(".")
        if len(parts) < 2:
            return _fail(UnimplementedError(f"unknown {fq_name}"))
        service_name, method_name = parts[0], parts[1]
        factory = self._services.get(service_name)
        if factory is None:
            return _fail(UnimplementedError(f"unknown {fq_name}"))
        return factory.handler(method_name)(req)

    def __repr__(self) -> str:
        return f"Server(name={self._name!r}, id={self._id})"