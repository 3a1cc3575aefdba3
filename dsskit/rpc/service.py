"""Declaring RPC services, registering them on servers and calling them."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

from ..codec import DecodeError, EncodeError, Message, decode, encode
from .client import Client
from .errors import DecodeFailedError, EncodeFailedError, RpcError, UnimplementedError
from .server import Handler, HandlerFactory, ServerBuilder

__all__ = ["rpc", "Service", "ServiceClient", "add_service"]

_RPC_ATTR = "__dsskit_rpc__"

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")


def _require_message_type(value: Any, role: str) -> None:
    if not (isinstance(value, type) and issubclass(value, Message)):
        raise TypeError(f"{role} type must be a Message subclass, got {value!r}")


def rpc(request_type: type[Message], reply_type: type[Message]) -> Callable[[F], F]:
    """Mark an async method as an RPC from ``request_type`` to ``reply_type``."""
    _require_message_type(request_type, "request")
    _require_message_type(reply_type, "reply")

    def decorate(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"rpc method {func.__name__} must be an async function")
        setattr(func, _RPC_ATTR, (request_type, reply_type))
        return func

    return decorate


class Service:
    """Base class of services; methods marked with :func:`rpc` are callable.

    The service name is given as ``class Junk(Service, name="junk")`` and
    defaults to the lower-cased class name; subclasses inherit it.
    """

    service_name: str = ""

    def __init_subclass__(cls, name: str | None = None, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        if name is not None:
            cls.service_name = name
        elif not cls.service_name:
            cls.service_name = cls.__name__.lower()

    @classmethod
    def rpc_methods(cls) -> dict[str, tuple[type[Message], type[Message]]]:
        """RPC methods by name, in declaration order, with their message types."""
        methods: dict[str, tuple[type[Message], type[Message]]] = {}
        for klass in reversed(cls.__mro__):
            for attr, value in vars(klass).items():
                signature = getattr(value, _RPC_ATTR, None)
                if signature is not None:
                    methods[attr] = signature
        return methods


async def _fail(error: RpcError) -> bytes:
    raise error


class _ServiceFactory(HandlerFactory):
    def __init__(self, service: Service):
        self._service = service
        self._name = service.service_name
        self._methods = type(service).rpc_methods()
        if not self._methods:
            raise ValueError("empty service is not allowed")

    def handler(self, name: str) -> Handler:
        signature = self._methods.get(name)
        if signature is None:
            error = UnimplementedError(f"unknown {name} in {self._name}")

            def unknown(req: bytes) -> Awaitable[bytes]:
                return _fail(error)

            return unknown

        request_type, reply_type = signature
        method = getattr(self._service, name)

        async def handle(req: bytes) -> bytes:
            try:
                request = decode(request_type, req)
            except DecodeError as exc:
                raise DecodeFailedError(exc) from exc
            reply = await method(request)
            if not isinstance(reply, reply_type):
                raise EncodeFailedError(
                    EncodeError(
                        f"{self._name}.{name} returned {type(reply).__name__}, "
                        f"expected {reply_type.__name__}"
                    )
                )
            try:
                return encode(reply)
            except EncodeError as exc:
                raise EncodeFailedError(exc) from exc

        return handle


def add_service(service: Service, builder: ServerBuilder) -> None:
    """Register ``service`` on ``builder`` under its service name."""
    if not isinstance(service, Service):
        raise TypeError(f"{type(service).__name__} is not a Service")
    builder.add_service(service.service_name, _ServiceFactory(service))


class ServiceClient:
    """Calls the RPC methods of one service type through a :class:`Client`.

    Methods are reachable as ``client.call("name", args)`` or ``client.name(args)``.
    """

    def __init__(self, service_type: type[Service], client: Client):
        if not (isinstance(service_type, type) and issubclass(service_type, Service)):
            raise TypeError(f"{service_type!r} is not a Service type")
        self.service_type = service_type
        self.client = client
        self._methods = service_type.rpc_methods()

    def call(self, method_name: str, args: Message) -> Awaitable[Message]:
        """Send ``args`` to ``method_name`` and return the awaitable reply."""
        signature = self._methods.get(method_name)
        if signature is None:
            raise AttributeError(
                f"{self.service_type.__name__} has no rpc method {method_name!r}"
            )
        request_type, reply_type = signature
        if not isinstance(args, request_type):
            raise TypeError(
                f"{method_name} takes {request_type.__name__}, got {type(args).__name__}"
            )
        fq_name = f"{self.service_type.service_name}.{method_name}"
        return self.client.call(fq_name, args, reply_type)

    def spawn(self, coro: Coroutine[Any, Any, T]):
        """Run ``coro`` as a task on the running event loop."""
        return self.client.spawn(coro)

    def __getattr__(self, name: str) -> Callable[[Message], Awaitable[Message]]:
        methods = self.__dict__.get("_methods")
        if methods is not None and name in methods:
            return functools.partial(self.call, name)
        raise AttributeError(name)