"""Errors raised by RPC calls."""

from __future__ import annotations

import json
from typing import Any

from ..codec import DecodeError, EncodeError

__all__ = [
    "RpcError",
    "UnimplementedError",
    "EncodeFailedError",
    "DecodeFailedError",
    "CanceledError",
    "RpcTimeout",
    "StoppedError",
    "OtherError",
]


def _debug(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return repr(value)


class RpcError(Exception):
    """Base class of every RPC failure; errors compare by kind and content."""

    _variant = "Error"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))

    def __str__(self) -> str:
        if not self.args:
            return self._variant
        inner = ", ".join(_debug(arg) for arg in self.args)
        return f"{self._variant}({inner})"


class UnimplementedError(RpcError):
    """The requested service or method does not exist."""

    _variant = "Unimplemented"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EncodeFailedError(RpcError):
    """A request or reply could not be encoded."""

    _variant = "Encode"

    def __init__(self, error: EncodeError):
        super().__init__(error)
        self.error = error
        self.__cause__ = error


class DecodeFailedError(RpcError):
    """A request or reply could not be decoded."""

    _variant = "Decode"

    def __init__(self, error: DecodeError):
        super().__init__(error)
        self.error = error
        self.__cause__ = error


class CanceledError(RpcError):
    """The reply channel was dropped before a reply was sent."""

    _variant = "Recv(Canceled)"

    def __init__(self) -> None:
        super().__init__()


class RpcTimeout(RpcError):
    """The call got no reply, as if it had timed out."""

    _variant = "Timeout"

    def __init__(self) -> None:
        super().__init__()


class StoppedError(RpcError):
    """The network or the server has stopped."""

    _variant = "Stopped"

    def __init__(self) -> None:
        super().__init__()


class OtherError(RpcError):
    """Any other failure, described by a message."""

    _variant = "Other"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message