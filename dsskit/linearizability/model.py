"""Histories of operations and the models they are checked against."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

__all__ = ["Operation", "EventKind", "Event", "Model"]

S = TypeVar("S")
I = TypeVar("I")  # noqa: E741
O = TypeVar("O")  # noqa: E741
T = TypeVar("T")


@dataclass
class Operation(Generic[I, O]):
    """A completed operation with its invocation and response times."""

    input: I
    call: int
    output: O
    finish: int


class EventKind(enum.Enum):
    """Whether an event is the invocation or the response of an operation."""

    CALL = "call"
    RETURN = "return"


@dataclass
class Event(Generic[T]):
    """One half of an operation; call and return share the same ``id``.

    A call event carries the operation's input, a return event its output.
    """

    kind: EventKind
    value: T
    id: int


class Model(abc.ABC, Generic[S, I, O]):
    """Sequential specification of a system."""

    def partition(self, history: list[Operation[I, O]]) -> list[list[Operation[I, O]]]:
        """Split a history so it is linearizable iff every part is."""
        return [list(history)]

    def partition_event(self, history: list[Event]) -> list[list[Event]]:
        """Split an event history so it is linearizable iff every part is."""
        return [list(history)]

    @abc.abstractmethod
    def init(self) -> S:
        """Initial state of the system."""

    @abc.abstractmethod
    def step(self, state: S, input: I, output: O) -> tuple[bool, S]:
        """Whether the step is legal from ``state``, and the state after it.

        Must not mutate ``state``.
        """

    def equal(self, state1: S, state2: S) -> bool:
        """Whether two states are the same."""
        return state1 == state2