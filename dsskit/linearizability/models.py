"""A key-value store model and a parser for key-value operation logs."""

from __future__ import annotations

import enum
import re
from collections.abc import Iterable
from dataclasses import dataclass

from .model import Event, EventKind, Model, Operation

__all__ = ["Op", "KvInput", "KvOutput", "KvModel", "parse_kv_log"]


class Op(enum.Enum):
    """Operations a key-value store accepts."""

    GET = "get"
    PUT = "put"
    APPEND = "append"


@dataclass(frozen=True)
class KvInput:
    """The request side of a key-value operation."""

    op: Op
    key: str
    value: str = ""


@dataclass(frozen=True)
class KvOutput:
    """The reply side of a key-value operation."""

    value: str = ""


class KvModel(Model[str, KvInput, KvOutput]):
    """Model of a single key's value; histories are partitioned by key."""

    def partition(
        self, history: list[Operation[KvInput, KvOutput]]
    ) -> list[list[Operation[KvInput, KvOutput]]]:
        by_key: dict[str, list[Operation[KvInput, KvOutput]]] = {}
        for op in history:
            by_key.setdefault(op.input.key, []).append(op)
        return list(by_key.values())

    def partition_event(self, history: list[Event]) -> list[list[Event]]:
        by_key: dict[str, list[Event]] = {}
        keys_by_id: dict[int, str] = {}
        for event in history:
            if event.kind is EventKind.CALL:
                key = event.value.key
                keys_by_id[event.id] = key
            else:
                if event.id not in keys_by_id:
                    raise KeyError(f"return event {event.id} has no matching call")
                key = keys_by_id[event.id]
            by_key.setdefault(key, []).append(event)
        return list(by_key.values())

    def init(self) -> str:
        # a single key's value: histories are partitioned by key
        return ""

    def step(self, state: str, input: KvInput, output: KvOutput) -> tuple[bool, str]:
        if input.op is Op.GET:
            return output.value == state, state
        if input.op is Op.PUT:
            return True, input.value
        return True, state + input.value


_INVOKE_GET = re.compile(
    r'\{:process (\d+), :type :invoke, :f :get, :key "(.*)", :value nil\}'
)
_INVOKE_PUT = re.compile(
    r'\{:process (\d+), :type :invoke, :f :put, :key "(.*)", :value "(.*)"\}'
)
_INVOKE_APPEND = re.compile(
    r'\{:process (\d+), :type :invoke, :f :append, :key "(.*)", :value "(.*)"\}'
)
_RETURN_GET = re.compile(
    r'\{:process (\d+), :type :ok, :f :get, :key ".*", :value "(.*)"\}'
)
_RETURN_PUT = re.compile(
    r'\{:process (\d+), :type :ok, :f :put, :key ".*", :value ".*"\}'
)
_RETURN_APPEND = re.compile(
    r'\{:process (\d+), :type :ok, :f :append, :key ".*", :value ".*"\}'
)


def parse_kv_log(lines: Iterable[str]) -> list[Event]:
    """Parse a key-value operation log into call and return events.

    Invocations still pending at the end of the log get a return event
    with an empty value, appended in the order they were invoked.
    """
    events: list[Event] = []
    pending: dict[int, int] = {}
    next_id = 0

    def invoke(process: str, kv_input: KvInput) -> None:
        nonlocal next_id
        events.append(Event(EventKind.CALL, kv_input, next_id))
        pending[int(process)] = next_id
        next_id += 1

    def finish(process: str, value: str, line: str) -> None:
        proc = int(process)
        if proc not in pending:
            raise ValueError(f"return without a pending invocation: {line!r}")
        events.append(Event(EventKind.RETURN, KvOutput(value), pending.pop(proc)))

    for raw in lines:
        line = raw.rstrip("\r\n")
        if match := _INVOKE_GET.search(line):
            invoke(match[1], KvInput(Op.GET, match[2], ""))
        elif match := _INVOKE_PUT.search(line):
            invoke(match[1], KvInput(Op.PUT, match[2], match[3]))
        elif match := _INVOKE_APPEND.search(line):
            invoke(match[1], KvInput(Op.APPEND, match[2], match[3]))
        elif match := _RETURN_GET.search(line):
            finish(match[1], match[2], line)
        elif match := _RETURN_PUT.search(line):
            finish(match[1], "", line)
        elif match := _RETURN_APPEND.search(line):
            finish(match[1], "", line)
        else:
            raise ValueError(f"unrecognised log line: {line!r}")

    for match_id in pending.values():
        events.append(Event(EventKind.RETURN, KvOutput(""), match_id))
    return events