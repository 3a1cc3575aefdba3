"""Linearizability checking of operation and event histories.

Each partition of a history is searched on its own thread with a
backtracking search over a doubly linked list of call and return entries,
memoising visited (linearized set, state) pairs.
"""

from __future__ import annotations

import datetime
import queue
import threading
from collections.abc import Iterable
from typing import Any

from .bitset import Bitset
from .model import Event, EventKind, Model, Operation

__all__ = ["check_operations", "check_events"]

_Entry = tuple[EventKind, Any, int]


class _Node:
    __slots__ = ("value", "id", "matched", "next", "prev")

    def __init__(self, value: Any, node_id: int, matched: _Node | None = None):
        self.value = value
        self.id = node_id
        self.matched = matched
        self.next: _Node | None = None
        self.prev: _Node | None = None


def _make_entries(history: Iterable[Operation]) -> list[_Entry]:
    timed = []
    for op_id, op in enumerate(history):
        timed.append((op.call, (EventKind.CALL, op.input, op_id)))
        timed.append((op.finish, (EventKind.RETURN, op.output, op_id)))
    timed.sort(key=lambda item: item[0])
    return [entry for _, entry in timed]


def _renumber(events: Iterable[Event]) -> list[_Entry]:
    ids: dict[int, int] = {}
    return [
        (event.kind, event.value, ids.setdefault(event.id, len(ids)))
        for event in events
    ]


def _build_list(entries: list[_Entry]) -> _Node:
    """Link the entries after a sentinel head node and return the head."""
    matches: dict[int, _Node] = {}
    first: _Node | None = None
    for kind, value, entry_id in reversed(entries):
        if kind is EventKind.CALL:
            node = _Node(value, entry_id, matches.get(entry_id))
        else:
            node = _Node(value, entry_id)
            matches[entry_id] = node
        if first is not None:
            first.prev = node
            node.next = first
        first = node
    head = _Node(None, -1)
    if first is not None:
        first.prev = head
        head.next = first
    return head


def _lift(entry: _Node) -> None:
    entry.prev.next = entry.next
    entry.next.prev = entry.prev
    matched = entry.matched
    matched.prev.next = matched.next
    if matched.next is not None:
        matched.next.prev = matched.prev


def _unlift(entry: _Node) -> None:
    matched = entry.matched
    matched.prev.next = matched
    if matched.next is not None:
        matched.next.prev = matched
    entry.prev.next = entry
    entry.next.prev = entry


def _check_single(model: Model, entries: list[_Entry], kill: threading.Event) -> bool:
    linearized = Bitset(len(entries) // 2)
    cache: dict[int, list[tuple[Bitset, Any]]] = {}
    calls: list[tuple[_Node, Any]] = []
    state = model.init()
    head = _build_list(entries)
    entry = head.next

    while head.next is not None:
        if kill.is_set():
            return False
        matching = entry.matched
        if matching is not None:
            ok, new_state = model.step(state, entry.value, matching.value)
            if not ok:
                entry = entry.next
                continue
            new_linearized = linearized.copy()
            new_linearized.set(entry.id)
            bucket = cache.setdefault(hash(new_linearized), [])
            if any(
                new_linearized == seen and model.equal(new_state, seen_state)
                for seen, seen_state in bucket
            ):
                entry = entry.next
                continue
            bucket.append((new_linearized, new_state))
            calls.append((entry, state))
            state = new_state
            linearized.set(entry.id)
            _lift(entry)
            entry = head.next
        else:
            if not calls:
                return False
            entry, state = calls.pop()
            linearized.clear(entry.id)
            _unlift(entry)
            entry = entry.next
    return True


def _seconds(timeout: float | datetime.timedelta | None) -> float | None:
    if timeout is None:
        return None
    if isinstance(timeout, datetime.timedelta):
        timeout = timeout.total_seconds()
    if timeout < 0:
        raise ValueError(f"timeout must not be negative: {timeout}")
    return timeout or None


def _run(model: Model, partitions: list[list[_Entry]], timeout: float | None) -> bool:
    if not partitions:
        return True
    results: queue.Queue = queue.Queue()
    kill = threading.Event()

    def work(entries: list[_Entry]) -> None:
        try:
            results.put(_check_single(model, entries, kill))
        except BaseException as exc:  # handed to the caller below
            results.put(exc)

    threads = [
        threading.Thread(target=work, args=(entries,), daemon=True)
        for entries in partitions
    ]
    for thread in threads:
        thread.start()

    ok = True
    failure: BaseException | None = None
    for _ in partitions:
        try:
            result = results.get(timeout=timeout)
        except queue.Empty:
            break
        if isinstance(result, BaseException):
            failure = result
            break
        if not result:
            ok = False
            break
    kill.set()
    for thread in threads:
        thread.join()
    if failure is not None:
        raise failure
    return ok


def check_operations(
    model: Model,
    history: list[Operation],
    timeout: float | datetime.timedelta | None = None,
) -> bool:
    """Whether ``history`` is linearizable with respect to ``model``.

    ``timeout`` (seconds; None or 0 for none) bounds the wait for each
    partition's verdict; on timeout the answer may be a false positive.
    """
    seconds = _seconds(timeout)
    partitions = [_make_entries(part) for part in model.partition(history)]
    return _run(model, partitions, seconds)


def check_events(
    model: Model,
    history: list[Event],
    timeout: float | datetime.timedelta | None = None,
) -> bool:
    """Whether the event ``history`` is linearizable with respect to ``model``.

    ``timeout`` behaves as in :func:`check_operations`.
    """
    seconds = _seconds(timeout)
    partitions = [_renumber(part) for part in model.partition_event(history)]
    return _run(model, partitions, seconds)