import datetime
from dataclasses import dataclass

import pytest

from dsskit.linearizability.checker import check_events, check_operations
from dsskit.linearizability.model import Event, EventKind, Model, Operation


@dataclass(frozen=True)
class RegisterInput:
    is_get: bool
    value: int = 0
    key: str = ""


class Register(Model):
    def init(self):
        return 0

    def step(self, state, input, output):
        if input.is_get:
            return output == state, state
        return True, input.value


class KeyedRegister(Register):
    def partition(self, history):
        parts = {}
        for op in history:
            parts.setdefault(op.input.key, []).append(op)
        return list(parts.values())


class Exploding(Register):
    def step(self, state, input, output):
        raise RuntimeError("boom")


def put(value, key=""):
    return RegisterInput(False, value, key)


def get(key=""):
    return RegisterInput(True, 0, key)


def test_concurrent_reads_linearizable():
    ops = [
        Operation(put(100), 0, 0, 100),
        Operation(get(), 25, 100, 75),
        Operation(get(), 30, 0, 60),
    ]
    assert check_operations(Register(), ops) is True


def test_concurrent_reads_not_linearizable():
    ops = [
        Operation(put(200), 0, 0, 100),
        Operation(get(), 10, 200, 30),
        Operation(get(), 40, 0, 90),
    ]
    assert check_operations(Register(), ops) is False


def test_sequential_stale_read_rejected():
    ops = [Operation(put(1), 0, 0, 10), Operation(get(), 20, 0, 30)]
    assert check_operations(Register(), ops) is False


def test_sequential_fresh_read_accepted():
    ops = [Operation(put(1), 0, 0, 10), Operation(get(), 20, 1, 30)]
    assert check_operations(Register(), ops) is True


def test_empty_history_is_linearizable():
    assert check_operations(Register(), []) is True
    assert check_operations(KeyedRegister(), []) is True


def test_partitioned_history_all_ok():
    ops = [
        Operation(put(1, "a"), 0, 0, 10),
        Operation(put(2, "b"), 0, 0, 10),
        Operation(get("a"), 20, 1, 30),
        Operation(get("b"), 20, 2, 30),
    ]
    assert check_operations(KeyedRegister(), ops) is True


def test_one_bad_partition_fails_whole_history():
    ops = []
    for index in range(8):
        key = f"k{index}"
        ops.append(Operation(put(index + 1, key), 0, 0, 10))
        ops.append(Operation(get(key), 20, index + 1, 30))
    ops.append(Operation(put(5, "bad"), 0, 0, 10))
    ops.append(Operation(get("bad"), 20, 6, 30))
    assert check_operations(KeyedRegister(), ops) is False


@pytest.mark.parametrize("timeout", [5.0, datetime.timedelta(seconds=5), 0, None])
def test_timeout_forms_do_not_change_verdict(timeout):
    good = [Operation(put(1), 0, 0, 10), Operation(get(), 20, 1, 30)]
    bad = [Operation(put(1), 0, 0, 10), Operation(get(), 20, 2, 30)]
    assert check_operations(Register(), good, timeout) is True
    assert check_operations(Register(), bad, timeout) is False


def test_negative_timeout_rejected():
    with pytest.raises(ValueError):
        check_operations(Register(), [], -1)


def test_events_linearizable_with_overlap():
    events = [
        Event(EventKind.CALL, put(1), 0),
        Event(EventKind.CALL, get(), 1),
        Event(EventKind.RETURN, 1, 1),
        Event(EventKind.RETURN, 0, 0),
    ]
    assert check_events(Register(), events) is True


def test_events_stale_read_rejected():
    events = [
        Event(EventKind.CALL, put(1), 0),
        Event(EventKind.RETURN, 0, 0),
        Event(EventKind.CALL, get(), 1),
        Event(EventKind.RETURN, 0, 1),
    ]
    assert check_events(Register(), events) is False


def test_events_ids_need_not_be_dense():
    events = [
        Event(EventKind.CALL, put(3), 40),
        Event(EventKind.RETURN, 0, 40),
        Event(EventKind.CALL, get(), 900),
        Event(EventKind.RETURN, 3, 900),
    ]
    assert check_events(Register(), events, timeout=5) is True


def test_operations_and_events_agree():
    ops = [
        Operation(put(100), 0, 0, 100),
        Operation(get(), 25, 100, 75),
        Operation(get(), 30, 0, 60),
    ]
    timed = []
    for op_id, op in enumerate(ops):
        timed.append((op.call, Event(EventKind.CALL, op.input, op_id)))
        timed.append((op.finish, Event(EventKind.RETURN, op.output, op_id)))
    events = [event for _, event in sorted(timed, key=lambda item: item[0])]
    assert check_events(Register(), events) == check_operations(Register(), ops)


def test_model_error_propagates():
    ops = [Operation(put(1), 0, 0, 10)]
    with pytest.raises(RuntimeError, match="boom"):
        check_operations(Exploding(), ops)


def test_many_writes_and_reads_backtracking():
    ops = [Operation(put(value), 0, 0, 100) for value in range(1, 6)]
    ops.append(Operation(get(), 150, 3, 200))
    assert check_operations(Register(), ops) is True
    ops.append(Operation(get(), 250, 9, 300))
    assert check_operations(Register(), ops) is False