# dsskit

Building blocks for writing and testing distributed systems in Python.
It needs nothing beyond the standard library.

dsskit has three parts:

- **`dsskit.codec`** is a binary message codec that uses the protobuf wire
  format. It supports varint integers (`int32`, `int64`, `uint32`, `uint64`,
  `bool`, `enum`), strings and bytes, and repeated fields. Fields holding their
  default value are left out of the encoding. Repeated numeric fields are
  written packed. Decoding accepts both packed and unpacked forms and skips
  unknown fields.
- **`dsskit.rpc`** is an RPC framework that runs inside one process over a
  *simulated* network. The network can drop requests and replies, delay them
  and reorder them. It can also disable clients and kill servers, so you can
  see how a protocol copes with an unreliable link.
- **`dsskit.linearizability`** checks whether a concurrent history of
  operations is linearizable with respect to a sequential model. It includes a
  key/value model.

## Messages

A message is a dataclass that derives from `Message`. Each field is declared
with `proto_field(tag, kind, repeated=False)`. `encode` turns a message into
bytes and `decode` turns bytes back into a message:

```python
from dataclasses import dataclass

from dsskit.codec import FieldKind, Message, decode, encode, proto_field


@dataclass
class Echo(Message):
    x: int = proto_field(1, FieldKind.INT64)


data = encode(Echo(x=777))
assert decode(Echo, data) == Echo(x=777)
assert decode(Echo, b"") == Echo()  # an empty buffer decodes to the defaults
```

You can also call the methods directly: `Echo(x=1).encode()`,
`Echo.decode(data)` and `Echo(x=1).encoded_len()`.

Malformed input raises `DecodeError`. The error's message names the field in
which decoding failed. Values of the wrong type, or outside the range of their
kind, raise `EncodeError`.

## RPC over a simulated network

To define a service, subclass `Service` and mark its async handlers with
`rpc(request_type, reply_type)`. The service name defaults to the class name in
lower case. You can set it yourself with `class Echo(Service, name="echo")`.

To serve the service:

1. Register it on a `ServerBuilder` with `add_service`.
2. Build the server.
3. Add the server to a `Network`.

The network also creates the clients. A client starts out disabled and
unconnected. It has to be enabled and connected to a server before its calls
reach that server.

```python
import asyncio

from dsskit.rpc.network import Network
from dsskit.rpc.server import ServerBuilder
from dsskit.rpc.service import Service, ServiceClient, add_service, rpc


class EchoService(Service, name="echo"):
    @rpc(Echo, Echo)
    async def ping(self, request):
        return request


async def main():
    with Network.new() as net:
        builder = ServerBuilder("echo_server")
        add_service(EchoService(), builder)
        net.add_server(builder.build())

        client = ServiceClient(EchoService, net.create_client("client"))
        net.enable("client", True)
        net.connect("client", "echo_server")

        reply = await client.call("ping", Echo(x=777))  # or: await client.ping(...)
        print(reply)


asyncio.run(main())
```

The network handles calls on its own event loop, which runs in a background
thread. Calls can therefore be awaited from any event loop.

There are two ways to create a network:

- `Network.new()` returns a network that is already serving.
- `Network.create()` returns the network together with its incoming
  `RpcChannel`. Nothing is served until you call `start(incoming)`. Until then
  you can read the raw `Rpc` objects from the channel yourself.

`close()` stops the network. Using the network as a context manager does the
same.

The network is controlled with these methods:

| Method | Effect |
| --- | --- |
| `enable(name, enabled)` | Switches a client on or off. Calls from a disabled or unconnected client time out after a short random delay. |
| `connect(client, server)` | Routes a client's calls to a server. |
| `delete_server(name)` | Kills a server. Calls still in flight to it fail with `StoppedError`. |
| `set_reliable(False)` | Adds short random delays and drops about 10% of requests and 10% of replies. |
| `set_long_delays(True)` | Makes calls that cannot be delivered wait up to 7 seconds before they time out. |
| `set_long_reordering(True)` | Holds back some replies for a long time. |
| `count(server)` | Number of requests a live server has dispatched. |
| `total_count()` | Number of calls the network has processed. |
| `spawn(coro)` | Runs a coroutine on the network's loop. |

Failures are raised as subclasses of `RpcError`:

- `RpcTimeout`
- `StoppedError`
- `UnimplementedError`
- `EncodeFailedError`
- `DecodeFailedError`
- `CanceledError`
- `OtherError`

Two errors compare equal when they are of the same kind and carry the same
detail. For example, `OtherError("x") == OtherError("x")`.

To inject faults, install an `RpcHooks` object on a client with
`Client.set_hooks`. This is the client returned by `Network.create_client`.
The hook has two methods:

- `before_dispatch(fq_name, req)` runs before the request reaches the server.
  If it raises, the call fails with that error.
- `after_dispatch(fq_name, resp)` receives the server's reply bytes, or the
  `RpcError` the server failed with. It returns the bytes to deliver, or raises
  to fail the call.

`clear_hooks()` removes the hook.

## Linearizability checking

A `Model` describes the sequential behaviour of a system:

- `init()` returns the initial state.
- `step(state, input, output)` returns `(legal, new_state)`.
- `equal()` compares two states and is optional.
- `partition` and `partition_event` are optional. They split a history into
  parts that can be checked independently.

You can check a history in either of two forms:

- A list of `Operation(input, call, output, finish)` values, with call and
  return times. Check it with `check_operations(model, history, timeout)`.
- A list of `Event(kind, value, id)` values, where the kind is `EventKind.CALL`
  or `EventKind.RETURN`. Check it with `check_events(model, history, timeout)`.

Each part of a history is checked on its own thread. The timeout is given in
seconds or as a `timedelta`. `None` or `0` means there is no timeout. If the
check gives up on a timeout, the result may be a false positive.

`KvModel` models a key/value store that supports `Op.GET`, `Op.PUT` and
`Op.APPEND`, and it partitions histories by key. `parse_kv_log` turns lines
such as `{:process 0, :type :invoke, :f :put, :key "1", :value "x"}` into
events. Invocations that never returned get an empty reply at the end. A line
it does not recognise raises `ValueError`.

```python
from dsskit.linearizability.checker import check_events
from dsskit.linearizability.models import KvModel, parse_kv_log

with open("history.txt") as log:
    events = parse_kv_log(log)

print(check_events(KvModel(), events, 0))
```

## What dsskit does not do

- The RPC network is simulated inside a single process. It does not open
  sockets and cannot connect separate processes or machines.
- The package has no command-line tool. It is used as a library only.
- It ships no ready-made services, such as a timestamp oracle or a
  transactional store. You declare your own services with `Service` and `rpc`.