# datatransfer

Building blocks for a peer-to-peer data transfer protocol: the message
types of protocol versions 1.0 and 1.1 with their CBOR wire format, a
registry for voucher types, a network layer that sends messages over
streams with retry and backoff, and a monitor that restarts push channels
whose data rate falls too low.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `datatransfer.core`

Shared types and interfaces.

- `Status`: the channel statuses (`REQUESTED`, `ONGOING`, ... ,
  `CHANNEL_NOT_FOUND_ERROR`). `str(status)` and `status_name(status)` give
  the readable name, e.g. `"TransferFinished"`; an unknown value gives `""`.
- `MessageType`: the wire message kinds (`NEW`, `UPDATE`, `CANCEL`,
  `COMPLETE`, `VOUCHER`, `VOUCHER_RESULT`, `RESTART`,
  `RESTART_EXISTING_CHANNEL_REQUEST`).
- `ChannelID(initiator, responder, id)`: a frozen dataclass; `str()` gives
  `"initiator-responder-id"`.
- `Cid(raw)`: a content identifier held as bytes; empty bytes mean
  undefined (`UNDEF_CID`). `str()` gives base58 for version 0 identifiers
  and base32 with a `b` prefix otherwise.
- `PROTOCOL_DATA_TRANSFER_1_1` and `PROTOCOL_DATA_TRANSFER_1_0`: the
  protocol identifiers.
- `RequestValidator`, `Revalidator` and `Manager`: typing protocols that
  describe what a validator, a revalidator and a transfer manager provide.

### `datatransfer.registry`

- `Registry.register(entry, processor)` records a `Decoder` and a processor
  under `entry.type()`. The entry's class must define a `from_cbor_value`
  class method; otherwise, or when the identifier is already registered,
  `RegistryError` is raised.
- `Registry.decoder(identifier)` and `Registry.processor(identifier)`
  return `None` for unknown identifiers; `Registry.each(process)` calls
  `process(identifier, decoder, processor)` for every entry.
  `identifier in registry` and iteration over identifiers also work.
- `Decoder.decode_from_cbor(data)` turns CBOR bytes into an instance of the
  registered type.
- `encode(value)` encodes a value to CBOR, using its `to_cbor_value()` if it
  has one.

### `datatransfer.message1_0`

The legacy 1.0 protocol, encoded as CBOR arrays: `TransferRequest`,
`TransferResponse`, `new_transfer_request`, `new_transfer_response` and
`from_net(stream)`. Restart messages do not exist in this version.
Problems raise `MessageError`; an empty stream raises `EOFError`.

### `datatransfer.message1_1`

The 1.1 protocol, encoded as CBOR maps. Requests are built with
`new_request`, `restart_existing_channel_request`, `cancel_request`,
`update_request` and `voucher_request`; responses with `new_response`,
`restart_response`, `voucher_result_response`, `update_response`,
`cancel_response` and `complete_response`. `to_net(stream)` writes a
message and `from_net(stream)` reads one.

`message_for_protocol(protocol)` returns the message itself for 1.1 and a
1.0 message for 1.0; restart messages cannot be converted and raise
`MessageError` ("restart not supported on 1.0" for requests, "restart not
supported for 1.0 protocol" for responses), as does an unknown protocol.

### `datatransfer.network`

`DataTransferNetwork(host, *, protocols=None, open_stream_timeout=10.0,
send_message_timeout=10.0, max_stream_open_attempts=5,
min_attempt_duration=1.0, max_attempt_duration=300.0, backoff_factor=5.0)`
wraps a `Host`:

- `send_message(peer, message)` opens a stream (retrying with jittered
  exponential backoff up to `max_stream_open_attempts`), converts the
  message for the stream's protocol and writes it. Failures raise
  `NetworkError`.
- `set_delegate(receiver)` installs `handle_new_stream` as the handler for
  each protocol; incoming messages go to the `Receiver`'s
  `receive_request`, `receive_response`,
  `receive_restart_existing_channel_request` or `receive_error`.
- `connect_to`, `peer_id`, `protect` and `unprotect` pass through to the
  host.

### `datatransfer.pushchannelmonitor`

`Monitor(mgr, cfg)` watches push channels. `Config` takes, in seconds
where a duration, `accept_timeout`, `interval`, `min_bytes_sent`,
`checks_per_interval`, `restart_backoff` (default 0),
`max_consecutive_restarts` and `complete_timeout`; a non-positive value
(other than `restart_backoff`) raises `ValueError`. With `cfg=None` the
monitor is disabled and `add_channel` returns `None`.

`add_channel(chid)` returns a `MonitoredChannel`, which subscribes to the
manager's events (`Event` with an `EventCode`). A channel is restarted
after an `ERROR` event or when less than `min_bytes_sent` was sent over an
interval while data was pending; it is closed with an error after too many
consecutive restarts, a failed restart, or when the Accept or Complete
message does not arrive in time. `start()` runs the rate checks in a
background thread, `check_data_rate()` runs them once, and `shutdown()`
stops everything.

## Example

```python
import io

from datatransfer import message1_1

request = message1_1.cancel_request(42)
buf = io.BytesIO()
request.to_net(buf)
buf.seek(0)

received = message1_1.from_net(buf)
assert received.is_request()
assert received.is_cancel()
assert received.transfer_id() == 42
```

## What this package does not do

- There is no transfer manager: `core.Manager` only describes the
  interface. Channel state, validation and the data transport itself are
  left to the caller.
- There is no peer-to-peer host: `DataTransferNetwork` needs an object
  that satisfies `network.Host` and supplies streams.
- The monitor needs a manager object providing `subscribe_to_events`,
  `restart_data_transfer_channel` and
  `close_data_transfer_channel_with_error`.
- Selectors are carried as plain CBOR values and are not interpreted.