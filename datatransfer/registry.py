"""Registry of encodable types keyed by their type identifier."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import cbor2

from datatransfer.core import TypeIdentifier


class RegistryError(Exception):
    """Raised when an entry cannot be registered."""


def encode(value: Any) -> bytes:
    """Encode a value to CBOR, using its ``to_cbor_value`` form if it has one."""
    if value is None:
        return cbor2.dumps(None)
    to_value = getattr(value, "to_cbor_value", None)
    if callable(to_value):
        return cbor2.dumps(to_value())
    return cbor2.dumps(value)


class Decoder:
    """Decodes CBOR bytes into instances of one registered type."""

    def __init__(self, kind: type) -> None:
        from_value = getattr(kind, "from_cbor_value", None)
        if not callable(from_value):
            raise TypeError("type must provide from_cbor_value")
        self._kind = kind
        self._from_value = from_value

    @classmethod
    def for_entry(cls, entry: Any) -> "Decoder":
        """Build a decoder for the type of the given entry."""
        return cls(type(entry))

    @property
    def kind(self) -> type:
        return self._kind

    def decode_from_cbor(self, data: bytes) -> Any:
        """Decode CBOR bytes into a new instance of the registered type."""
        return self._from_value(cbor2.loads(data))


@dataclass(frozen=True)
class _Entry:
    decoder: Decoder
    processor: Any


class Registry:
    """Maps type identifiers to a decoder and a processor for that type."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[TypeIdentifier, _Entry] = {}

    def register(self, entry: Any, processor: Any) -> None:
        """Register a processor for the type of the given entry."""
        identifier = entry.type()
        try:
            decoder = Decoder.for_entry(entry)
        except TypeError as err:
            raise RegistryError(f"registering entry type {identifier}: {err}") from err
        with self._lock:
            if identifier in self._entries:
                raise RegistryError(f"identifier already registered: {identifier}")
            self._entries[identifier] = _Entry(decoder, processor)

    def decoder(self, identifier: TypeIdentifier) -> Optional[Decoder]:
        """Return the decoder for an identifier, or None if it is not registered."""
        with self._lock:
            entry = self._entries.get(identifier)
        return entry.decoder if entry else None

    def processor(self, identifier: TypeIdentifier) -> Any:
        """Return the processor for an identifier, or None if it is not registered."""
        with self._lock:
            entry = self._entries.get(identifier)
        return entry.processor if entry else None

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._entries

    def __iter__(self) -> Iterator[TypeIdentifier]:
        with self._lock:
            return iter(list(self._entries))

    def each(self, process: Callable[[TypeIdentifier, Decoder, Any], None]) -> None:
        """Call ``process`` for every entry; an exception stops the iteration."""
        with self._lock:
            snapshot = list(self._entries.items())
        for identifier, entry in snapshot:
            process(identifier, entry.decoder, entry.processor)