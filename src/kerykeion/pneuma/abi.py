"""
ABI Codec - Typed encoding of calls, return values and event logs.

Works over a closed set of fixed-size argument kinds (address, bytesN,
uintN), each occupying one 32-byte word. Word-level packing is delegated
to eth-abi; this module owns schemas, selectors, topic hashing and length
validation.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_hash.auto import keccak

from ..errors import DecodeMismatch
from ..logging import get_logger
from ..utils import from_data, normalize_address
from .models import DecodedEvent, LogEvent

logger = get_logger("pneuma.abi")

WORD_SIZE = 32

_SIGNATURE_RE = re.compile(r"^\s*([A-Za-z_$][A-Za-z0-9_$]*)\s*\((.*)\)\s*$")


def keccak256(data: bytes) -> bytes:
    """Keccak-256 digest.

    NOTE: Keccak-256 != SHA3-256 (NIST). Never use hashlib.sha3_256 here.
    """
    return keccak(data)


# ============ Argument kinds ============


@dataclass(frozen=True)
class AbiType:
    """One fixed-size ABI type: ``address``, ``bytes<N>`` or ``uint<N>``."""

    kind: str
    size: int

    @property
    def name(self) -> str:
        if self.kind == "address":
            return "address"
        return f"{self.kind}{self.size}"

    @classmethod
    def parse(cls, name: str) -> "AbiType":
        name = name.strip()
        if name == "address":
            return cls("address", 20)
        if name == "uint":
            return cls("uint", 256)
        match = re.fullmatch(r"(uint|bytes)(\d+)", name)
        if match:
            kind, size = match.group(1), int(match.group(2))
            if kind == "uint" and size % 8 == 0 and 8 <= size <= 256:
                return cls(kind, size)
            if kind == "bytes" and 1 <= size <= WORD_SIZE:
                return cls(kind, size)
        raise ValueError(f"Unsupported ABI type: {name!r}")

    def encode(self, value: Any) -> bytes:
        """Encode ``value`` as a single 32-byte word."""
        if self.kind == "address":
            value = normalize_address(value if isinstance(value, str) else "0x" + bytes(value).hex())
        elif self.kind == "bytes":
            value = from_data(value)
            if len(value) > self.size:
                raise ValueError(f"{self.name} value is {len(value)} bytes long")
        try:
            return abi_encode([self.name], [value])
        except EncodingError as e:
            raise ValueError(f"Cannot encode {value!r} as {self.name}: {e}") from e

    def decode(self, word: bytes) -> Any:
        if len(word) != WORD_SIZE:
            raise DecodeMismatch(f"{self.name} needs a {WORD_SIZE}-byte word, got {len(word)} bytes")
        try:
            return abi_decode([self.name], word)[0]
        except DecodingError as e:
            raise DecodeMismatch(f"Malformed {self.name} word: {e}") from e


TypeSpec = Union[AbiType, str]


def _as_types(types: Iterable[TypeSpec]) -> tuple[AbiType, ...]:
    return tuple(t if isinstance(t, AbiType) else AbiType.parse(t) for t in types)


def encode_args(types: Sequence[TypeSpec], args: Sequence[Any]) -> bytes:
    abi_types = _as_types(types)
    if len(abi_types) != len(args):
        raise ValueError(f"Expected {len(abi_types)} arguments, got {len(args)}")
    return b"".join(t.encode(v) for t, v in zip(abi_types, args))


def decode(types: Sequence[TypeSpec], data: Union[bytes, str]) -> tuple:
    """
    Decode consecutive 32-byte words in schema order.

    Raises:
        DecodeMismatch: If ``data`` is shorter than the schema requires
    """
    abi_types = _as_types(types)
    raw = from_data(data)
    required = WORD_SIZE * len(abi_types)
    if len(raw) < required:
        raise DecodeMismatch(f"Need {required} bytes for {len(abi_types)} words, got {len(raw)}")
    return tuple(
        t.decode(raw[i * WORD_SIZE : (i + 1) * WORD_SIZE]) for i, t in enumerate(abi_types)
    )


def _split_signature(signature: str) -> tuple[str, list[str]]:
    match = _SIGNATURE_RE.match(signature)
    if not match:
        raise ValueError(f"Malformed signature: {signature!r}")
    name, params = match.group(1), match.group(2).strip()
    return name, [p.strip() for p in params.split(",")] if params else []


# ============ Functions ============


@dataclass(frozen=True)
class FunctionSchema:
    name: str
    inputs: tuple[AbiType, ...]
    outputs: tuple[AbiType, ...] = ()

    @classmethod
    def parse(cls, signature: str, returns: Sequence[TypeSpec] = ()) -> "FunctionSchema":
        """Parse ``name(type,...)``. Parameter names after the type are ignored."""
        name, params = _split_signature(signature)
        inputs = tuple(AbiType.parse(p.split()[0]) for p in params)
        return cls(name=name, inputs=inputs, outputs=_as_types(returns))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(t.name for t in self.inputs)})"

    @property
    def selector(self) -> bytes:
        """First 4 bytes of keccak256 of the canonical signature."""
        return keccak256(self.signature.encode("utf-8"))[:4]

    def encode(self, args: Sequence[Any]) -> bytes:
        return self.selector + encode_args(self.inputs, args)

    def decode_input(self, calldata: Union[bytes, str]) -> tuple:
        raw = from_data(calldata)
        if raw[:4] != self.selector:
            raise DecodeMismatch(f"Calldata selector 0x{raw[:4].hex()} is not {self.signature}")
        return decode(self.inputs, raw[4:])

    def decode_output(self, data: Union[bytes, str]) -> tuple:
        return decode(self.outputs, data)


def encode_call(signature: Union[str, FunctionSchema], args: Sequence[Any]) -> bytes:
    """
    ABI-encode a function call.

    Args:
        signature: Canonical signature such as ``transfer(address,uint256)``
        args: Argument values in declaration order

    Returns:
        Calldata bytes: 4-byte selector followed by one word per argument
    """
    schema = signature if isinstance(signature, FunctionSchema) else FunctionSchema.parse(signature)
    return schema.encode(args)


# ============ Events ============


@dataclass(frozen=True)
class EventField:
    name: str
    type: AbiType
    indexed: bool = False


@dataclass(frozen=True)
class EventSchema:
    """
    Statically declared event layout.

    Indexed fields are read positionally from ``topics[1:]``; the others
    from the data section in declaration order. ``topic0`` is computed once
    at construction.
    """

    name: str
    fields: tuple[EventField, ...]
    topic0: bytes = field(init=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "topic0", keccak256(self.signature.encode("utf-8")))

    @classmethod
    def parse(cls, declaration: str) -> "EventSchema":
        """Parse ``Name(type [indexed] [name], ...)``.

        Unnamed fields are called ``arg0``, ``arg1``, ...
        """
        name, params = _split_signature(declaration)
        fields = []
        for position, param in enumerate(params):
            parts = param.split()
            indexed = "indexed" in parts[1:]
            names = [p for p in parts[1:] if p != "indexed"]
            fields.append(
                EventField(
                    name=names[0] if names else f"arg{position}",
                    type=AbiType.parse(parts[0]),
                    indexed=indexed,
                )
            )
        return cls(name=name, fields=tuple(fields))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(f.type.name for f in self.fields)})"

    @property
    def indexed_fields(self) -> tuple[EventField, ...]:
        return tuple(f for f in self.fields if f.indexed)

    @property
    def data_fields(self) -> tuple[EventField, ...]:
        return tuple(f for f in self.fields if not f.indexed)

    def decode_log(self, log: LogEvent) -> DecodedEvent:
        """
        Decode indexed topics and the data section.

        Raises:
            DecodeMismatch: Wrong topic0, wrong topic count or short data
        """
        if log.topic0 != self.topic0:
            found = "none" if log.topic0 is None else "0x" + log.topic0.hex()
            raise DecodeMismatch(f"topic0 {found} is not {self.signature}")

        indexed = self.indexed_fields
        if len(log.topics) - 1 != len(indexed):
            raise DecodeMismatch(
                f"{self.signature} expects {len(indexed)} indexed topics, got {len(log.topics) - 1}"
            )

        args: dict[str, Any] = {}
        for f, topic in zip(indexed, log.topics[1:]):
            args[f.name] = f.type.decode(topic)
        values = decode([f.type for f in self.data_fields], log.data)
        for f, value in zip(self.data_fields, values):
            args[f.name] = value

        return DecodedEvent(name=self.name, args={f.name: args[f.name] for f in self.fields})

    def encode_log(self, args: dict[str, Any]) -> tuple[tuple[bytes, ...], bytes]:
        """Build ``(topics, data)`` for ``args`` as an emitting contract would."""
        topics = (self.topic0,) + tuple(f.type.encode(args[f.name]) for f in self.indexed_fields)
        data = b"".join(f.type.encode(args[f.name]) for f in self.data_fields)
        return topics, data


class EventRegistry:
    """Event schemas keyed by topic0, resolved once at registration."""

    def __init__(self, schemas: Iterable[EventSchema] = ()) -> None:
        self._by_topic: dict[bytes, EventSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: Union[EventSchema, str]) -> EventSchema:
        if isinstance(schema, str):
            schema = EventSchema.parse(schema)
        existing = self._by_topic.get(schema.topic0)
        if existing is not None and existing != schema:
            raise ValueError(f"Conflicting schema for {schema.signature}")
        self._by_topic[schema.topic0] = schema
        return schema

    def get(self, topic0: Optional[bytes]) -> Optional[EventSchema]:
        return self._by_topic.get(topic0) if topic0 is not None else None

    @property
    def topics(self) -> tuple[bytes, ...]:
        return tuple(self._by_topic)

    def __len__(self) -> int:
        return len(self._by_topic)

    def __contains__(self, topic0: object) -> bool:
        return topic0 in self._by_topic

    def decode(self, log: LogEvent) -> LogEvent:
        """Return ``log`` with its decoded record attached."""
        schema = self.get(log.topic0)
        if schema is None:
            found = "none" if log.topic0 is None else "0x" + log.topic0.hex()
            raise DecodeMismatch(f"No registered event for topic0 {found}")
        return log.with_decoded(schema.decode_log(log))


# ============ ABI JSON ============


@dataclass
class ContractSchemas:
    functions: dict[str, FunctionSchema]
    events: dict[str, EventSchema]


def load_abi(path: Union[str, Path]) -> list[dict[str, Any]]:
    """
    Load a contract ABI from a JSON file.

    Accepts either a bare ABI list or a compiler artifact with an ``abi`` key.
    """
    with Path(path).open("r", encoding="utf-8") as f:
        artifact = json.load(f)

    abi = artifact.get("abi") if isinstance(artifact, dict) else artifact
    if not isinstance(abi, list):
        raise ValueError(f"No ABI list found in {path}")
    return abi


def schemas_from_abi(abi: list[dict[str, Any]]) -> ContractSchemas:
    """Build schemas for every ABI entry whose types are all supported."""
    functions: dict[str, FunctionSchema] = {}
    events: dict[str, EventSchema] = {}

    for entry in abi:
        kind = entry.get("type")
        try:
            if kind == "function":
                schema = FunctionSchema(
                    name=entry["name"],
                    inputs=_as_types(p["type"] for p in entry.get("inputs", [])),
                    outputs=_as_types(p["type"] for p in entry.get("outputs", [])),
                )
                functions[schema.name] = schema
            elif kind == "event" and not entry.get("anonymous", False):
                event = EventSchema(
                    name=entry["name"],
                    fields=tuple(
                        EventField(
                            name=p.get("name") or f"arg{i}",
                            type=AbiType.parse(p["type"]),
                            indexed=bool(p.get("indexed", False)),
                        )
                        for i, p in enumerate(entry.get("inputs", []))
                    ),
                )
                events[event.name] = event
        except ValueError as e:
            logger.debug("Skipping ABI entry %s: %s", entry.get("name"), e)

    return ContractSchemas(functions=functions, events=events)
