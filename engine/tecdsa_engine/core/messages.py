"""Decoding helpers for peer payloads.

Each helper converts a JSON value into a typed value or raises the given
protocol error, so engines never see half-parsed input.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from tecdsa_engine.core.errors import MalformedMessage, ProtocolError
from tecdsa_engine.utils.curve import ECPoint, point_from_hex, scalar_from_hex

T = TypeVar("T")


def scalar(value: Any, error: type[ProtocolError] = MalformedMessage) -> int:
    try:
        return scalar_from_hex(value)
    except (ValueError, TypeError, AttributeError):
        raise error("Invalid scalar encoding")


def point(value: Any, error: type[ProtocolError] = MalformedMessage) -> ECPoint:
    try:
        return point_from_hex(value)
    except (ValueError, TypeError, AttributeError):
        raise error("Invalid point encoding")


def raw_bytes(value: Any, length: int, error: type[ProtocolError] = MalformedMessage) -> bytes:
    if not isinstance(value, str):
        raise error("Expected hex string")
    try:
        data = bytes.fromhex(value.removeprefix("0x"))
    except ValueError:
        raise error("Invalid hex encoding")
    if len(data) != length:
        raise error(f"Expected {length} bytes, got {len(data)}")
    return data


def bits(value: Any, width: int, error: type[ProtocolError] = MalformedMessage) -> int:
    """Parse a hex-encoded bit vector of at most ``width`` bits."""
    if not isinstance(value, str):
        raise error("Expected hex string")
    try:
        parsed = int(value, 16)
    except ValueError:
        raise error("Invalid hex encoding")
    if parsed < 0 or parsed.bit_length() > width:
        raise error(f"Bit vector wider than {width} bits")
    return parsed


def sequence(
    value: Any,
    length: int | None,
    item: Callable[[Any], T],
    error: type[ProtocolError] = MalformedMessage,
) -> list[T]:
    if not isinstance(value, list):
        raise error("Expected a list")
    if length is not None and len(value) != length:
        raise error(f"Expected {length} entries, got {len(value)}")
    return [item(v) for v in value]


def decoded(fn: Callable[[], T], error: type[ProtocolError] = MalformedMessage) -> T:
    """Run a ``from_wire`` style decoder, mapping parse errors to ``error``."""
    try:
        return fn()
    except (KeyError, ValueError, TypeError, AttributeError):
        raise error("Malformed payload")
