from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from web3 import Web3


def to_hex(value: Any) -> str:
    """
    Render a hash, topic or byte payload as a 0x-prefixed hex string.

    Strings are assumed to be hex already and are returned unchanged.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Web3.to_hex(bytes(value))
    return str(value)


def _fallback_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return object.__repr__(value)


def serialize_value(value: Any) -> Any:
    """
    Convert a decoded ledger value into a JSON-safe, precision-safe form.

    Integers become decimal strings so that values beyond 2**53 survive
    any JSON consumer. Bytes become 0x hex, mappings and sequences are
    converted recursively, and anything else falls back to ``str``.
    Never raises.

    Parameters
    ----------
    value : Any
        Value to serialize

    Returns
    -------
    Any
        Serialized value
    """
    try:
        if value is None or isinstance(value, (bool, str, float)):
            return value
        if isinstance(value, (int, Decimal)):
            return str(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return to_hex(value)
        if isinstance(value, Mapping):
            return {str(k): serialize_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set, frozenset)):
            return [serialize_value(v) for v in value]
        return _fallback_str(value)
    except Exception:
        return _fallback_str(value)


def serialize_args(args: Any) -> dict[str, Any]:
    """
    Serialize decoded event arguments into a named map.

    Positional arguments (a plain sequence) are keyed by their index.
    """
    if isinstance(args, Mapping):
        return {str(k): serialize_value(v) for k, v in args.items()}
    if isinstance(args, (list, tuple)):
        return {str(i): serialize_value(v) for i, v in enumerate(args)}
    return {}
