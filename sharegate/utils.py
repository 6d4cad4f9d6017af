# FILE: sharegate/utils.py
from __future__ import annotations

import hmac
import json
import math
import re
from typing import Any, Dict, List, Mapping, Union

# ---------------------------------------------------------------------------
# Shape helpers
# ---------------------------------------------------------------------------

_HEX_BODY_RE = re.compile(r"^[0-9a-fA-F]*$")

# Number.MAX_SAFE_INTEGER; larger integers only survive a JS parse as doubles.
_JS_MAX_SAFE_INTEGER = 2**53 - 1

_LONE_SURROGATE_RE = re.compile(r"[\ud800-\udfff]")


def is_null_or_whitespace(value: Any) -> bool:
    """True when `value` is not a string or holds only whitespace."""
    return not isinstance(value, str) or value.strip() == ""


def is_hex_of_length(value: Any, n_bytes: int) -> bool:
    """
    Check whether `value` is a "0x"-prefixed hex string encoding exactly
    `n_bytes` bytes (e.g. 20 for an address, 32 for a hash).
    """
    if not isinstance(value, str):
        return False
    if not value.startswith(("0x", "0X")):
        return False
    body = value[2:]
    return len(body) == n_bytes * 2 and bool(_HEX_BODY_RE.match(body))


def secure_compare_hex(a: Any, b: Any) -> bool:
    """
    Constant-time comparison of two hex strings.

    Case is normalized first so checksummed and lowercase renderings of the
    same address or hash compare equal.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.lower().encode("utf-8"), b.lower().encode("utf-8"))

# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------


def _utf16_sort_key(key: Any) -> bytes:
    # Signers sort keys by UTF-16 code unit; big-endian bytes compare the same way.
    return str(key).encode("utf-16-be", "surrogatepass")


def canonicalize(value: Any) -> Any:
    """
    Return a key-ordered copy of a JSON-like tree.

    Rules:
      - mappings become new dicts whose keys are inserted in ascending
        UTF-16 code unit order (the order of a JavaScript `sort()`), values
        canonicalized recursively;
      - lists / tuples become new lists in their original element order,
        elements canonicalized recursively;
      - scalars (str, int, float, bool, None) are returned unchanged.

    The input is never mutated and the result shares no container with it,
    so canonicalize(canonicalize(x)) == canonicalize(x).
    """
    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for key in sorted(value, key=_utf16_sort_key):
            out[str(key)] = canonicalize(value[key])
        return out

    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]

    return value


def js_number_to_string(value: Union[int, float]) -> str:
    """
    Render a number exactly as ECMAScript Number::toString does.

    - shortest round-trip digits (Python `repr` yields the same digits);
    - plain decimal notation for 1e-7 < |x| < 1e21;
    - exponent notation otherwise, with an explicit sign and no zero
      padding ("1e+21", "1e-7");
    - integers beyond 2**53 are first rounded to a double, as a JSON parser
      on the signer side would have done.
    """
    if isinstance(value, int) and abs(value) <= _JS_MAX_SAFE_INTEGER:
        return str(value)
    try:
        x = float(value)
    except OverflowError as exc:
        raise ValueError("number is out of the double range") from exc
    if not math.isfinite(x):
        raise ValueError("non-finite numbers cannot be serialized canonically")
    if x == 0:
        return "0"

    sign = "-" if x < 0 else ""
    mantissa, _, exp = repr(abs(x)).partition("e")
    int_part, _, frac = mantissa.partition(".")
    digits = int_part + frac
    # value == 0.<digits> * 10**n
    n = len(int_part) + (int(exp) if exp else 0)
    stripped = digits.lstrip("0")
    n -= len(digits) - len(stripped)
    digits = stripped.rstrip("0")
    k = len(digits)

    if k <= n <= 21:
        body = digits + "0" * (n - k)
    elif 0 < n <= 21:
        body = digits[:n] + "." + digits[n:]
    elif -6 < n <= 0:
        body = "0." + "0" * (-n) + digits
    else:
        e = n - 1
        exponent = ("+" if e >= 0 else "-") + str(abs(e))
        body = (digits if k == 1 else digits[0] + "." + digits[1:]) + "e" + exponent
    return sign + body


def _js_string(value: str) -> str:
    text = json.dumps(value, ensure_ascii=False)
    # Well-formed JSON.stringify escapes unpaired surrogates as \uXXXX.
    return _LONE_SURROGATE_RE.sub(lambda m: "\\u%04x" % ord(m.group()), text)


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return js_number_to_string(value)
    if isinstance(value, str):
        return _js_string(value)
    if isinstance(value, Mapping):
        return "{" + ",".join(_js_string(str(k)) + ":" + _encode(v) for k, v in value.items()) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json_dumps(value: Any) -> str:
    """
    Serialize `value` to the canonical JSON text used as hash input.

    The output is byte-for-byte what `JSON.stringify` prints for the same
    key-sorted object: compact, non-ASCII kept verbatim, numbers in
    ECMAScript notation, lone surrogates escaped. Non-finite numbers raise
    ValueError.
    """
    return _encode(canonicalize(value))


def canonical_json_bytes(value: Any) -> bytes:
    return canonical_json_dumps(value).encode("utf-8")


def describe_indices(indices: List[int]) -> str:
    return ", ".join(str(i) for i in indices)


__all__ = [
    "is_null_or_whitespace",
    "is_hex_of_length",
    "secure_compare_hex",
    "canonicalize",
    "js_number_to_string",
    "canonical_json_dumps",
    "canonical_json_bytes",
    "describe_indices",
]
