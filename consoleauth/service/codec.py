"""Reversible XOR + base64 obfuscation for credential fields on the wire.

This is not encryption. It only keeps plaintext credentials out of proxy and
access logs; transport security is provided elsewhere. The console encodes
``email`` and ``password`` this way before posting them to the login route.

XOR is applied per UTF-16 code unit with the repeating key, the way the
browser's ``charCodeAt`` sees the string, then the result is UTF-8 encoded
and base64 encoded. For ASCII input this is exactly what ``btoa`` produces,
so existing clients stay compatible.
"""

from __future__ import annotations

import base64
import binascii

from consoleauth.config import DEFAULT_OBFUSCATION_KEY

# Lone surrogates can appear in JSON-decoded text; keep them intact
_TEXT_ERRORS = "surrogatepass"


class ObfuscationError(ValueError):
    """Token is not something ``encode`` could have produced."""


def _code_units(text: str) -> list[int]:
    raw = text.encode("utf-16-le", _TEXT_ERRORS)
    return [int.from_bytes(raw[i : i + 2], "little") for i in range(0, len(raw), 2)]


def _xor(text: str, key: str) -> str:
    if not key:
        raise ValueError("obfuscation key must not be empty")
    key_units = _code_units(key)
    key_len = len(key_units)
    mixed = b"".join(
        (unit ^ key_units[i % key_len]).to_bytes(2, "little")
        for i, unit in enumerate(_code_units(text))
    )
    # Results stay within 16 bits, so unpaired surrogates are the only oddity
    return mixed.decode("utf-16-le", _TEXT_ERRORS)


def encode(plaintext: str, key: str = DEFAULT_OBFUSCATION_KEY) -> str:
    mixed = _xor(plaintext, key)
    return base64.b64encode(mixed.encode("utf-8", _TEXT_ERRORS)).decode("ascii")


def decode(token: str, key: str = DEFAULT_OBFUSCATION_KEY) -> str:
    if not key:
        raise ValueError("obfuscation key must not be empty")
    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True)
        mixed = raw.decode("utf-8", _TEXT_ERRORS)
    except (binascii.Error, UnicodeError) as exc:
        raise ObfuscationError("malformed obfuscated value") from exc
    return _xor(mixed, key)


class ObfuscationCodec:
    """Codec bound to the console's shared key."""

    def __init__(self, key: str = DEFAULT_OBFUSCATION_KEY) -> None:
        if not key:
            raise ValueError("obfuscation key must not be empty")
        self.key = key

    def encode(self, plaintext: str) -> str:
        return encode(plaintext, self.key)

    def decode(self, token: str) -> str:
        return decode(token, self.key)
