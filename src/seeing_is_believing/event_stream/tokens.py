"""Single-line-safe encodings used on the event stream.

Tokens carry arbitrary string payloads inside a wire message. The payload is
length prefixed (``<len>:<bytes>``) and then base64 encoded, so it never holds
whitespace or line endings, is never empty, and can be verified on decode.

The run-variables blob is how the parent hands its settings to the child:
base64 of a JSON object, small enough to live in one environment variable.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Final

__all__ = [
    "RUN_VARIABLES_ENV",
    "to_token",
    "token_to_bytes",
    "from_token",
    "encode_run_variables",
    "decode_run_variables",
]

# Environment variable carrying the run-variables blob
RUN_VARIABLES_ENV: Final[str] = "SIB_VARIABLES.JSON.B64"

# Strings are stored as UTF-8; surrogateescape lets undecodable bytes survive
_TEXT_ENCODING = "utf-8"
_TEXT_ERRORS = "surrogateescape"


def to_token(value: str | bytes) -> str:
    """Encode a payload as a token."""
    if isinstance(value, str):
        data = value.encode(_TEXT_ENCODING, _TEXT_ERRORS)
    else:
        data = bytes(value)
    framed = str(len(data)).encode("ascii") + b":" + data
    return base64.b64encode(framed).decode("ascii")


def token_to_bytes(token: str) -> bytes:
    """Decode a token back to the exact bytes it was built from.

    Raises:
        ValueError: If the token is not valid base64 or its length prefix lies
    """
    try:
        framed = base64.b64decode(token.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid token: {e}") from e

    length, sep, data = framed.partition(b":")
    if not sep or not length.isdigit():
        raise ValueError("token is missing its length prefix")
    if int(length) != len(data):
        raise ValueError(
            f"token length mismatch (declared {int(length)}, got {len(data)})"
        )
    return data


def from_token(token: str) -> str:
    """Decode a token to a string."""
    return token_to_bytes(token).decode(_TEXT_ENCODING, _TEXT_ERRORS)


def encode_run_variables(variables: dict[str, Any]) -> str:
    """Serialize the run variables for the child's environment."""
    payload = json.dumps(variables, separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_run_variables(blob: str) -> dict[str, Any]:
    """Inverse of :func:`encode_run_variables`."""
    return json.loads(base64.b64decode(blob.encode("ascii")).decode("utf-8"))
