"""Field extraction for inbound command payloads.

Command payloads are JSON-shaped, but only two flat string fields matter:
``clientToken`` and ``script``. Values are located with substring anchors
rather than a JSON parser:

1. find the first ``"<name>":``
2. skip to the next ``"``
3. the value runs up to the following ``"``

Known limitations of this approach:

- escaped quotes inside a value end the value early (``\\"`` is not honoured)
- nested objects are not understood; the first textual match wins, even if it
  sits inside another field's value
- duplicate keys resolve to the first occurrence
- non-string values (numbers, ``null``) are skipped in favour of the next
  quoted string in the payload

A missing or unterminated field is never an error, it extracts as ``""``.
"""

from __future__ import annotations

from dataclasses import dataclass

CLIENT_TOKEN_FIELD = "clientToken"
SCRIPT_FIELD = "script"

_QUOTE = b'"'


@dataclass(frozen=True, slots=True)
class ExtractedCommand:
    client_token: str = ""
    script: str = ""

    @property
    def has_script(self) -> bool:
        return bool(self.script)


def extract_field(payload: bytes, name: str, capacity: int) -> str:
    """Return the string value of ``name`` in ``payload``, or ``""``.

    Values longer than ``capacity`` bytes are truncated rather than rejected;
    a multi-byte UTF-8 sequence cut by the truncation is dropped.
    """

    anchor = _QUOTE + name.encode("utf-8") + _QUOTE + b":"
    position = payload.find(anchor)
    if position < 0:
        return ""

    start = payload.find(_QUOTE, position + len(anchor))
    if start < 0:
        return ""
    start += 1

    end = payload.find(_QUOTE, start)
    if end < 0:
        return ""

    value = payload[start:end]
    if capacity >= 0 and len(value) > capacity:
        value = value[:capacity]
    return value.decode("utf-8", errors="ignore")


def extract_command(
    payload: bytes, *, max_token_bytes: int = 63, max_script_bytes: int = 511
) -> ExtractedCommand:
    return ExtractedCommand(
        client_token=extract_field(payload, CLIENT_TOKEN_FIELD, max_token_bytes),
        script=extract_field(payload, SCRIPT_FIELD, max_script_bytes),
    )
