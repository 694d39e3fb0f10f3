"""Composition of the fixed-shape command response record."""

from __future__ import annotations

from .executor import ExecutionResult

# Lossy escaping: only safe because the response is a flat record of four
# keys. Do not reuse for nested payloads.
_ESCAPES = {
    ord('"'): "'",
    ord("\n"): " ",
    ord("\\"): "\\\\",
}
_ESCAPES.update({code: " " for code in range(0x20) if code not in _ESCAPES})
_ESCAPES[0x7F] = " "

_TEMPLATE = '{{"clientToken":"{token}","stdout":"{stdout}","stderr":"{stderr}","exitCode":{exit_code}}}'


def escape_text(text: str) -> str:
    """Replace quotes with apostrophes and line feeds with spaces.

    Backslashes are doubled and other control characters become spaces so the
    embedded value can never terminate its string early.
    """

    return text.translate(_ESCAPES)


def _truncate_escaped(value: str, budget: int) -> str:
    encoded = value.encode("utf-8")
    if len(encoded) <= budget:
        return value
    clipped = encoded[: max(0, budget)].decode("utf-8", errors="ignore")
    # An odd run of trailing backslashes means an escape pair was split.
    trailing = len(clipped) - len(clipped.rstrip("\\"))
    if trailing % 2:
        clipped = clipped[:-1]
    return clipped


def encode_response(client_token: str, result: ExecutionResult, limit: int) -> str:
    """Render ``result`` as the response record, at most ``limit`` bytes long.

    Only the stdout value is shortened when the record would overflow, so the
    keys and braces always survive.
    """

    token = escape_text(client_token)
    stderr = escape_text(result.stderr)
    stdout = escape_text(result.stdout.decode("utf-8", errors="replace"))
    exit_code = int(result.exit_code)

    skeleton = _TEMPLATE.format(
        token=token, stdout="", stderr=stderr, exit_code=exit_code
    )
    budget = limit - len(skeleton.encode("utf-8"))
    if budget < 0:
        # Configuration floors keep this unreachable for sane token sizes.
        token = _truncate_escaped(token, max(0, len(token.encode("utf-8")) + budget))
        budget = 0

    return _TEMPLATE.format(
        token=token,
        stdout=_truncate_escaped(stdout, budget),
        stderr=stderr,
        exit_code=exit_code,
    )
