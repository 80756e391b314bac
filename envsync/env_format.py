from __future__ import annotations

import re
from typing import Mapping

SIMPLE_VALUE_RE = re.compile(r"[a-zA-Z0-9_\-./]+")
KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


class EnvFormatError(ValueError):
    pass


def needs_quoting(value: str) -> bool:
    # Anything outside the simple charset (spaces, =, quotes, #, newlines, empty) is quoted.
    return not SIMPLE_VALUE_RE.fullmatch(value)


def escape_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def to_dotenv(variables: Mapping[str, str]) -> str:
    """Render variables as ``KEY=VALUE`` lines, sorted by key.

    The output is the exact content that gets hashed and written to disk, so it
    must be deterministic for a given mapping.
    """
    lines = []
    for key in sorted(variables):
        value = str(variables[key])
        if needs_quoting(value):
            lines.append(f'{key}="{escape_value(value)}"')
        else:
            lines.append(f"{key}={value}")
    return "\n".join(lines)


def parse_dotenv(text: str) -> dict[str, str]:
    """Parse the format written by :func:`to_dotenv`.

    Quoted values may span lines; inside quotes ``\\\\`` and ``\\"`` are unescaped,
    any other backslash is kept literally. Blank lines and ``#`` comments are skipped.
    """
    out: dict[str, str] = {}
    i, n = 0, len(text)
    line_no = 1
    while i < n:
        eol = text.find("\n", i)
        if eol == -1:
            eol = n
        line = text[i:eol]
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            i = eol + 1
            line_no += 1
            continue

        eq = line.find("=")
        if eq == -1:
            raise EnvFormatError(f"line {line_no}: missing '='")
        key = line[:eq].strip()
        if not KEY_RE.match(key):
            raise EnvFormatError(f"line {line_no}: invalid key {key!r}")

        j = i + eq + 1
        if j < n and text[j] == '"':
            j += 1
            buf: list[str] = []
            while True:
                if j >= n:
                    raise EnvFormatError(f"line {line_no}: unterminated quoted value for {key}")
                ch = text[j]
                if ch == "\\" and j + 1 < n and text[j + 1] in ('\\', '"'):
                    buf.append(text[j + 1])
                    j += 2
                    continue
                if ch == '"':
                    j += 1
                    break
                if ch == "\n":
                    line_no += 1
                buf.append(ch)
                j += 1
            rest_end = text.find("\n", j)
            if rest_end == -1:
                rest_end = n
            if text[j:rest_end].strip():
                raise EnvFormatError(f"line {line_no}: unexpected text after quoted value for {key}")
            out[key] = "".join(buf)
            i = rest_end + 1
        else:
            out[key] = text[j:eol]
            i = eol + 1
        line_no += 1
    return out
