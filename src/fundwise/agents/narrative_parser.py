"""Incremental extraction of the ``narrative`` string from partial JSON.

The generator streams a JSON object token by token.  To show text to the
user before the object is complete, ``NarrativeScanner`` watches the raw
stream for the ``"narrative"`` key and decodes its string value as the bytes
arrive.  ``confirmed`` is the longest decoded prefix that cannot change any
more; an escape sequence split across chunks is held back until it is whole.

This is best effort.  The scanner looks at the first ``"narrative"`` key it
sees at any depth, and the model may still produce an object that fails
validation later.
"""

from __future__ import annotations

import re

_KEY_RE = re.compile(r'"narrative"\s*:\s*')

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}


class NarrativeScanner:
    """Feed raw chunks; read back newly confirmed narrative text."""

    def __init__(self, key: str = "narrative"):
        self._key_re = _KEY_RE if key == "narrative" else re.compile(
            rf'"{re.escape(key)}"\s*:\s*'
        )
        self._buffer = ""
        self._cursor = -1            # index of next undecoded char in the value
        self._decoded: list[str] = []
        self._pending_high: str = ""  # high surrogate waiting for its pair
        self.complete = False
        self.not_a_string = False

    @property
    def confirmed(self) -> str:
        return "".join(self._decoded)

    @property
    def raw(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> str:
        """Append *chunk* and return only the narrative text it confirmed."""
        self._buffer += chunk
        if self.complete or self.not_a_string:
            return ""
        if self._cursor < 0 and not self._locate_value():
            return ""
        before = len(self._decoded)
        self._decode()
        return "".join(self._decoded[before:])

    def _locate_value(self) -> bool:
        match = self._key_re.search(self._buffer)
        if match is None or match.end() >= len(self._buffer):
            return False
        if self._buffer[match.end()] != '"':
            self.not_a_string = True
            return False
        self._cursor = match.end() + 1
        return True

    def _decode(self) -> None:
        buf = self._buffer
        i = self._cursor
        while i < len(buf):
            ch = buf[i]
            if ch == '"':
                self.complete = True
                i += 1
                break
            if ch != "\\":
                self._emit(ch)
                i += 1
                continue
            if i + 1 >= len(buf):
                break                       # escape split across chunks
            esc = buf[i + 1]
            if esc == "u":
                if i + 6 > len(buf):
                    break
                try:
                    code = int(buf[i + 2:i + 6], 16)
                except ValueError:
                    self._emit(buf[i + 2:i + 6])
                else:
                    self._emit_code_point(code)
                i += 6
                continue
            self._emit(_SIMPLE_ESCAPES.get(esc, esc))
            i += 2
        self._cursor = i

    def _emit_code_point(self, code: int) -> None:
        if 0xD800 <= code <= 0xDBFF:
            self._pending_high = chr(code)
            return
        if 0xDC00 <= code <= 0xDFFF and self._pending_high:
            pair = self._pending_high + chr(code)
            self._pending_high = ""
            self._decoded.append(pair.encode("utf-16", "surrogatepass").decode("utf-16"))
            return
        self._emit(chr(code))

    def _emit(self, text: str) -> None:
        if self._pending_high:
            # Unpaired high surrogate: drop it rather than emit invalid text.
            self._pending_high = ""
        self._decoded.append(text)
