# =============================================================
# armor_scanner.py
# =============================================================
"""Line-oriented scan for inline PGP armor in plain text bodies.

:func:`scan_armor` finds the first clear-signed or encrypted block of a body
and returns it together with the text that precedes it. Only one block is
taken per body; everything after its end line is dropped.
"""
from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from typing import Iterator, Optional

log = logging.getLogger(__name__)

MODE_SIGNED = "signed"
MODE_ENCRYPTED = "encrypted"

TOKENS = {
    b"BEGIN PGP SIGNED MESSAGE": ("start", MODE_SIGNED),
    b"END PGP SIGNATURE": ("end", MODE_SIGNED),
    b"BEGIN PGP MESSAGE": ("start", MODE_ENCRYPTED),
    b"END PGP MESSAGE": ("end", MODE_ENCRYPTED),
}

ARMOR_LINE = re.compile(
    rb"^-----(" + b"|".join(re.escape(t) for t in TOKENS) + rb")-----[\r\n]*"
)

SIGNATURE_START = re.compile(rb"^-----BEGIN PGP SIGNATURE-----")

# armor headers ("Hash: SHA256") up to and including the first empty line
ARMOR_HEADERS = re.compile(rb"(?:[^\r\n]+\r*\n)*?\r*\n")

DASH_ESCAPE = re.compile(rb"(^|\n)- -")


@dataclass
class ArmorBlock:
    """Protected block found in a body."""
    mode: Optional[str]
    body: bytes = b""
    prefix: bytes = b""

    @property
    def found(self) -> bool:
        return self.mode is not None


def iter_lines(data: bytes) -> Iterator[bytes]:
    """Yield lines split on LF, line endings included."""
    fd = io.BytesIO(data)
    for line in iter(fd.readline, b""):
        yield line


def _match_token(line: bytes):
    if len(line) > 5 and line[:1] == b"-" and line[4:5] == b"-":
        m = ARMOR_LINE.match(line)
        if m:
            return TOKENS[m.group(1)]
    return None


def scan_armor(text: bytes) -> ArmorBlock:
    """Find the first armored block of ``text``.

    An end line that does not close the currently open block is ordinary
    text; a begin line restarts the block.
    """
    body = b""
    prefix = b""
    mode = None

    for line in iter_lines(text):
        token = _match_token(line)
        if token is not None:
            kind, token_mode = token
            if kind == "start":
                body = line
                mode = token_mode
                continue
            if mode == token_mode:
                body += line
                break
            # stray end marker

        if mode is None:
            prefix += line
        else:
            body += line

    if mode is None:
        return ArmorBlock(mode=None, prefix=prefix)

    log.debug("Found %s armor block (%d bytes, prefix %d bytes)", mode, len(body), len(prefix))
    return ArmorBlock(mode=mode, body=body, prefix=prefix)


def extract_clearsigned_text(block: bytes, prefix: bytes = b"") -> bytes:
    """Return the readable text of a clear-signed block.

    Drops the begin line, the armor headers and the signature, and undoes
    dash-escaping.
    """
    text = None
    for line in iter_lines(block):
        if text is None:
            text = b""
        elif SIGNATURE_START.match(line):
            break
        else:
            text += line

    text = text or b""
    m = ARMOR_HEADERS.match(text)
    if m:
        text = text[m.end():]
    text = DASH_ESCAPE.sub(rb"\1-", text)

    return prefix + text
