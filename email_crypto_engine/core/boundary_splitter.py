# =============================================================
# boundary_splitter.py
# =============================================================
"""Split a multipart/signed body into the signed entity and its signature."""
from __future__ import annotations

import logging
import re
from typing import Optional, Tuple

from ..data_models import MimeNode

log = logging.getLogger(__name__)

BOUNDARY_PATTERN = re.compile(r"boundary=\"?([a-zA-Z0-9'()+_,\-./:=?]+)\"?", re.IGNORECASE)

NON_ASCII = re.compile(rb"[^\x00-\x7F]")


def find_boundary(node: MimeNode) -> Optional[str]:
    """Boundary from the parsed parameters, else from the raw header.

    Signed messages forwarded as attachments may come without parsed
    Content-Type parameters.
    """
    boundary = node.ctype_parameters.get("boundary")
    if boundary:
        return boundary

    raw = node.headers.get("content-type")
    if raw:
        m = BOUNDARY_PATTERN.search(raw)
        if m:
            return m.group(1)
    return None


def split_signed_body(body: Optional[bytes], boundary: Optional[str]) -> Optional[Tuple[bytes, bytes]]:
    """Return ``(signed_body, signature)`` or None for malformed input.

    The signed body excludes the CRLF preceding the second delimiter; the
    signature excludes its MIME headers and the CRLF preceding the closing
    delimiter.
    """
    if not body or not boundary:
        return None

    marker = b"--" + boundary.encode("ascii", "ignore")
    marker_len = len(marker) + 2

    first = body.find(marker)
    if first < 0:
        log.debug("multipart/signed: opening boundary not found")
        return None
    start = first + marker_len

    end = body.find(marker, start)
    if end < 0:
        log.debug("multipart/signed: second boundary not found")
        return None

    signed = body[start:end - 2]
    sig = body[end + marker_len:]

    header_end = sig.find(b"\r\n\r\n")
    if header_end < 0:
        return None
    sig = sig[header_end + 4:]

    closing = sig.find(marker)
    if closing < 0:
        return None
    sig = sig[:closing]
    if sig.endswith(b"\r\n"):
        sig = sig[:-2]

    return signed, sig


def strip_non_ascii(data: Optional[bytes]) -> bytes:
    """Drop bytes outside US-ASCII (armor is pure ASCII)."""
    return NON_ASCII.sub(b"", data or b"")
