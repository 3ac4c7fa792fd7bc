# =============================================================
# mime_parser.py
# =============================================================
"""Parse raw message bytes into a :class:`MimeNode` tree.

Headers are parsed by the standard library; multipart bodies are sliced at
their boundaries byte for byte so signed entities keep their exact bytes.
Node ids follow the IMAP part numbering: the root is ``""``, its children
``"1"``, ``"2"`` and their children ``"1.1"`` and so on.
"""
from __future__ import annotations

import base64
import binascii
import logging
import quopri
import re
from email import policy
from email.message import Message
from email.parser import BytesHeaderParser
from email.utils import collapse_rfc2231_value
from typing import List, Optional, Tuple

from ..data_models import MimeDocument, MimeNode

log = logging.getLogger(__name__)

HEADER_END = re.compile(rb"\r?\n\r?\n")
LINE_BREAK = re.compile(rb"\r?\n")


def _split_entity(raw: bytes) -> Tuple[bytes, bytes]:
    if raw.startswith(b"\r\n"):
        return b"", raw[2:]
    if raw.startswith(b"\n"):
        return b"", raw[1:]
    m = HEADER_END.search(raw)
    if not m:
        return raw, b""
    return raw[:m.start()], raw[m.end():]


def _parse_headers(head: bytes) -> Message:
    return BytesHeaderParser(policy=policy.default).parsebytes(head + b"\r\n\r\n")


def _split_multipart(body: bytes, boundary: str) -> List[bytes]:
    marker = re.escape(b"--" + boundary.encode("ascii", "ignore"))
    delimiter = re.compile(rb"(?:^|\r?\n)" + marker + rb"(--)?[ \t]*(?:\r?\n|$)")

    parts = []
    pos = None
    for m in delimiter.finditer(body):
        if pos is not None:
            parts.append(body[pos:m.start()])
        if m.group(1):
            pos = None
            break
        pos = m.end()

    if pos is not None:
        # unterminated multipart, keep what we have
        parts.append(body[pos:])
    return parts


def decode_transfer_encoding(body: bytes, encoding: str) -> bytes:
    """Undo base64 / quoted-printable; other encodings are returned as-is."""
    try:
        if encoding == "base64":
            return base64.b64decode(body)
        if encoding == "quoted-printable":
            return quopri.decodestring(body)
    except (binascii.Error, ValueError) as exc:
        log.debug("transfer decoding (%s) failed: %s", encoding, exc)
    return body


def _child_id(parent_id: str, index: int) -> str:
    return f"{parent_id}.{index}" if parent_id else str(index)


def parse_message(raw: bytes, mime_id: str = "") -> MimeNode:
    """Parse one MIME entity (headers and body) into a node tree."""
    head, body = _split_entity(raw)
    msg = _parse_headers(head)

    headers = {}
    for name, value in msg.items():
        headers.setdefault(name.lower(), str(value))

    params = {}
    for name, value in (msg.get_params() or [])[1:]:
        params[name.lower()] = collapse_rfc2231_value(value)

    encoding = (msg.get("content-transfer-encoding") or "7bit").strip().lower()
    disposition = msg.get_content_disposition()
    filename = msg.get_filename() or params.get("name")

    node = MimeNode(
        mime_id=mime_id,
        mimetype=msg.get_content_type(),
        headers=headers,
        ctype_parameters=params,
        disposition=disposition,
        filename=filename,
        encoding=encoding,
    )

    if node.is_multipart and params.get("boundary"):
        node.body = body
        node.size = len(body)
        for index, chunk in enumerate(_split_multipart(body, params["boundary"]), start=1):
            node.parts.append(parse_message(chunk, _child_id(mime_id, index)))
        return node

    node.body = decode_transfer_encoding(body, encoding)
    node.size = len(node.body)
    if node.mimetype in ("text/plain", "text/html") and disposition != "attachment":
        node.part_type = "content"
    return node


def normalize_line_endings(body: bytes) -> bytes:
    """Convert bare LF line endings to CRLF."""
    return LINE_BREAK.sub(b"\r\n", body)


def parse_document(raw: bytes, uid: Optional[str] = None, sender: Optional[str] = None,
                   fetcher=None) -> MimeDocument:
    """Parse a complete message into an indexed document."""
    root = parse_message(raw)
    return MimeDocument(root=root, uid=uid, sender=sender, fetcher=fetcher)
