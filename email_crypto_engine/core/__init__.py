"""Byte-level MIME and armor handling."""
from .armor_scanner import ArmorBlock, extract_clearsigned_text, scan_armor
from .boundary_splitter import find_boundary, split_signed_body, strip_non_ascii
from .mime_parser import normalize_line_endings, parse_document, parse_message
from .text_formatter import MessageTextFormatter

__all__ = [
    "ArmorBlock",
    "scan_armor",
    "extract_clearsigned_text",
    "find_boundary",
    "split_signed_body",
    "strip_non_ascii",
    "parse_message",
    "parse_document",
    "normalize_line_endings",
    "MessageTextFormatter",
]
