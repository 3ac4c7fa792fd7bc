# =============================================================
# text_formatter.py
# =============================================================
"""Plain text formatting for bodies that are about to be signed or encrypted."""

from __future__ import annotations

import re
import textwrap

import html2text
from bs4 import BeautifulSoup


class MessageTextFormatter:
    """Convert composed bodies to plain text fit for inline PGP."""

    HIDDEN_STYLE_PATTERN = re.compile(
        r"display\s*:\s*none|visibility\s*:\s*hidden",
        re.IGNORECASE,
    )

    QUOTE_PREFIX = re.compile(r"^(>+ ?)")

    SIGNATURE_SEPARATOR = "-- "

    @classmethod
    def unfold_flowed(cls, text: str) -> str:
        """Join RFC 3676 soft line breaks (``format=flowed``)."""
        if not text:
            return ""

        lines = []  # [quote_level, text, soft]
        for line in re.split(r"\r?\n", text):
            m = re.match(r"^(>+)", line)
            level = len(m.group(1)) if m else 0
            content = line[level:]
            # space-stuffing
            if content.startswith(" "):
                content = content[1:]

            soft = content.endswith(" ") and content != cls.SIGNATURE_SEPARATOR
            joinable = content != cls.SIGNATURE_SEPARATOR
            if joinable and lines and lines[-1][2] and lines[-1][0] == level:
                lines[-1][1] += content
                lines[-1][2] = soft
            else:
                lines.append([level, content, soft])

        result = []
        for level, content, soft in lines:
            if soft:
                content = content.rstrip(" ")
            if level:
                content = ">" * level + (" " + content if content else "")
            result.append(content)
        return "\n".join(result)

    @classmethod
    def wordwrap(cls, text: str, width: int = 72, line_break: str = "\r\n") -> str:
        """Hard-wrap every line at ``width`` columns without breaking words."""
        wrapped = []
        for line in re.split(r"\r?\n", text):
            if len(line) <= width or line == cls.SIGNATURE_SEPARATOR:
                wrapped.append(line)
                continue

            m = cls.QUOTE_PREFIX.match(line)
            prefix = m.group(1) if m else ""
            chunks = textwrap.wrap(
                line[len(prefix):],
                max(width - len(prefix), 1),
                break_long_words=False,
                break_on_hyphens=False,
            )
            wrapped.extend(prefix + chunk for chunk in chunks or [""])
        return line_break.join(wrapped)

    @classmethod
    def _strip_hidden_elements(cls, html_str: str) -> str:
        soup = BeautifulSoup(html_str, "html.parser")
        for element in soup.find_all(style=cls.HIDDEN_STYLE_PATTERN):
            element.decompose()
        for element in soup.find_all(["script", "style"]):
            element.decompose()
        return str(soup)

    @classmethod
    def html_to_text(cls, html_str: str) -> str:
        """Convert an HTML body to readable plain text, links kept inline."""
        if not html_str:
            return ""

        converter = html2text.HTML2Text()
        converter.body_width = 0
        converter.ignore_images = True
        converter.ignore_emphasis = True
        converter.protect_links = True

        text = converter.handle(cls._strip_hidden_elements(html_str))
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()
