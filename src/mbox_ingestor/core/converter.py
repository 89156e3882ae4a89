"""Message body decoding: MIME multipart splitting, transfer encodings, HTML to text."""

from __future__ import annotations

import base64
import binascii
import logging
import quopri
import re
from collections.abc import Iterator

import trafilatura

logger = logging.getLogger(__name__)

# Visible marker placed between the text parts of a multipart body
PART_SEPARATOR = "\n\n---\n\n"

_BOUNDARY_RE = re.compile(
    r"""boundary\s*=\s*(?:"([^"]+)"|'([^']+)'|([^;\s]+))""", re.IGNORECASE
)
_CHARSET_RE = re.compile(r"""charset\s*=\s*["']?([^"';\s]+)""", re.IGNORECASE)


def extract_boundary(content_type: str) -> str:
    """Return the MIME boundary token of a Content-Type value, or "" if absent."""
    match = _BOUNDARY_RE.search(content_type)
    if not match:
        return ""
    return next(group for group in match.groups() if group).strip()


def extract_charset(content_type: str, default: str = "utf-8") -> str:
    """Return the charset parameter of a Content-Type value."""
    match = _CHARSET_RE.search(content_type)
    return match.group(1).lower() if match else default


def decode_transfer(text: str, encoding: str, charset: str = "utf-8") -> str:
    """Decode text per its Content-Transfer-Encoding.

    Unknown encodings (7bit, 8bit, binary, x-uuencode...) pass through
    unchanged, as does content that fails to decode.
    """
    encoding = encoding.strip().lower()

    if encoding == "base64":
        compact = "".join(text.split())
        try:
            raw = base64.b64decode(compact + "=" * (-len(compact) % 4), validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Invalid base64 content, keeping original text")
            return text
    elif encoding == "quoted-printable":
        raw = quopri.decodestring(text.encode("utf-8"))
    else:
        return text

    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _parse_part_headers(lines: list[str]) -> dict[str, str]:
    """Parse folded part headers into a lowercase-keyed dict."""
    headers: dict[str, str] = {}
    last = ""
    for line in lines:
        if line[:1] in (" ", "\t") and last:
            headers[last] += " " + line.strip()
        elif ":" in line:
            name, _, value = line.partition(":")
            last = name.strip().lower()
            headers[last] = value.strip()
    return headers


def split_parts(body: str, boundary: str) -> Iterator[tuple[dict[str, str], str]]:
    """Yield (headers, body) for each part delimited by the boundary.

    The preamble before the first delimiter and the epilogue after the
    closing delimiter are ignored.
    """
    delimiter = "--" + boundary
    in_part = False
    header_lines: list[str] = []
    body_lines: list[str] = []
    headers_done = False

    for raw_line in body.split("\n"):
        line = raw_line.rstrip("\r")
        if line.startswith(delimiter):
            if in_part:
                yield _parse_part_headers(header_lines), "\n".join(body_lines)
            if line.startswith(delimiter + "--"):
                return
            in_part = True
            header_lines, body_lines = [], []
            headers_done = False
            continue

        if not in_part:
            continue

        if not headers_done:
            if not line.strip():
                headers_done = True
            else:
                header_lines.append(line)
        else:
            body_lines.append(line)

    if in_part:
        yield _parse_part_headers(header_lines), "\n".join(body_lines)


class BodyDecoder:
    """Turn a raw message body into readable text."""

    def decode(self, body: str, transfer_encoding: str = "", content_type: str = "") -> str:
        """Decode a message body.

        Strategy:
        1. Multipart content types are split on their boundary; each text part
           is decoded on its own and attachments are discarded.
        2. Otherwise the whole body is decoded per its transfer encoding.
        3. HTML content is reduced to text via trafilatura.

        Args:
            body: Raw body lines joined with newlines.
            transfer_encoding: Value of Content-Transfer-Encoding.
            content_type: Value of Content-Type.

        Returns:
            Decoded text; the raw body when nothing decodable was found.
        """
        body = body.strip()

        if "multipart" in content_type.lower():
            boundary = extract_boundary(content_type)
            if not boundary:
                return body
            decoded = self._decode_multipart(body, content_type, boundary)
            return decoded if decoded is not None else body

        text = decode_transfer(body, transfer_encoding, extract_charset(content_type))
        if "text/html" in content_type.lower():
            text = self._html_to_text(text)
        return text

    def _decode_multipart(self, body: str, content_type: str, boundary: str) -> str | None:
        """Decode and join the text parts of a multipart body, or None if there are none."""
        texts: list[tuple[str, str]] = []

        for headers, part_body in split_parts(body, boundary):
            part_type = headers.get("content-type", "text/plain")
            part_type_lower = part_type.lower()
            if "attachment" in headers.get("content-disposition", "").lower():
                continue

            if part_type_lower.startswith("multipart/"):
                nested_boundary = extract_boundary(part_type)
                nested = (
                    self._decode_multipart(part_body.strip(), part_type, nested_boundary)
                    if nested_boundary
                    else None
                )
                if nested:
                    texts.append(("text/plain", nested))
                continue

            if not part_type_lower.startswith("text/"):
                continue

            decoded = decode_transfer(
                part_body.strip(),
                headers.get("content-transfer-encoding", ""),
                extract_charset(part_type),
            ).strip()
            mime = part_type_lower.split(";", 1)[0].strip()
            texts.append((mime, decoded))

        if content_type.lower().lstrip().startswith("multipart/alternative") and any(
            mime == "text/plain" for mime, _ in texts
        ):
            texts = [(mime, text) for mime, text in texts if mime != "text/html"]

        rendered = [
            self._html_to_text(text) if mime == "text/html" else text for mime, text in texts
        ]
        rendered = [text for text in rendered if text]
        if not rendered:
            return None
        return PART_SEPARATOR.join(rendered).strip()

    @staticmethod
    def _html_to_text(html: str) -> str:
        """Extract readable text from HTML, keeping the markup if extraction fails."""
        try:
            result = trafilatura.extract(
                html,
                output_format="txt",
                favor_recall=True,
                include_links=True,
                include_tables=True,
            )
        except Exception as e:
            logger.warning("Trafilatura extraction failed: %s", e)
            result = None
        return result if result else html
