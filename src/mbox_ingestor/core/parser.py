"""Mbox parser: message splitting, header folding, validation and patch detection."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.header import decode_header, make_header
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path

from mbox_ingestor.core.converter import BodyDecoder
from mbox_ingestor.core.exceptions import ParseError
from mbox_ingestor.core.models import MessageRecord, ParseResult, ParseStats, PatchStatus

logger = logging.getLogger(__name__)

MBOX_DELIMITER = "From "

# Namespace for ids derived from the content of messages with a malformed Message-ID
GENERATED_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "mbox-ingestor.local")

# Tried in order before falling back to the RFC 2822 parser
DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M %z",
    "%a %d %b %Y %H:%M:%S %z",
    "%a, %d %b %y %H:%M:%S %z",
)

_HEADER_RE = re.compile(r"^([!-9;-~]+):\s*(.*)$")
_SUBJECT_PREFIX_RE = re.compile(r"^(?:re|fwd|fw)(?:\[\d+\])?\s*:\s*", re.IGNORECASE)
_ANGLE_ID_RE = re.compile(r"<([^<>]*)>")
_DATE_COMMENT_RE = re.compile(r"\s*\([^)]*\)\s*$")

PATCH_SUBJECT_MARKERS = ("[patch", "patch v", "v1 patch", "v2 patch")
PATCH_DIFF_MARKERS = ("diff --git", "--- a/", "+++ b/")
PATCH_ATTACHMENT_MARKERS = (
    "attached patch",
    "patch attached",
    ".patch",
    "content-disposition: attachment",
)

# First matching set wins; anything else is a proposed patch
PATCH_STATUS_MARKERS: tuple[tuple[PatchStatus, tuple[str, ...]], ...] = (
    (PatchStatus.COMMITTED, ("committed", "pushed", "applied")),
    (PatchStatus.ACCEPTED, ("ready for committer", "marked as ready")),
    (PatchStatus.REJECTED, ("rejected", "not applying", "returned with feedback")),
)


def clean_message_id(value: str) -> str:
    """Strip angle brackets and whitespace from a message id.

    Returns:
        The cleaned id, or "" when it is empty or has no "@".
    """
    cleaned = value.strip().strip("<>")
    cleaned = "".join(cleaned.split())
    if not cleaned or "@" not in cleaned:
        return ""
    return cleaned


def parse_references(value: str) -> tuple[str, ...]:
    """Split a References header into cleaned ids, keeping their order."""
    tokens = _ANGLE_ID_RE.findall(value) or value.split()
    refs = []
    for token in tokens:
        cleaned = clean_message_id(token)
        if cleaned and cleaned not in refs:
            refs.append(cleaned)
    return tuple(refs)


def decode_words(value: str) -> str:
    """Decode RFC 2047 encoded words, leaving the value alone if that fails."""
    if "=?" not in value:
        return value
    try:
        return str(make_header(decode_header(value)))
    except Exception:
        return value


def normalize_subject(subject: str) -> str:
    """Strip leading Re:/Fwd:/Fw: prefixes, repeatedly."""
    subject = subject.strip()
    while True:
        stripped = _SUBJECT_PREFIX_RE.sub("", subject, count=1).strip()
        if stripped == subject:
            return subject
        subject = stripped


def parse_from_header(value: str) -> tuple[str, str]:
    """Extract (display name, email) from a From header.

    An empty display name falls back to the email; a value that is not an
    address at all becomes both.
    """
    value = decode_words(value).strip()
    name, email = parseaddr(value)
    name = name.strip().strip('"').strip()
    email = email.strip()
    if not email:
        return value, value
    return name or email, email


def parse_date(value: str) -> datetime | None:
    """Parse a Date header into an aware UTC datetime, or None."""
    value = _DATE_COMMENT_RE.sub("", " ".join(value.split()))
    if not value:
        return None

    parsed: datetime | None = None
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
            break
        except ValueError:
            continue

    if parsed is None:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    try:
        return parsed.astimezone(UTC)
    except OverflowError:
        # Year 1 or 9999 pushed off the calendar by its offset
        return None


def detect_patch(body: str, subject: str) -> bool:
    """Check whether a message carries a patch."""
    subject_lower = subject.lower()
    if any(marker in subject_lower for marker in PATCH_SUBJECT_MARKERS):
        return True
    if any(marker in body for marker in PATCH_DIFF_MARKERS):
        return True
    # Context diff
    if "*** " in body and "--- " in body:
        return True
    body_lower = body.lower()
    return any(marker in body_lower for marker in PATCH_ATTACHMENT_MARKERS)


def detect_patch_status(body: str, subject: str) -> PatchStatus:
    """Classify the state of a patch from keywords in the message."""
    text = f"{subject}\n{body}".lower()
    for status, markers in PATCH_STATUS_MARKERS:
        if any(marker in text for marker in markers):
            return status
    return PatchStatus.PROPOSED


@dataclass
class _Draft:
    """Header and body state of the message currently being read."""

    has_message_id_header: bool = False
    message_id: str = ""
    raw_message_id: str = ""
    in_reply_to: str = ""
    references: tuple[str, ...] = ()
    raw_subject: str = ""
    subject: str = ""
    author: str = ""
    author_email: str = ""
    date: datetime | None = None
    content_type: str = ""
    transfer_encoding: str = ""
    header_lines: list[str] = field(default_factory=list)
    body_lines: list[str] = field(default_factory=list)


class MboxParser:
    """Parses mbox archive units into validated MessageRecords."""

    def __init__(
        self,
        *,
        fallback_id_domain: str = "mbox-ingestor.local",
        min_valid_year: int = 1990,
        decoder: BodyDecoder | None = None,
    ) -> None:
        self._fallback_id_domain = fallback_id_domain
        self._min_valid_year = min_valid_year
        self._decoder = decoder or BodyDecoder()

    def parse_file(self, path: Path) -> ParseResult:
        """Parse an mbox file from disk.

        Raises:
            ParseError: If the file cannot be read.
        """
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ParseError(f"Failed to read mbox file {path}: {e}") from e
        result = self.parse_bytes(data)
        logger.info("Parsed %s: %s", path.name, result.stats)
        return result

    def parse_bytes(self, data: bytes) -> ParseResult:
        """Parse the full byte stream of one archive unit.

        Rejected messages are counted by reason in the returned stats and
        never abort the parse.
        """
        stats = ParseStats()
        messages: list[MessageRecord] = []
        draft: _Draft | None = None
        in_body = False
        last_header = ""
        last_value = ""

        for raw_line in data.decode("utf-8", errors="ignore").split("\n"):
            line = raw_line.rstrip("\r")

            if line.startswith(MBOX_DELIMITER):
                stats.total += 1
                if draft is not None:
                    if last_header:
                        self._apply_header(draft, last_header, last_value)
                    self._flush(draft, messages, stats)
                draft = _Draft()
                in_body = False
                last_header = ""
                last_value = ""
                continue

            if draft is None:
                continue

            if in_body:
                draft.body_lines.append(line[1:] if line.startswith(">From ") else line)
                continue

            if not line.strip():
                if last_header:
                    self._apply_header(draft, last_header, last_value)
                    last_header = ""
                    last_value = ""
                in_body = True
            elif line[0] in (" ", "\t"):
                draft.header_lines.append(line)
                if last_header:
                    last_value = f"{last_value} {line.strip()}".strip()
            else:
                draft.header_lines.append(line)
                match = _HEADER_RE.match(line)
                if match:
                    if last_header:
                        self._apply_header(draft, last_header, last_value)
                    last_header = match.group(1).lower()
                    last_value = match.group(2).strip()

        if draft is not None:
            if last_header and not in_body:
                self._apply_header(draft, last_header, last_value)
            self._flush(draft, messages, stats)

        logger.debug(
            "Parse complete: %d total, %d parsed, %d skipped "
            "(message-id: %d, date: %d, from: %d, repaired: %d)",
            stats.total, stats.parsed, stats.skipped, stats.invalid_message_id,
            stats.invalid_date, stats.invalid_from, stats.malformed_message_id,
        )
        return ParseResult(messages=messages, stats=stats)

    def generate_message_id(self, content: str) -> str:
        """Derive a replacement for a malformed message id from the message content.

        The same message always gets the same id, so re-ingesting a unit does
        not store it twice.
        """
        digest = uuid.uuid5(GENERATED_ID_NAMESPACE, content)
        return f"generated-{digest}@{self._fallback_id_domain}"

    def _apply_header(self, draft: _Draft, name: str, value: str) -> None:
        """Apply one unfolded header to the draft message."""
        if name == "message-id":
            draft.has_message_id_header = True
            draft.raw_message_id = value
            draft.message_id = clean_message_id(value)
        elif name == "in-reply-to":
            match = _ANGLE_ID_RE.search(value)
            draft.in_reply_to = clean_message_id(match.group(1) if match else value)
        elif name == "references":
            draft.references = parse_references(value)
        elif name == "subject":
            draft.raw_subject = decode_words(value)
            draft.subject = normalize_subject(draft.raw_subject)
        elif name == "from":
            draft.author, draft.author_email = parse_from_header(value)
        elif name == "date":
            draft.date = parse_date(value)
        elif name == "content-type":
            draft.content_type = value
        elif name == "content-transfer-encoding":
            draft.transfer_encoding = value.strip().lower()

    def _flush(self, draft: _Draft, messages: list[MessageRecord], stats: ParseStats) -> None:
        """Validate a finished draft and append it to messages, or count the skip."""
        if not draft.has_message_id_header:
            logger.info("SKIPPED: message without Message-ID (subject: %s)", draft.subject)
            stats.skipped += 1
            stats.invalid_message_id += 1
            return
        if not draft.author and not draft.author_email:
            logger.info("SKIPPED: message %s missing From header", draft.message_id)
            stats.skipped += 1
            stats.invalid_from += 1
            return
        if draft.date is None or draft.date.year < self._min_valid_year:
            logger.info("SKIPPED: message %s has invalid date: %s", draft.message_id, draft.date)
            stats.skipped += 1
            stats.invalid_date += 1
            return

        raw_body = "\n".join(draft.body_lines)
        if not draft.message_id:
            draft.message_id = self.generate_message_id(
                "\n".join(draft.header_lines) + "\n\n" + raw_body
            )
            stats.malformed_message_id += 1
            logger.warning(
                "Generated message id %s for malformed header %r",
                draft.message_id, draft.raw_message_id,
            )

        body = self._decoder.decode(raw_body, draft.transfer_encoding, draft.content_type)
        has_patch = detect_patch(f"{body}\n{raw_body}", draft.subject)

        messages.append(
            MessageRecord(
                message_id=draft.message_id,
                in_reply_to=draft.in_reply_to,
                references=draft.references,
                subject=draft.subject,
                raw_subject=draft.raw_subject,
                author=draft.author,
                author_email=draft.author_email,
                date=draft.date,
                body=body,
                transfer_encoding=draft.transfer_encoding,
                has_patch=has_patch,
                patch_status=detect_patch_status(body, draft.subject) if has_patch else None,
            )
        )
        stats.parsed += 1
