"""Email parser for extracting indexable content from .eml files."""

import email
import email.utils
import hashlib
import re
from datetime import timezone
from email.header import decode_header
from email.policy import default as email_policy
from pathlib import Path
from typing import List, Optional

# Charset aliases for mislabelled legacy encodings
CHARSET_ALIASES = {
    "ks_c_5601-1987": "cp949",
    "ks_c_5601": "cp949",
    "euc_kr": "euc-kr",
}

# Message-IDs inside angle brackets, as in References/In-Reply-To
MESSAGE_ID_RE = re.compile(r'<([^<>\s]+)>')

HTML_TAG_RE = re.compile(r'<[^>]+>')

SYNTHETIC_ID_PREFIX = "mailindex-sha1-"


def _try_decode(payload: bytes, encoding: str) -> Optional[str]:
    """Decode payload with the given encoding, or None if it fails cleanly."""
    try:
        decoded = payload.decode(encoding)
    except (UnicodeDecodeError, LookupError):
        return None
    if '\ufffd' in decoded:
        return None
    return decoded


class EmailParser:
    """Parse .eml files for indexing. Handles malformed emails gracefully."""

    @staticmethod
    def _sanitize_header(value: str) -> str:
        """Remove CR/LF and collapse whitespace in header values."""
        if not value:
            return ""
        result = value.replace("\r", " ").replace("\n", " ")
        result = re.sub(r'\s+', ' ', result)
        return result.strip()

    @staticmethod
    def _decode_header_value(raw_value) -> str:
        """Decode an RFC 2047 header value."""
        if not raw_value:
            return ""
        raw_value = str(raw_value)
        if '=?' not in raw_value or '?=' not in raw_value:
            return raw_value

        decoded_parts = []
        try:
            for content, charset in decode_header(raw_value):
                if isinstance(content, bytes):
                    enc = CHARSET_ALIASES.get(charset.lower(), charset) if charset else 'utf-8'
                    try:
                        decoded_parts.append(content.decode(enc, errors='replace'))
                    except LookupError:
                        decoded_parts.append(content.decode('utf-8', errors='replace'))
                else:
                    decoded_parts.append(content)
        except (ValueError, UnicodeError):
            return raw_value
        return ''.join(decoded_parts)

    @staticmethod
    def _safe_get_header(msg, header_name: str) -> str:
        """Extract a header, returning '' if the header cannot be decoded."""
        try:
            values = msg.get_all(header_name) or []
        except (ValueError, TypeError, UnicodeError, AttributeError, IndexError):
            return ""
        decoded = [EmailParser._decode_header_value(v) for v in values]
        return EmailParser._sanitize_header(", ".join(d for d in decoded if d))

    @staticmethod
    def _parse_message_ids(value: str) -> List[str]:
        """Extract Message-IDs (without brackets) from a header value."""
        if not value:
            return []
        ids = []
        for message_id in MESSAGE_ID_RE.findall(value):
            if message_id not in ids:
                ids.append(message_id)
        return ids

    @staticmethod
    def _normalize_date(date_str: str) -> Optional[str]:
        """Normalize a Date header to ISO-8601 UTC, or None if unparsable."""
        if not date_str:
            return None

        # Drop non-ASCII (garbled) weekday prefixes before parsing
        for candidate in (date_str, re.sub(r'^[^\x00-\x7F]+,?\s*', '', date_str)):
            try:
                parsed = email.utils.parsedate_to_datetime(candidate)
            except (TypeError, ValueError, IndexError):
                continue
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc).isoformat()
        return None

    @staticmethod
    def _extract_date_from_received(msg) -> Optional[str]:
        """Extract date from the most recent Received header."""
        try:
            received = EmailParser._sanitize_header(str(msg.get("Received", "") or ""))
        except (ValueError, TypeError, UnicodeError, AttributeError, IndexError):
            return None
        if ";" not in received:
            return None
        return EmailParser._normalize_date(received.split(";")[-1].strip())

    @staticmethod
    def _safe_get_content(part) -> str:
        """Extract text content from a message part."""
        try:
            payload = part.get_payload(decode=True)
        except (ValueError, TypeError, UnicodeError, AssertionError):
            return ""
        if not payload or not isinstance(payload, bytes):
            return ""

        charset = part.get_content_charset()
        if charset:
            charset = CHARSET_ALIASES.get(charset.lower(), charset)
            try:
                return payload.decode(charset, errors='replace')
            except LookupError:
                pass

        for encoding in ['utf-8', 'cp949', 'iso-8859-1']:
            result = _try_decode(payload, encoding)
            if result is not None:
                return result
        return payload.decode('utf-8', errors='replace')

    @staticmethod
    def _strip_html(text: str) -> str:
        text = HTML_TAG_RE.sub(' ', text)
        return re.sub(r'\s+', ' ', text).strip()

    @staticmethod
    def _extract_body(msg) -> tuple:
        """Return (body_text, attachment_names) for a message."""
        body_parts = []
        html_parts = []
        attachments = []

        for part in msg.walk():
            if part.is_multipart():
                continue
            content_type = part.get_content_type()
            disposition = str(part.get("Content-Disposition", ""))

            if "attachment" in disposition:
                try:
                    filename = part.get_filename()
                except (ValueError, TypeError, UnicodeError):
                    filename = None
                if filename:
                    attachments.append(EmailParser._sanitize_header(filename))
                continue

            if content_type == "text/plain":
                text = EmailParser._safe_get_content(part)
                if text:
                    body_parts.append(text)
            elif content_type == "text/html":
                text = EmailParser._safe_get_content(part)
                if text:
                    html_parts.append(EmailParser._strip_html(text))

        # Only use HTML if there is no plain text alternative
        body = "\n".join(body_parts or html_parts)
        return body, attachments

    @staticmethod
    def parse_file(filepath: Path = None, content: bytes = None) -> dict:
        """Parse an .eml file and extract indexable content.

        Args:
            filepath: Path to .eml file (reads from disk)
            content: Raw email bytes (avoids disk read if already loaded)

        Returns:
            Dictionary with keys: message_id, in_reply_to, references, subject,
            sender, recipients, date, body, attachments

        Raises:
            OSError: If filepath cannot be read
        """
        if content is None:
            if filepath is None:
                raise ValueError("Must provide filepath or content")
            with open(filepath, "rb") as f:
                content = f.read()

        # Synthetic id for messages without a usable Message-ID
        synthetic_id = SYNTHETIC_ID_PREFIX + hashlib.sha1(content).hexdigest()

        try:
            msg = email.message_from_bytes(content, policy=email_policy)
        except (ValueError, TypeError, UnicodeError) as e:
            return {
                "message_id": synthetic_id,
                "in_reply_to": [],
                "references": [],
                "subject": "",
                "sender": "",
                "recipients": "",
                "date": None,
                "body": f"[Parse error: {e}]",
                "attachments": "",
            }

        message_ids = EmailParser._parse_message_ids(EmailParser._safe_get_header(msg, "Message-ID"))
        message_id = message_ids[0] if message_ids else synthetic_id

        recipients = []
        for header in ["To", "Cc", "Bcc"]:
            val = EmailParser._safe_get_header(msg, header)
            if val:
                recipients.append(val)

        date = EmailParser._normalize_date(EmailParser._safe_get_header(msg, "Date"))
        if date is None:
            date = EmailParser._extract_date_from_received(msg)

        body, attachments = EmailParser._extract_body(msg)

        return {
            "message_id": message_id,
            "in_reply_to": EmailParser._parse_message_ids(EmailParser._safe_get_header(msg, "In-Reply-To")),
            "references": EmailParser._parse_message_ids(EmailParser._safe_get_header(msg, "References")),
            "subject": EmailParser._safe_get_header(msg, "Subject"),
            "sender": EmailParser._safe_get_header(msg, "From"),
            "recipients": ", ".join(recipients),
            "date": date,
            "body": body,
            "attachments": ", ".join(attachments),
        }
