"""Pytest fixtures for mailindex tests."""

import tempfile
from pathlib import Path

import pytest

from mailindex.database import IndexDatabase
from mailindex.parser import EmailParser


def _build_eml(
    message_id=None,
    subject="",
    sender="sender@example.com",
    to="recipient@example.com",
    date="Mon, 1 Jan 2024 10:00:00 +0000",
    body="Body text.",
    in_reply_to=None,
    references=None,
    attachment=None,
) -> bytes:
    headers = [f"From: {sender}", f"To: {to}", f"Subject: {subject}"]
    if date:
        headers.append(f"Date: {date}")
    if message_id:
        headers.append(f"Message-ID: <{message_id}>")
    if in_reply_to:
        headers.append(f"In-Reply-To: <{in_reply_to}>")
    if references:
        headers.append("References: " + " ".join(f"<{r}>" for r in references))

    if attachment:
        headers += [
            "MIME-Version: 1.0",
            'Content-Type: multipart/mixed; boundary="boundary123"',
        ]
        text = "\n".join(headers) + f"""

--boundary123
Content-Type: text/plain; charset="utf-8"

{body}

--boundary123
Content-Type: application/pdf; name="{attachment}"
Content-Disposition: attachment; filename="{attachment}"
Content-Transfer-Encoding: base64

JVBERi0xLjQK

--boundary123--
"""
    else:
        text = "\n".join(headers) + f"\n\n{body}\n"
    return text.encode()


# Five messages in three threads:
#   thread A: a1 <- a2 <- a3   (invoice, March 2024)
#   thread B: b1               (meeting with attachment, May 2024)
#   thread C: c1               (lunch, July 2024)
FIXTURE_MESSAGES = {
    "cur/a1.eml": dict(
        message_id="a1@example.com",
        subject="Invoice for March",
        sender="Billing <billing@shop.example>",
        to="alice@example.com",
        date="Fri, 1 Mar 2024 10:00:00 +0000",
        body="Please find your invoice attached.",
    ),
    "cur/a2.eml": dict(
        message_id="a2@example.com",
        subject="Re: Invoice for March",
        sender="Alice <alice@example.com>",
        to="billing@shop.example",
        date="Sat, 2 Mar 2024 09:00:00 +0000",
        body="Thanks, paid today.",
        in_reply_to="a1@example.com",
        references=["a1@example.com"],
    ),
    "cur/a3.eml": dict(
        message_id="a3@example.com",
        subject="Re: Invoice for March",
        sender="Billing <billing@shop.example>",
        to="alice@example.com",
        date="Sun, 3 Mar 2024 08:00:00 +0000",
        body="Payment received.",
        in_reply_to="a2@example.com",
        references=["a1@example.com", "a2@example.com"],
    ),
    "new/b1.eml": dict(
        message_id="b1@example.com",
        subject="Team meeting",
        sender="Bob <bob@example.com>",
        to="alice@example.com, carol@example.com",
        date="Fri, 10 May 2024 15:00:00 +0000",
        body="Agenda is in the attached file.",
        attachment="agenda.pdf",
    ),
    "new/c1.eml": dict(
        message_id="c1@example.com",
        subject="Lunch?",
        sender="Carol <carol@example.com>",
        to="bob@example.com",
        date="Mon, 1 Jul 2024 11:30:00 +0000",
        body="Pizza at noon.",
    ),
}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_eml():
    """Factory building raw .eml bytes from header values."""
    return _build_eml


@pytest.fixture
def mail_dir(temp_dir):
    """A mail directory with the fixture messages written to disk (not indexed)."""
    root = temp_dir / "mail"
    for rel_path, fields in FIXTURE_MESSAGES.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_build_eml(**fields))
    return root


@pytest.fixture
def indexed_mail(mail_dir):
    """The fixture mail directory with an index built over it."""
    db = IndexDatabase.create(mail_dir)
    with db:
        for rel_path in FIXTURE_MESSAGES:
            parsed = EmailParser.parse_file(mail_dir / rel_path)
            db.add_message(rel_path, parsed, ["inbox", "unread"])
    return mail_dir


@pytest.fixture
def isolated_env(temp_dir, monkeypatch):
    """Environment with no config file reachable from cwd or HOME."""
    home = temp_dir / "home"
    home.mkdir()
    workdir = temp_dir / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    return {"HOME": str(home)}


@pytest.fixture
def sample_eml_simple():
    """A simple plain text email."""
    return b"""From: sender@example.com
To: recipient@example.com
Subject: Test Email
Date: Mon, 1 Jan 2024 10:00:00 +0000
Message-ID: <test123@example.com>

This is a test email body.
"""


@pytest.fixture
def sample_eml_html():
    """An HTML email."""
    return b"""From: sender@example.com
To: recipient@example.com
Subject: HTML Test
Date: Tue, 2 Jan 2024 12:00:00 +0000
Message-ID: <html456@example.com>
Content-Type: text/html; charset="utf-8"

<html>
<body>
<h1>Hello World</h1>
<p>This is an HTML email.</p>
</body>
</html>
"""


@pytest.fixture
def sample_eml_korean():
    """An email with Korean characters (common encoding issues)."""
    return """From: =?UTF-8?B?7ZWc6rWt7Ja0?= <korean@example.com>
To: recipient@example.com
Subject: =?UTF-8?B?7ZWc6riAIO2FjOyKpO2KuA==?=
Date: Thu, 4 Jan 2024 16:00:00 +0900
Message-ID: <korean@example.com>
Content-Type: text/plain; charset="utf-8"

안녕하세요, 테스트 이메일입니다.
""".encode()


@pytest.fixture
def sample_eml_reply():
    """A reply carrying threading headers."""
    return b"""From: Alice <alice@example.com>
To: bob@example.com
Cc: Carol <carol@example.com>
Subject: Re: Plans
Date: Wed, 3 Jan 2024 14:00:00 -0500
Message-ID: <reply2@example.com>
In-Reply-To: <root1@example.com>
References: <root0@example.com> <root1@example.com>

Sounds good.
"""
