"""Email delivery of finished digests.

Builds a multipart message (HTML + plain-text bodies, MP3 narration and
the Markdown document as attachments) and sends it over SMTP. smtplib is
blocking, so the send runs in a worker thread via asyncio.to_thread to
keep the event loop free.

When part of the narration is fallback silence, the body says so, so
the recipient is never handed a silent file without explanation.
"""

import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.application import MIMEApplication
from email.mime.audio import MIMEAudio
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from config import Config
from errors import DeliveryError
from models.context import PipelineContext
from models.digest import DigestItem
from renderer import DOCUMENT_EXTENSION

logger = logging.getLogger(__name__)

HIGHLIGHT_COUNT = 15


@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_type: str


@dataclass
class DigestMessage:
    """A ready-to-send digest email."""

    subject: str
    html_body: str
    text_body: str
    attachments: list[Attachment] = field(default_factory=list)


def attachment_names(timestamp: datetime) -> tuple[str, str]:
    """File names for the audio and document attachments."""
    stamp = timestamp.strftime("%Y%m%d-%H%M%S")
    return f"news-digest-{stamp}.mp3", f"news-digest-{stamp}.{DOCUMENT_EXTENSION}"


def silence_note(ctx: PipelineContext) -> str | None:
    """Sentence telling the reader how much of the audio is silence."""
    synthesis = ctx.synthesis
    if synthesis is None or not synthesis.has_fallback:
        return None
    total = len(synthesis.outcomes)
    if synthesis.all_fallback:
        return (
            "Audio narration could not be generated today; the attached audio "
            "file is silent. The full digest is included below and in the document."
        )
    return (
        f"Part of today's audio narration could not be generated: {synthesis.fallback_chunks} "
        f"of {total} segments are silent."
    )


def build_message(
    ctx: PipelineContext,
    items: list[DigestItem],
    timestamp: datetime | None = None,
) -> DigestMessage:
    """Assemble subject, bodies and attachments from a finished context."""
    timestamp = timestamp or datetime.now(timezone.utc)
    request = ctx.request
    name = request.user_name or "there"
    date_str = timestamp.strftime("%d %b %Y")
    subject = f"Your {request.topic.title()} News Digest - {date_str}"
    note = silence_note(ctx)

    text_lines = [f"Hello {name}!", "", "Your personalized news digest is ready."]
    if note:
        text_lines.extend(["", f"Note: {note}"])
    text_lines.extend(["", "Highlights:"])
    for item in items[:HIGHLIGHT_COUNT]:
        text_lines.append(f"- [{item.sentiment.value}] {item.title}")
        text_lines.append(f"  {item.summary}")
    if ctx.suggested_topics:
        text_lines.extend(["", "You might also like: " + ", ".join(ctx.suggested_topics[:3])])
    text_lines.extend(["", "Enjoy!"])

    bullets = "".join(
        f"<li><strong>{html.escape(item.title)}</strong> "
        f"<em>({html.escape(item.sentiment.value)})</em><br/>{html.escape(item.summary)}</li>"
        for item in items[:HIGHLIGHT_COUNT]
    )
    note_html = f"<p><em>Note: {html.escape(note)}</em></p>" if note else ""
    html_body = (
        "<html><body>"
        f"<h1>Hello {html.escape(name)}!</h1>"
        "<p>Your personalized news digest is ready. The narrated audio and full document are attached.</p>"
        f"{note_html}<hr/><h2>Highlights</h2><ul>{bullets}</ul>"
        "<p>Enjoy!</p></body></html>"
    )

    audio_name, document_name = attachment_names(timestamp)
    attachments = []
    if ctx.synthesis is not None and ctx.synthesis.audio:
        attachments.append(Attachment(audio_name, ctx.synthesis.audio, "audio/mpeg"))
    if ctx.document is not None:
        attachments.append(Attachment(document_name, ctx.document, "text/markdown"))

    return DigestMessage(
        subject=subject,
        html_body=html_body,
        text_body="\n".join(text_lines),
        attachments=attachments,
    )


def to_mime(message: DigestMessage, sender: str, recipient: str) -> MIMEMultipart:
    """Convert a DigestMessage into a MIME message."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = message.subject
    msg["From"] = f"News Digest <{sender}>"
    msg["To"] = recipient

    body = MIMEMultipart("alternative")
    body.attach(MIMEText(message.text_body, "plain", "utf-8"))
    body.attach(MIMEText(message.html_body, "html", "utf-8"))
    msg.attach(body)

    for attachment in message.attachments:
        maintype, _, subtype = attachment.mime_type.partition("/")
        if maintype == "audio":
            part = MIMEAudio(attachment.content, _subtype=subtype)
        elif maintype == "text":
            part = MIMEText(attachment.content.decode("utf-8"), subtype, "utf-8")
        else:
            part = MIMEApplication(attachment.content, _subtype=subtype or "octet-stream")
        part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
        msg.attach(part)
    return msg


class EmailChannel:
    """SMTP delivery channel."""

    def __init__(self, config: Config):
        self.config = config

    def _send(self, recipient: str, message: DigestMessage) -> None:
        sender = self.config.email_from
        mime = to_mime(message, sender, recipient)
        logger.debug("Connecting to SMTP | host=%s port=%d", self.config.smtp_host, self.config.smtp_port)
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            if self.config.smtp_user:
                server.login(self.config.smtp_user, self.config.smtp_password)
            refused = server.sendmail(sender, [recipient], mime.as_string())
        if refused:
            raise DeliveryError(f"Recipient refused: {refused}")

    async def deliver(self, recipient: str, message: DigestMessage) -> bool:
        """Send the message; returns False (after logging) on failure."""
        try:
            await asyncio.to_thread(self._send, recipient, message)
        except (smtplib.SMTPException, OSError, DeliveryError) as e:
            logger.error("Email delivery failed | to=%s error=%s: %s", recipient, type(e).__name__, e)
            return False
        logger.info(
            "Email sent | to=%s attachments=%d subject=%s",
            recipient, len(message.attachments), message.subject,
        )
        return True
