import os
import smtplib
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from config import Config  # noqa: E402
from delivery import Attachment, DigestMessage, EmailChannel, attachment_names, build_message, to_mime  # noqa: E402
from models.context import PipelineContext, PipelineRequest  # noqa: E402
from models.digest import DigestItem, Sentiment  # noqa: E402
from renderer import render, render_markdown, sentiment_counts, topic_breakdown  # noqa: E402
from storage import ArtifactStore  # noqa: E402
from synthesis import NarrationChunk, OutcomeKind, SynthesisOutcome, SynthesisResult, silent_mp3  # noqa: E402

FAKE_MP3 = b"ID3" + bytes(2000)
STAMP = datetime(2025, 1, 10, 8, 30, tzinfo=timezone.utc)


def synthesis(real: int, silent: int) -> SynthesisResult:
    outcomes = [
        SynthesisOutcome(NarrationChunk(i, "spoken"), OutcomeKind.REAL, FAKE_MP3, backend="fake")
        for i in range(real)
    ]
    outcomes += [
        SynthesisOutcome(NarrationChunk(real + i, "quiet"), OutcomeKind.FALLBACK_SILENCE, silent_mp3(500), 500)
        for i in range(silent)
    ]
    return SynthesisResult(audio=b"".join(o.audio for o in outcomes), outcomes=tuple(outcomes))


def items() -> list[DigestItem]:
    return [
        DigestItem(title="Tom & Jerry win", summary="A cheerful result.", sentiment="positive",
                   sentimentScore=0.9, topic="sports", source="Wire", link="https://x/1"),
        DigestItem(title="Storm warning", summary="Heavy rain due.", sentiment="negative",
                   sentimentScore=0.1, topic="national"),
        DigestItem(title="Budget passed", summary="Parliament voted.", topic="national"),
    ]


def context(synth: SynthesisResult | None = None, **request) -> PipelineContext:
    req = PipelineRequest(user_id="u1", email="u1@example.com", **request)
    ctx = PipelineContext(request=req, run_id="r1").advance(
        enriched_items=tuple(items()),
        suggested_topics=("sports", "technology"),
        document=b"# Digest\n",
    )
    if synth is not None:
        ctx = ctx.advance(synthesis=synth)
    return ctx


class BuildMessageTests(unittest.TestCase):
    def test_subject_bodies_and_attachments(self) -> None:
        ctx = context(synthesis(2, 0), topic="sports", user_name="Asha")
        message = build_message(ctx, list(ctx.items), timestamp=STAMP)

        self.assertEqual(message.subject, "Your Sports News Digest - 10 Jan 2025")
        self.assertIn("Hello Asha!", message.text_body)
        self.assertIn("- [positive] Tom & Jerry win", message.text_body)
        self.assertIn("You might also like: sports, technology", message.text_body)
        self.assertNotIn("Note:", message.text_body)
        self.assertIn("Tom &amp; Jerry win", message.html_body)
        self.assertEqual(
            [(a.filename, a.mime_type) for a in message.attachments],
            [("news-digest-20250110-083000.mp3", "audio/mpeg"), ("news-digest-20250110-083000.md", "text/markdown")],
        )

    def test_partial_silence_is_disclosed(self) -> None:
        ctx = context(synthesis(1, 2))
        message = build_message(ctx, list(ctx.items), timestamp=STAMP)
        self.assertIn("2 of 3 segments are silent", message.text_body)
        self.assertIn("Note:", message.html_body)

    def test_all_silence_is_disclosed(self) -> None:
        ctx = context(synthesis(0, 1))
        message = build_message(ctx, list(ctx.items), timestamp=STAMP)
        self.assertIn("attached audio file is silent", message.text_body)

    def test_missing_audio_and_document_skip_attachments(self) -> None:
        req = PipelineRequest(user_id="u1", email="u1@example.com")
        ctx = PipelineContext(request=req).advance(enriched_items=tuple(items()))
        self.assertEqual(build_message(ctx, list(ctx.items)).attachments, [])

    def test_attachment_names(self) -> None:
        self.assertEqual(
            attachment_names(STAMP),
            ("news-digest-20250110-083000.mp3", "news-digest-20250110-083000.md"),
        )


class MimeTests(unittest.TestCase):
    def test_to_mime_structure(self) -> None:
        message = DigestMessage(
            subject="Digest",
            html_body="<p>Hi</p>",
            text_body="Hi",
            attachments=[
                Attachment("a.mp3", FAKE_MP3, "audio/mpeg"),
                Attachment("d.md", "# Überblick\n".encode("utf-8"), "text/markdown"),
            ],
        )
        mime = to_mime(message, "bot@example.com", "u1@example.com")
        parts = mime.get_payload()
        self.assertEqual(mime.get_content_type(), "multipart/mixed")
        self.assertEqual(mime["To"], "u1@example.com")
        self.assertEqual(parts[0].get_content_type(), "multipart/alternative")
        self.assertEqual(parts[1].get_content_type(), "audio/mpeg")
        self.assertEqual(parts[1].get_filename(), "a.mp3")
        self.assertEqual(parts[1].get_payload(decode=True), FAKE_MP3)
        self.assertEqual(parts[2].get_content_type(), "text/markdown")
        self.assertEqual(parts[2].get_payload(decode=True).decode("utf-8"), "# Überblick\n")


class EmailChannelTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.config = Config(smtp_host="smtp.example.com", smtp_user="bot@example.com",
                             smtp_password="secret", email_from="bot@example.com")
        self.message = DigestMessage(subject="Digest", html_body="<p>Hi</p>", text_body="Hi")

    async def test_deliver_sends_over_starttls(self) -> None:
        with mock.patch("delivery.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value.sendmail.return_value = {}
            ok = await EmailChannel(self.config).deliver("u1@example.com", self.message)
        self.assertTrue(ok)
        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=30)
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "secret")
        sender, recipients, _ = server.sendmail.call_args[0]
        self.assertEqual((sender, recipients), ("bot@example.com", ["u1@example.com"]))

    async def test_deliver_returns_false_on_smtp_error(self) -> None:
        with mock.patch("delivery.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            ok = await EmailChannel(self.config).deliver("u1@example.com", self.message)
        self.assertFalse(ok)

    async def test_deliver_returns_false_when_recipient_refused(self) -> None:
        with mock.patch("delivery.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.sendmail.return_value = {"u1@example.com": (550, b"no such user")}
            self.assertFalse(await EmailChannel(self.config).deliver("u1@example.com", self.message))

    async def test_deliver_returns_false_when_unreachable(self) -> None:
        with mock.patch("delivery.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
            self.assertFalse(await EmailChannel(self.config).deliver("u1@example.com", self.message))


class RendererTests(unittest.TestCase):
    def test_counts_and_breakdown(self) -> None:
        counts = sentiment_counts(items())
        self.assertEqual(counts[Sentiment.POSITIVE], 1)
        self.assertEqual(counts[Sentiment.NEUTRAL], 1)
        breakdown = topic_breakdown(items())
        self.assertEqual(list(breakdown), ["national", "sports"])
        self.assertEqual(breakdown["national"][Sentiment.NEGATIVE], 1)

    def test_markdown_sections(self) -> None:
        ctx = context(synthesis(1, 1), region="Karnataka", language="hi")
        text = render_markdown(list(ctx.items), ctx)
        self.assertTrue(text.startswith("# News Digest: All (Karnataka)"))
        self.assertIn("**Language:** Hindi", text)
        self.assertIn("### 1. Tom & Jerry win", text)
        self.assertIn("[Read more](https://x/1)", text)
        self.assertIn("## Suggested Topics", text)
        self.assertIn("1 of 2 narration segments could not be voiced", text)

    def test_render_without_items_returns_none(self) -> None:
        ctx = context()
        self.assertIsNone(render([], ctx))
        self.assertIsInstance(render(list(ctx.items), ctx), bytes)


class ArtifactStoreTests(unittest.TestCase):
    def test_put_get_and_sanitized_keys(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = ArtifactStore(tmp)
            uri = store.put("u1/news.mp3", FAKE_MP3)
            self.assertTrue(uri.startswith("file://"))
            self.assertEqual(store.get("u1/news.mp3"), FAKE_MP3)
            self.assertIsNone(store.get("u1/missing.mp3"))

            store.put("../escape/../file.md", b"x")
            self.assertTrue(os.path.exists(os.path.join(tmp, "_", "escape", "_", "file.md")))
            with self.assertRaises(ValueError):
                store.put("///", b"x")


if __name__ == "__main__":
    unittest.main()
