import os
import sys
import unittest
from types import SimpleNamespace

from pydantic_ai.exceptions import ModelHTTPError

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from agents.base import is_rate_limited, parse_local_model  # noqa: E402
from agents.curator import build_articles_message  # noqa: E402
from agents.scriptwriter import clean_script, fallback_script  # noqa: E402
from agents.sentiment import SentimentAnalyzer, SentimentUnavailableError, reading_from_prediction  # noqa: E402
from agents.translator import TranslatorAgent, parse_translations  # noqa: E402
from config import Config  # noqa: E402
from errors import TranslationQuotaError  # noqa: E402
from models.digest import DigestItem, Sentiment  # noqa: E402
from models.source import RawSourceItem  # noqa: E402
from tools.utils import iso_code, language_name, speech_locale  # noqa: E402


class FakeAgent:
    """Stands in for a PydanticAI agent, replaying outputs or errors."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.prompts: list[str] = []

    async def run(self, prompt, **kwargs):
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return SimpleNamespace(output=outcome)


def translator_with(agent: FakeAgent) -> TranslatorAgent:
    translator = TranslatorAgent.__new__(TranslatorAgent)
    translator.config = Config()
    translator._agent = agent
    return translator


class ModelHelpersTests(unittest.TestCase):
    def test_parse_local_model(self) -> None:
        self.assertEqual(
            parse_local_model("openai:qwen@http://127.0.0.1:8080/v1"),
            ("qwen", "http://127.0.0.1:8080/v1"),
        )
        self.assertIsNone(parse_local_model("google-gla:gemini-2.0-flash"))

    def test_is_rate_limited(self) -> None:
        self.assertTrue(is_rate_limited(ModelHTTPError(status_code=429, model_name="gemini")))
        self.assertFalse(is_rate_limited(ModelHTTPError(status_code=500, model_name="gemini")))
        self.assertTrue(is_rate_limited(RuntimeError("Quota exceeded for project")))
        self.assertFalse(is_rate_limited(RuntimeError("connection reset")))


class LanguageTests(unittest.TestCase):
    def test_iso_code_accepts_names_and_codes(self) -> None:
        self.assertEqual(iso_code("Hindi"), "hi")
        self.assertEqual(iso_code("ta"), "ta")
        self.assertEqual(iso_code("klingon"), "en")
        self.assertEqual(iso_code(None), "en")

    def test_language_name_and_locale(self) -> None:
        self.assertEqual(language_name("kn"), "Kannada")
        self.assertEqual(speech_locale("en"), "en-US")
        self.assertEqual(speech_locale("sa"), "sa-IN")


class CuratorMessageTests(unittest.TestCase):
    def test_articles_are_numbered_and_stripped(self) -> None:
        items = [
            RawSourceItem(title="Budget passed", link="https://x/1", description="<p>Long " + "x" * 600 + "</p>"),
            RawSourceItem(title="Rain"),
        ]
        message = build_articles_message(items, "national", "English")
        self.assertIn("User requested topic: national", message)
        self.assertIn("1. Title: Budget passed", message)
        self.assertIn("2. Title: Rain", message)
        self.assertNotIn("<p>", message)
        self.assertNotIn("x" * 500, message)


class ScriptTests(unittest.TestCase):
    def test_clean_script_strips_markdown(self) -> None:
        self.assertEqual(clean_script("## Welcome\n\n**Story one** is here."), "Welcome\nStory one is here.")

    def test_fallback_script_reads_every_item(self) -> None:
        items = [
            DigestItem(title="Budget passed.", summary="It passed"),
            DigestItem(title="Rain", summary="Heavy rain expected!"),
        ]
        script = fallback_script(items, "Asha")
        self.assertTrue(script.startswith("Hello Asha, here is your news digest with 2 stories."))
        self.assertIn("Story 1. Budget passed. It passed.", script)
        self.assertIn("Story 2. Rain. Heavy rain expected!", script)
        self.assertTrue(script.endswith("Thank you for listening."))


class SentimentTests(unittest.TestCase):
    def test_positive_prediction(self) -> None:
        reading = reading_from_prediction([[{"label": "POSITIVE", "score": 0.98}, {"label": "NEGATIVE", "score": 0.02}]])
        self.assertEqual(reading.sentiment, Sentiment.POSITIVE)
        self.assertEqual(reading.score, 0.98)

    def test_negative_prediction_folds_score(self) -> None:
        reading = reading_from_prediction([{"label": "NEGATIVE", "score": 0.9}])
        self.assertEqual(reading.sentiment, Sentiment.NEGATIVE)
        self.assertAlmostEqual(reading.score, 0.1)

    def test_weak_prediction_is_neutral(self) -> None:
        self.assertEqual(reading_from_prediction([{"label": "POSITIVE", "score": 0.6}]).sentiment, Sentiment.NEUTRAL)

    def test_unexpected_response_raises(self) -> None:
        with self.assertRaises(ValueError):
            reading_from_prediction({"error": "Model is loading"})


class SentimentAnalyzerTests(unittest.IsolatedAsyncioTestCase):
    async def test_without_key_is_unavailable(self) -> None:
        analyzer = SentimentAnalyzer(Config())
        self.assertFalse(analyzer.available)
        with self.assertRaises(SentimentUnavailableError):
            await analyzer.analyze([DigestItem(title="T", summary="S")])
        self.assertEqual((await analyzer.analyze([])).readings, [])


class TranslationTests(unittest.TestCase):
    def test_parse_translations(self) -> None:
        text = (
            "1. TITLE: बजट पारित\n"
            "SUMMARY: संसद ने बजट पारित किया।\n"
            "2. TITLE: Second\n"
            "SUMMARY: Two\n   lines"
        )
        entries = parse_translations(text)
        self.assertEqual(entries[1], ("बजट पारित", "संसद ने बजट पारित किया।"))
        self.assertEqual(entries[2], ("Second", "Two lines"))
        self.assertEqual(parse_translations("Sorry, I cannot help."), {})

    def test_needs_translation(self) -> None:
        self.assertFalse(TranslatorAgent.needs_translation("English"))
        self.assertTrue(TranslatorAgent.needs_translation("hi"))


class TranslatorAgentTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.items = [DigestItem(title=f"Title {i}", summary=f"Summary {i}") for i in range(4)]

    async def test_batches_translated_and_missing_entries_kept(self) -> None:
        agent = FakeAgent(
            "1. TITLE: T0\nSUMMARY: S0\n3. TITLE: T2\nSUMMARY: S2",
            "1. TITLE: T3\nSUMMARY: S3",
        )
        result = await translator_with(agent).translate(self.items, "hi")
        self.assertEqual(len(agent.prompts), 2)
        self.assertEqual([i.title for i in result.items], ["T0", "Title 1", "T2", "T3"])
        self.assertEqual(result.translated, 3)

    async def test_failed_batch_keeps_originals(self) -> None:
        agent = FakeAgent(RuntimeError("server error"), "1. TITLE: T3\nSUMMARY: S3")
        result = await translator_with(agent).translate(self.items, "hi")
        self.assertEqual(result.failed_batches, 1)
        self.assertEqual([i.title for i in result.items], ["Title 0", "Title 1", "Title 2", "T3"])

    async def test_quota_error_raises(self) -> None:
        agent = FakeAgent(ModelHTTPError(status_code=429, model_name="gemini"))
        with self.assertRaises(TranslationQuotaError):
            await translator_with(agent).translate(self.items, "hi")

    async def test_english_is_passthrough(self) -> None:
        agent = FakeAgent()
        result = await translator_with(agent).translate(self.items, "en")
        self.assertEqual(result.items, self.items)
        self.assertEqual(agent.prompts, [])


if __name__ == "__main__":
    unittest.main()
