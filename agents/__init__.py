"""Agents that power the digest pipeline.

CuratorAgent:
    Picks and summarizes headlines from raw feed items (free-text JSON,
    recovered by recovery.py).

TranslatorAgent:
    Translates item titles and summaries in batches of three.

ScriptWriterAgent:
    Writes the narration script read by the speech engine.

SentimentAnalyzer:
    Scores items through the Hugging Face inference API.

InterestTracker:
    Maintains per-user topic weights and browsing history.

Example:
    >>> from agents import CuratorAgent, TranslatorAgent
    >>> curator = CuratorAgent(config)
    >>> translator = TranslatorAgent(config)
"""

from agents.curator import CuratorAgent
from agents.interests import InterestTracker
from agents.scriptwriter import ScriptWriterAgent
from agents.sentiment import SentimentAnalyzer
from agents.translator import TranslatorAgent

__all__ = [
    "CuratorAgent",
    "InterestTracker",
    "ScriptWriterAgent",
    "SentimentAnalyzer",
    "TranslatorAgent",
]
