"""Shared utilities for network clients and language handling.

This module contains shared constants and utility functions used by the
feed collector, the speech backends, and the language-aware agents.
"""

import ssl

import certifi

# Browser-like User-Agent to avoid being blocked by some servers
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

# Language names and ISO codes accepted in requests, mapped to ISO codes
LANGUAGE_CODES: dict[str, str] = {
    "english": "en",
    "hindi": "hi",
    "gujarati": "gu",
    "marathi": "mr",
    "assamese": "as",
    "bengali": "bn",
    "tamil": "ta",
    "telugu": "te",
    "kannada": "kn",
    "malayalam": "ml",
    "punjabi": "pa",
    "urdu": "ur",
    "odia": "or",
    "konkani": "kok",
    "manipuri": "mni",
    "nepali": "ne",
    "sindhi": "sd",
    "sanskrit": "sa",
}

LANGUAGE_NAMES: dict[str, str] = {code: name.title() for name, code in LANGUAGE_CODES.items()}

# Speech locales; unlisted codes fall back to "<code>-IN"
SPEECH_LOCALES: dict[str, str] = {
    "en": "en-US",
    "hi": "hi-IN",
    "as": "as-IN",
    "bn": "bn-IN",
    "gu": "gu-IN",
    "kn": "kn-IN",
    "ml": "ml-IN",
    "mr": "mr-IN",
    "pa": "pa-IN",
    "ta": "ta-IN",
    "te": "te-IN",
    "or": "or-IN",
    "ur": "ur-PK",
}


def create_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """Create SSL context with optional certificate verification.

    Args:
        verify: If True, verify SSL certificates using certifi bundle.
                If False, disable verification (for problematic servers).

    Returns:
        Configured SSL context
    """
    if verify:
        return ssl.create_default_context(cafile=certifi.where())
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def iso_code(language: str | None) -> str:
    """Resolve a language name or code to an ISO code ('en' if unknown).

    Example:
        >>> iso_code("Hindi"), iso_code("ta"), iso_code("klingon")
        ('hi', 'ta', 'en')
    """
    if not isinstance(language, str):
        return "en"
    key = language.strip().lower()
    if key in LANGUAGE_CODES:
        return LANGUAGE_CODES[key]
    if key in LANGUAGE_NAMES:
        return key
    return "en"


def language_name(language: str | None) -> str:
    """Human-readable language name for prompts ('English' if unknown)."""
    return LANGUAGE_NAMES.get(iso_code(language), "English")


def speech_locale(code: str) -> str:
    """Locale used by the cloud speech API for an ISO code."""
    return SPEECH_LOCALES.get(code, f"{code}-IN")
