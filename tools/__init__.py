"""Shared helpers for network access and language resolution.

create_ssl_context:
    certifi-backed SSL context with an unverified fallback.

iso_code / language_name / speech_locale:
    Map user-facing language hints to ISO codes, prompt names and
    speech-API locales.
"""

from tools.utils import (
    USER_AGENT,
    create_ssl_context,
    iso_code,
    language_name,
    speech_locale,
)

__all__ = [
    "USER_AGENT",
    "create_ssl_context",
    "iso_code",
    "language_name",
    "speech_locale",
]
