"""Model construction shared by the text-generating agents.

Model strings follow PydanticAI's provider:model format. A string of the
form ``openai:<model>@<base_url>`` targets a local OpenAI-compatible
server through AsyncOpenAI instead of a hosted provider.
"""

import logging

from openai import AsyncOpenAI
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.models.openai import OpenAIModel
from pydantic_ai.profiles.openai import OpenAIModelProfile
from pydantic_ai.providers.openai import OpenAIProvider

logger = logging.getLogger(__name__)


def parse_local_model(model_str: str) -> tuple[str, str] | None:
    """Parse local model string into (model_name, base_url) or None if not local.

    Example:
        >>> parse_local_model("openai:qwen@http://127.0.0.1:8080/v1")
        ('qwen', 'http://127.0.0.1:8080/v1')
    """
    if model_str.startswith("openai:") and "@" in model_str:
        rest = model_str[7:]
        model_name, base_url = rest.split("@", 1)
        return model_name, base_url
    return None


def create_model(model_str: str):
    """Create a PydanticAI model instance or pass through remote model string."""
    parsed = parse_local_model(model_str)
    if parsed:
        model_name, base_url = parsed
        logger.info("Using local model | model=%s base_url=%s", model_name, base_url)
        client = AsyncOpenAI(base_url=base_url, api_key="local-model")
        profile = OpenAIModelProfile(supports_json_object_output=False)
        return OpenAIModel(
            model_name=model_name,
            provider=OpenAIProvider(openai_client=client),
            profile=profile,
        )
    return model_str


def is_rate_limited(error: BaseException) -> bool:
    """True when a model call failed on quota or rate limits."""
    if isinstance(error, ModelHTTPError):
        return error.status_code == 429
    message = str(error).lower()
    return "429" in message or "quota" in message or "rate limit" in message
