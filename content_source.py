"""
AI-generated message content.

Optional content source for schedules that ask for a fresh message every
time they fire. Talks to an OpenAI-compatible Chat Completions endpoint.
"""

import logging
import random
import time
from typing import Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_MODEL = "gpt-4o-mini"
MAX_RATE_LIMIT_RETRIES = 4
BASE_BACKOFF_SECONDS = 1.5

SYSTEM_PROMPT = (
    "You are a helpful assistant that generates text messages. Always respond "
    "with just the message content, no quotes or additional text."
)

TYPE_PROMPTS = {
    "friendly": "Generate a friendly, casual text message to send to {name}. "
                "Keep it under {length} characters. Make it sound natural and personal.",
    "professional": "Generate a professional text message to send to {name}. "
                    "Keep it under {length} characters. Make it business-appropriate.",
    "funny": "Generate a funny or humorous text message to send to {name}. "
             "Keep it under {length} characters. Make it lighthearted and entertaining.",
    "romantic": "Generate a romantic text message to send to {name}. "
                "Keep it under {length} characters. Make it sweet and affectionate.",
}
DEFAULT_PROMPT = ("Generate a random text message to send to {name}. "
                  "Keep it under {length} characters. Make it engaging and appropriate.")
CONTEXT_PROMPT = ("Generate a text message to send to {name} based on this context: "
                  "'{context}'. Keep it under {length} characters. "
                  "Make it relevant and appropriate.")


class ContentGenerationError(Exception):
    """Raised when no message could be generated."""
    pass


def parse_duration(raw: str) -> Optional[float]:
    """
    Parse a rate-limit header duration into seconds.

    Accepts plain or decimal seconds ("2", "1.5") and suffixed values
    ("200ms", "2s", "1m").
    """
    text = raw.strip().lower()
    try:
        if text.endswith("ms"):
            return float(text[:-2]) / 1000
        if text.endswith("s"):
            return float(text[:-1])
        if text.endswith("m"):
            return float(text[:-1]) * 60
        return float(text)
    except ValueError:
        return None


def retry_delay(headers: Dict[str, str], attempt: int) -> float:
    """Seconds to wait before retrying a rate-limited request"""
    header_delays = [
        parse_duration(headers[name])
        for name in ("Retry-After", "x-ratelimit-reset-requests", "x-ratelimit-reset-tokens")
        if headers.get(name)
    ]
    header_delays = [d for d in header_delays if d is not None]
    header_delay = min(header_delays) if header_delays else 0.0
    backoff = BASE_BACKOFF_SECONDS * (2 ** attempt)  # 1.5s, 3s, 6s, 12s
    return max(header_delay, backoff) + random.uniform(0.2, 0.7)


class OpenAIContentSource:
    """Generates short text messages with a chat completion model"""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = 30,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.api_key = api_key
        self.model = model
        self.url = f"{base_url.rstrip('/')}/v1/chat/completions"
        self.timeout = timeout
        self._sleep = sleep
        self.session = requests.Session()

    def has_api_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def build_prompt(self, contact_name: str, message_type: str, context: str, max_length: int) -> str:
        name = contact_name or "a friend"
        if context:
            return CONTEXT_PROMPT.format(name=name, context=context, length=max_length)
        template = TYPE_PROMPTS.get(message_type.lower(), DEFAULT_PROMPT)
        return template.format(name=name, length=max_length)

    def generate(
        self,
        contact_name: str,
        message_type: str = "friendly",
        context: str = "",
        max_length: int = 100
    ) -> str:
        """
        Generate a message.

        Raises:
            ContentGenerationError: No API key, API error, or empty completion
        """
        if not self.has_api_key():
            raise ContentGenerationError("API key not set")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(
                    contact_name, message_type, context, max_length)},
            ],
            "max_tokens": 150,
            "temperature": 0.7 if context else 0.8,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        attempt = 0
        while True:
            try:
                response = self.session.post(
                    self.url, json=body, headers=headers, timeout=self.timeout
                )
            except requests.exceptions.RequestException as e:
                raise ContentGenerationError(f"Request failed: {e}") from e

            if response.status_code == 429 and attempt < MAX_RATE_LIMIT_RETRIES:
                delay = retry_delay(response.headers, attempt)
                attempt += 1
                logger.warning(f"Rate limited, retrying in {delay:.1f}s "
                               f"(attempt {attempt}/{MAX_RATE_LIMIT_RETRIES})")
                self._sleep(delay)
                continue

            if response.status_code == 429:
                raise ContentGenerationError("Rate limited by API (429)")
            if not response.ok:
                raise ContentGenerationError(
                    f"API error: {response.status_code} - {response.text}"
                )
            break

        try:
            choices = response.json().get("choices") or []
            content = (choices[0]["message"]["content"] or "").strip() if choices else ""
        except (ValueError, KeyError, TypeError) as e:
            raise ContentGenerationError(f"Malformed completion response: {e}") from e

        if not content:
            raise ContentGenerationError("No message generated")
        return content
