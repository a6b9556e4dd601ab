from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from openai import APIConnectionError, APIError, AsyncOpenAI, AuthenticationError, PermissionDeniedError

from birthday_messenger.date_logic import local_date
from birthday_messenger.errors import GenerationError, ProviderConnectionError
from birthday_messenger.models import RecipientRecord

LOGGER = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "en": "English",
    "hi": "Hindi",
    "te": "Telugu",
    "ta": "Tamil",
    "kn": "Kannada",
    "ml": "Malayalam",
    "mr": "Marathi",
    "bn": "Bengali",
    "gu": "Gujarati",
    "pa": "Punjabi",
    "ur": "Urdu",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ja": "Japanese",
    "zh": "Chinese",
}

DEFAULT_TEMPLATES = {
    "en": [
        "Happy birthday, {name}! 🎉 Hope you have an amazing day.",
        "Hey {name}, happy birthday! 🎂 Wishing you a great year ahead.",
    ],
    "hi": ["जन्मदिन की हार्दिक शुभकामनाएं, {name}! 🎉"],
    "es": ["¡Feliz cumpleaños, {name}! 🎉 Que tengas un día increíble."],
    "fr": ["Joyeux anniversaire, {name} ! 🎂 Passe une excellente journée."],
}

SYSTEM_PROMPT = (
    "You are a close friend writing a birthday message. Write naturally and casually, "
    "like you're texting a good friend. Avoid formal, flowery, or poetic language. "
    "Keep it simple, warm, and genuine."
)

_EMOJI_PATTERN = re.compile("[\U0001F300-\U0001FAFF\u2600-\u27BF\uFE0F]")


class MessageProvider(Protocol):
    async def validate(self) -> None: ...

    async def generate(self, recipient: RecipientRecord) -> str: ...


def language_name(tag: str) -> str:
    return LANGUAGE_NAMES.get(tag.strip().lower(), tag)


def strip_emojis(text: str) -> str:
    without = _EMOJI_PATTERN.sub("", text)
    return re.sub(r"[ \t]{2,}", " ", without).strip()


def build_prompt(recipient: RecipientRecord, *, sender_name: str, use_emojis: bool) -> str:
    language = language_name(recipient.language)
    if use_emojis:
        emoji_guidance = "- Include 2-3 fitting emojis placed naturally within the text"
    else:
        emoji_guidance = "- Do NOT include any emojis"

    return "\n".join(
        [
            f"Write a short birthday message for {recipient.name} in {language}.",
            "",
            "- Sound like a close friend texting, not a greeting card",
            "- Two or three sentences at most",
            "- Simple everyday words, warm but not dramatic",
            emoji_guidance,
            f'- End with the signature "- {sender_name}"',
            "",
            "Reply with the message and signature only.",
        ]
    )


class OpenAIMessageProvider:
    def __init__(
        self,
        *,
        client: AsyncOpenAI,
        model: str,
        sender_name: str,
        use_emojis: bool = True,
    ) -> None:
        self._client = client
        self._model = model
        self._sender_name = sender_name
        self._use_emojis = use_emojis

    async def validate(self) -> None:
        try:
            await self._client.models.list()
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise ProviderConnectionError(f"OpenAI rejected the API key: {exc}") from exc
        except APIConnectionError as exc:
            raise ProviderConnectionError(f"OpenAI unreachable: {exc}") from exc
        except APIError as exc:
            raise ProviderConnectionError(f"OpenAI validation failed: {exc}") from exc

    async def generate(self, recipient: RecipientRecord) -> str:
        prompt = build_prompt(recipient, sender_name=self._sender_name, use_emojis=self._use_emojis)
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.8,
                max_tokens=300,
            )
        except APIError as exc:
            raise GenerationError(f"OpenAI request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        message = (content or "").strip()
        if not message:
            raise GenerationError("OpenAI returned an empty message")
        return message


class TemplateMessageProvider:
    """Fills per-language templates; the variant is picked deterministically per recipient and their local year."""

    def __init__(
        self,
        *,
        templates: dict[str, list[str]],
        sender_name: str,
        use_emojis: bool = True,
        fallback_language: str = "en",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._templates = {key.lower(): list(values) for key, values in templates.items() if values}
        self._sender_name = sender_name
        self._use_emojis = use_emojis
        self._fallback_language = fallback_language
        self._clock = clock

    @property
    def languages(self) -> list[str]:
        return sorted(self._templates)

    async def validate(self) -> None:
        if not self._templates:
            raise ProviderConnectionError("No message templates configured")

    async def generate(self, recipient: RecipientRecord) -> str:
        language = recipient.language.lower()
        templates = self._templates.get(language)
        if templates is None:
            templates = self._templates.get(self._fallback_language)
            if templates is None:
                raise GenerationError(f"No templates found for language: {recipient.language}")
            LOGGER.warning(
                "No templates for %s, using %s for %s",
                recipient.language,
                self._fallback_language,
                recipient.recipient_id,
            )

        year = local_date(self._clock(), recipient.timezone).year
        template = self._select_template(recipient.recipient_id, year, templates)
        message = template.replace("{name}", recipient.name)
        if not self._use_emojis:
            message = strip_emojis(message)
        return f"{message}\n- {self._sender_name}"

    @staticmethod
    def _select_template(recipient_id: str, year: int, templates: list[str]) -> str:
        seed = f"{recipient_id}|{year}"
        digest = hashlib.sha256(seed.encode("utf-8")).digest()
        return templates[int.from_bytes(digest[:4], "big") % len(templates)]


def build_message_provider(
    mode: str,
    *,
    templates: dict[str, list[str]],
    sender_name: str,
    use_emojis: bool,
    openai_api_key: str | None = None,
    openai_model: str = "gpt-4o-mini",
) -> MessageProvider:
    if mode == "template":
        LOGGER.info("Using template-based message generation")
        return TemplateMessageProvider(templates=templates, sender_name=sender_name, use_emojis=use_emojis)
    if mode == "ai":
        if not openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when message_mode is 'ai'")
        LOGGER.info("Using AI-based message generation (%s)", openai_model)
        return OpenAIMessageProvider(
            client=AsyncOpenAI(api_key=openai_api_key, timeout=60.0),
            model=openai_model,
            sender_name=sender_name,
            use_emojis=use_emojis,
        )
    raise ValueError(f"Unsupported message mode: {mode}")
