"""Translation gateway abstractions.

A gateway takes an ordered list of tagged strings and returns the same number
of translated strings in the same order. It never looks inside the markers.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import deepl

from .configuration import Settings, validate_provider_settings
from .errors import (
    ConfigurationError,
    InvalidRequest,
    QuotaExceeded,
    TransientServiceError,
)

logger = logging.getLogger(__name__)

# DeepL wants a regional variant for these target languages.
TARGET_LANGUAGE_DEFAULTS = {"EN": "EN-US", "PT": "PT-BR"}


def deepl_source_language(code: str | None) -> str | None:
    if not code:
        return None
    return code.split("-", 1)[0].split("_", 1)[0].upper()


def deepl_target_language(code: str) -> str:
    normalized = code.replace("_", "-").upper()
    return TARGET_LANGUAGE_DEFAULTS.get(normalized, normalized)


class TranslationGateway(ABC):
    """Abstract adapter for translation services."""

    name = "base"

    @abstractmethod
    def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        """Translate the tagged strings and return them in input order."""

    def close(self) -> None:
        """Release network resources held by the gateway."""


class EchoGateway(TranslationGateway):
    """A gateway that returns the original text (useful for testing)."""

    name = "echo"

    def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        return list(texts)


class DeepLGateway(TranslationGateway):
    """Gateway backed by the official DeepL client with XML tag handling."""

    name = "deepl"

    def __init__(self, settings: Settings, *, translator: Any = None) -> None:
        self.settings = settings
        if translator is None:
            if not settings.DEEPL_AUTH_KEY:
                raise ConfigurationError(
                    "DeepL configuration missing. Set DEEPL_AUTH_KEY or choose a "
                    "different provider."
                )
            translator = deepl.Translator(
                settings.DEEPL_AUTH_KEY,
                server_url=settings.DEEPL_SERVER_URL,
            )
        self._translator = translator

    def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        if not texts:
            return []

        options: Dict[str, Any] = {
            "source_lang": deepl_source_language(source_language),
            "target_lang": deepl_target_language(target_language),
            "tag_handling": "xml",
            "preserve_formatting": True,
        }
        if self.settings.FORMALITY != "default":
            options["formality"] = self.settings.FORMALITY
        glossary_id = self.settings.glossary_for(source_language, target_language)
        if glossary_id:
            logger.debug("Using glossary %s", glossary_id)
            options["glossary"] = glossary_id

        logger.debug("DeepL request: %d texts, options %s", len(texts), options)
        results = self._call(self._translator.translate_text, list(texts), **options)
        translated = [result.text for result in results]
        if len(translated) != len(texts):
            raise InvalidRequest(
                f"DeepL returned {len(translated)} translations for {len(texts)} texts."
            )
        return translated

    def _call(self, method: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return method(*args, **kwargs)
        except deepl.QuotaExceededException as exc:
            raise QuotaExceeded(f"DeepL quota exceeded: {exc}") from exc
        except deepl.AuthorizationException as exc:
            raise InvalidRequest(f"DeepL rejected the authentication key: {exc}") from exc
        except (deepl.TooManyRequestsException, deepl.ConnectionException) as exc:
            raise TransientServiceError(
                f"Translation service temporarily unavailable: {exc}"
            ) from exc
        except deepl.DeepLException as exc:
            status = getattr(exc, "http_status_code", None)
            if getattr(exc, "should_retry", False) or (status is not None and status >= 500):
                raise TransientServiceError(
                    f"Translation service temporarily unavailable: {exc}"
                ) from exc
            raise InvalidRequest(f"DeepL rejected the request: {exc}") from exc

    # --- Account helpers ---------------------------------------------------

    def register_glossary(
        self,
        name: str,
        source_language: str,
        target_language: str,
        entries: Dict[str, str],
    ) -> Any:
        return self._call(
            self._translator.create_glossary,
            name,
            deepl_source_language(source_language),
            deepl_source_language(target_language),
            entries,
        )

    def list_glossaries(self) -> List[Any]:
        return list(self._call(self._translator.list_glossaries))

    def delete_glossary(self, glossary_id: str) -> None:
        self._call(self._translator.delete_glossary, glossary_id)

    def usage(self) -> Tuple[Optional[int], Optional[int]]:
        """Return (characters used, character limit) for the billing period."""

        usage = self._call(self._translator.get_usage)
        character = getattr(usage, "character", None)
        if character is None or not getattr(character, "valid", True):
            return None, None
        return character.count, character.limit

    def close(self) -> None:
        close = getattr(self._translator, "close", None)
        if callable(close):
            close()


class OpenAIGateway(TranslationGateway):
    """Gateway that prompts an OpenAI chat model to keep markers intact."""

    name = "openai"

    SYSTEM_PROMPT = (
        "You are a professional translator. Return only JSON. "
        "Translate the provided text segments into the requested language. "
        "Segments contain XML-like markers such as <m1>...</m1> and <m2/>; keep "
        "every marker exactly once with its number unchanged, translate only the "
        "text around and inside them, and keep XML entities such as &amp; escaped. "
        "Respond strictly with an object shaped as "
        '{"translations": [{"id": 0, "translated": "..."}]}. '
        "Do not add commentary. Do not wrap the JSON in markdown code fences."
    )

    def __init__(self, settings: Settings, *, client: Any = None) -> None:
        self.settings = settings
        self.model = settings.OPENAI_MODEL
        self._client = client or self._build_client()

    def _build_client(self) -> Any:
        if not self.settings.OPENAI_API_KEY:
            raise ConfigurationError(
                "OpenAI configuration missing. Set OPENAI_API_KEY or choose a "
                "different provider."
            )
        try:
            from openai import OpenAI  # type: ignore
        except ImportError as exc:  # pragma: no cover - import guard
            raise ConfigurationError(
                "OpenAI Python SDK not installed. Install with `pip install openai`."
            ) from exc
        return OpenAI(api_key=self.settings.OPENAI_API_KEY)

    def translate(
        self,
        texts: Sequence[str],
        *,
        source_language: str | None,
        target_language: str,
    ) -> List[str]:
        if not texts:
            return []

        user_payload = {
            "target_language": target_language,
            "source_language": source_language,
            "segments": [{"id": index, "text": text} for index, text in enumerate(texts)],
        }
        self._log_debug("provider.request.payload", user_payload)

        items = self._invoke_model(user_payload)
        self._log_debug("provider.response.items", items)

        mapping: Dict[int, str] = {}
        for item in items:
            if not isinstance(item, dict):
                raise InvalidRequest("Translation provider response malformed: expected objects.")
            segment_id = item.get("id")
            translated = item.get("translated")
            if isinstance(segment_id, str) and segment_id.isdigit():
                segment_id = int(segment_id)
            if not isinstance(segment_id, int) or not isinstance(translated, str):
                raise InvalidRequest("Translation provider response malformed: missing fields.")
            mapping[segment_id] = translated

        missing = [index for index in range(len(texts)) if index not in mapping]
        if missing:
            raise InvalidRequest(
                "Translation provider response missing segments "
                + ", ".join(str(index) for index in missing)
            )
        return [mapping[index] for index in range(len(texts))]

    def _invoke_model(self, user_payload: dict) -> list[dict[str, Any]]:
        """Call the Chat Completions API and return structured JSON data."""

        try:
            import openai  # type: ignore
        except ImportError as exc:  # pragma: no cover - import guard
            raise ConfigurationError(
                "OpenAI Python SDK not installed. Install with `pip install openai`."
            ) from exc

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(user_payload, ensure_ascii=False)},
                ],
            )
        except openai.RateLimitError as exc:
            if getattr(exc, "code", None) == "insufficient_quota":
                raise QuotaExceeded(f"OpenAI quota exceeded: {exc}") from exc
            raise TransientServiceError(f"Translation service rate limited: {exc}") from exc
        except (openai.APIConnectionError, openai.InternalServerError) as exc:
            raise TransientServiceError(
                f"Translation service temporarily unavailable: {exc}"
            ) from exc
        except openai.APIError as exc:
            raise InvalidRequest(f"OpenAI rejected the request: {exc}") from exc

        content: str | None = None
        for choice in getattr(response, "choices", None) or []:
            message = getattr(choice, "message", None)
            message_content = getattr(message, "content", None)
            if message_content:
                content = str(message_content)
                break

        if content is None:
            raise InvalidRequest("Translation provider response empty or unrecognised.")
        return self._normalise_translations(content)

    def _log_debug(self, label: str, payload: Any) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        try:
            message = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            message = repr(payload)
        logger.debug("%s:\n%s", label, message)

    def _strip_code_fence(self, text: str) -> str:
        """Remove leading/trailing markdown code fences if present."""

        stripped = text.strip()
        if not stripped.startswith("```"):
            return stripped

        # Drop opening fence and optional language hint.
        first_newline = stripped.find("\n")
        if first_newline == -1:
            return stripped
        body = stripped[first_newline + 1 :]
        closing_index = body.rfind("```")
        if closing_index != -1:
            body = body[:closing_index]
        return body.strip()

    def _normalise_translations(self, payload: Any) -> list[dict[str, Any]]:
        """Normalise raw payloads into a list of translation dictionaries."""

        if isinstance(payload, str):
            payload = self._strip_code_fence(payload)
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise InvalidRequest(
                    f"Translation provider returned invalid JSON: {exc}"
                ) from exc

        if isinstance(payload, dict):
            translations = payload.get("translations")
            if isinstance(translations, list):
                return translations

        if isinstance(payload, list):
            return payload

        raise InvalidRequest(
            "Translation provider response malformed: could not find translations list."
        )


def build_gateway(settings: Settings, name: str | None = None) -> TranslationGateway:
    """Factory to create gateways by name for one translation run."""

    normalized = (name or settings.PROVIDER).strip().lower()
    if normalized in {"echo", "noop", "mock"}:
        return EchoGateway()
    if normalized in {"deepl", "default"}:
        validate_provider_settings(settings.model_copy(update={"PROVIDER": "deepl"}))
        return DeepLGateway(settings)
    if normalized in {"openai", "gpt"}:
        validate_provider_settings(settings.model_copy(update={"PROVIDER": "openai"}))
        return OpenAIGateway(settings)
    raise ConfigurationError(f"Unknown translation provider '{name}'.")
