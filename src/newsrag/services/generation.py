"""Model provider adapters: prompt templating, backend invocation, token and cost accounting."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from newsrag.config import Settings
from newsrag.errors import ConfigurationError, GenerationFailed, NoCandidateReturned
from newsrag.models import GenerationRequest, GenerationResult, TokenUsage

LOGGER = logging.getLogger(__name__)

DECLINE_MESSAGE = (
    "I don't have enough relevant information in the newsletter archive to answer this query confidently."
)
_DECLINE_PREFIXES = (
    "i don't have enough relevant information",
    "i do not have enough relevant information",
    "i don't have enough information",
    "i do not have enough information",
)
_MARKER = re.compile(r"\[\d+\]")

INSTRUCTIONS = (
    "You are an intelligence analyst answering questions from newsletter excerpts.\n"
    "Rules:\n"
    "1. Answer the query using ONLY the numbered context excerpts below. Never use outside knowledge.\n"
    "2. Cite every statement with the inline identifier of its excerpt, like [1] or [2].\n"
    "3. If the excerpts do not contain the information needed, reply with exactly this sentence and "
    f"nothing else: {DECLINE_MESSAGE}\n"
    "4. If excerpts conflict, mention both perspectives.\n"
    "5. Be concise and professional."
)


@dataclass(frozen=True)
class ModelPrice:
    """USD cost per single input and output token."""

    input: float
    output: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return input_tokens * self.input + output_tokens * self.output


class PriceTable:
    """Static per-model prices with a configured fallback entry."""

    def __init__(self, entries: Mapping[str, ModelPrice], default_model: str) -> None:
        if default_model not in entries:
            raise ConfigurationError(f"No price entry for default model '{default_model}'")
        self._entries = dict(entries)
        self._default_model = default_model

    @classmethod
    def from_config(cls, table: Mapping[str, Mapping[str, float]], default_model: str) -> "PriceTable":
        entries = {
            model: ModelPrice(input=float(entry["input"]), output=float(entry["output"]))
            for model, entry in table.items()
        }
        return cls(entries, default_model)

    def price_for(self, model: str) -> ModelPrice:
        return self._entries.get(model) or self._entries[self._default_model]

    def estimate(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return self.price_for(model).cost(input_tokens, output_tokens)


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "gemini-2.5-flash-lite"
    temperature: float = 0.3
    max_output_tokens: int = 4096
    top_p: float = 0.95
    top_k: int = 40


@dataclass(frozen=True)
class Completion:
    """Raw text and usage counters pulled out of a backend response."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int | None = None


class ModelProvider(Protocol):
    """Protocol describing generation behaviour."""

    name: str

    @property
    def model(self) -> str:
        """Model identifier used for generation and pricing."""

    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        """Return a grounded answer for the request's query and context."""


def is_decline(text: str) -> bool:
    """True when the text is the model declining for lack of evidence."""

    normalized = re.sub(r"\s+", " ", (text or "").replace("’", "'")).strip().lower()
    if not normalized:
        return False
    if normalized.rstrip(".") == DECLINE_MESSAGE.lower().rstrip("."):
        return True
    return normalized.startswith(_DECLINE_PREFIXES) and not _MARKER.search(normalized)


class PromptingProvider:
    """Shared prompt building, error wrapping and cost accounting for hosted backends.

    Subclasses implement ``_invoke`` against their SDK and return a
    ``Completion``; they raise ``NoCandidateReturned`` when the backend
    reports zero completions. Anything else they raise is wrapped into
    ``GenerationFailed``. ``request.timeout_seconds`` goes to the SDK call so an
    expired deadline also ends the network request.
    """

    name = "base"

    def __init__(self, config: GenerationConfig, *, prices: PriceTable, client: Any = None) -> None:
        self._config = config
        self._prices = prices
        self._client = client

    @property
    def model(self) -> str:
        return self._config.model

    def build_messages(self, request: GenerationRequest) -> tuple[str, str]:
        system = INSTRUCTIONS
        if request.system_prompt:
            system = f"{request.system_prompt.strip()}\n\n{INSTRUCTIONS}"
        user = f'Query: "{request.query}"\n\nContext:\n{request.context}'
        return system, user

    def build_prompt(self, request: GenerationRequest) -> str:
        system, user = self.build_messages(request)
        return f"{system}\n\n{user}"

    def generate_answer(self, request: GenerationRequest) -> GenerationResult:
        temperature = self._config.temperature if request.temperature is None else request.temperature
        max_tokens = self._config.max_output_tokens if request.max_output_tokens is None else request.max_output_tokens
        system, user = self.build_messages(request)
        try:
            completion = self._invoke(
                request,
                system=system,
                user=user,
                temperature=temperature,
                max_output_tokens=max_tokens,
            )
        except GenerationFailed:
            raise
        except Exception as exc:
            LOGGER.error("%s generation failed: %s", self.name, exc)
            raise GenerationFailed(str(exc) or exc.__class__.__name__, dependency=self.name) from exc

        text = (completion.text or "").strip()
        input_tokens = int(completion.input_tokens or 0)
        output_tokens = int(completion.output_tokens or 0)
        total_tokens = completion.total_tokens or input_tokens + output_tokens
        usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=int(total_tokens),
            estimated_cost_usd=self._prices.estimate(self.model, input_tokens, output_tokens),
        )
        return GenerationResult(
            text=text,
            usage=usage,
            model=self.model,
            provider=self.name,
            insufficient_evidence=is_decline(text),
        )

    def _invoke(
        self,
        request: GenerationRequest,
        *,
        system: str,
        user: str,
        temperature: float,
        max_output_tokens: int,
    ) -> Completion:
        raise NotImplementedError


class GeminiProvider(PromptingProvider):
    """Gemini models on Vertex AI through the ``google-genai`` SDK."""

    name = "gemini"

    def __init__(self, config: GenerationConfig, *, prices: PriceTable, client: Any = None) -> None:
        if client is None:
            raise ConfigurationError("GeminiProvider requires a google-genai client")
        super().__init__(config, prices=prices, client=client)

    def _invoke(
        self,
        request: GenerationRequest,
        *,
        system: str,
        user: str,
        temperature: float,
        max_output_tokens: int,
    ) -> Completion:
        from google.genai import types

        response = self._client.models.generate_content(
            model=self.model,
            contents=user,
            config=types.GenerateContentConfig(
                system_instruction=system,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                top_p=self._config.top_p,
                top_k=self._config.top_k,
                http_options=_http_options(types, request.timeout_seconds),
            ),
        )
        if not getattr(response, "candidates", None):
            raise NoCandidateReturned("No candidates returned from Gemini API", dependency=self.name)
        usage = getattr(response, "usage_metadata", None)
        return Completion(
            text=response.text or "",
            input_tokens=getattr(usage, "prompt_token_count", None) or 0,
            output_tokens=getattr(usage, "candidates_token_count", None) or 0,
            total_tokens=getattr(usage, "total_token_count", None),
        )


def _http_options(types: Any, timeout_seconds: float | None) -> Any:
    # google-genai takes the request timeout in milliseconds.
    if timeout_seconds is None:
        return None
    return types.HttpOptions(timeout=max(1, int(timeout_seconds * 1000)))


class OpenAIProvider(PromptingProvider):
    """OpenAI chat-completions models through the ``openai`` SDK."""

    name = "openai"

    def __init__(self, config: GenerationConfig, *, prices: PriceTable, client: Any = None) -> None:
        if client is None:
            raise ConfigurationError("OpenAIProvider requires an OpenAI client")
        super().__init__(config, prices=prices, client=client)

    def _invoke(
        self,
        request: GenerationRequest,
        *,
        system: str,
        user: str,
        temperature: float,
        max_output_tokens: int,
    ) -> Completion:
        options: dict[str, Any] = {}
        if request.timeout_seconds is not None:
            options["timeout"] = request.timeout_seconds
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=temperature,
            max_tokens=max_output_tokens,
            **options,
        )
        if not getattr(response, "choices", None):
            raise NoCandidateReturned("No choices returned from OpenAI API", dependency=self.name)
        usage = getattr(response, "usage", None)
        return Completion(
            text=response.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", None) or 0,
            output_tokens=getattr(usage, "completion_tokens", None) or 0,
            total_tokens=getattr(usage, "total_tokens", None),
        )


class TemplateProvider(PromptingProvider):
    """Deterministic offline generator used for tests and evaluation runs."""

    name = "template"
    _ENTRY = re.compile(r"^\[(\d+)\] (.+?) \(([^)]*)\): (.*)$")

    def _invoke(
        self,
        request: GenerationRequest,
        *,
        system: str,
        user: str,
        temperature: float,
        max_output_tokens: int,
    ) -> Completion:
        entries = [match.groups() for match in map(self._ENTRY.match, request.context.splitlines()) if match]
        if not entries:
            text = DECLINE_MESSAGE
        else:
            lines = [f"Based on the newsletter archive, here is what covers '{request.query}':"]
            for index, publisher, date, excerpt in entries[:3]:
                lines.append(f"- {publisher} ({date}): {_first_sentence(excerpt)} [{index}]")
            text = "\n".join(lines)
        words = text.split()
        if len(words) > max_output_tokens:
            words = words[:max_output_tokens]
            text = " ".join(words)
        return Completion(
            text=text,
            input_tokens=len(system.split()) + len(user.split()),
            output_tokens=len(words),
        )


def _first_sentence(text: str, limit: int = 160) -> str:
    sentence = re.split(r"(?<=[.!?])\s", text, maxsplit=1)[0]
    if len(sentence) > limit:
        sentence = sentence[: limit - 3].rstrip() + "..."
    return sentence


PROVIDERS: Mapping[str, type[PromptingProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "template": TemplateProvider,
}


def create_backend_client(settings: Settings) -> Any:
    """Create the single long-lived SDK client for the configured provider."""

    provider = settings.provider.lower()
    if provider == "gemini":
        from google import genai

        return genai.Client(vertexai=True, project=settings.project_id, location=settings.location)
    if provider == "openai":
        from openai import OpenAI

        return OpenAI(api_key=settings.openai_api_key_value)
    return None


def build_provider(settings: Settings, client: Any = None) -> PromptingProvider:
    provider_cls = PROVIDERS.get(settings.provider.lower())
    if provider_cls is None:
        raise ConfigurationError(f"Unknown provider '{settings.provider}'")
    prices = PriceTable.from_config(settings.price_table, settings.price_default_model)
    config = GenerationConfig(
        model=settings.generator_model,
        temperature=settings.generator_temperature,
        max_output_tokens=settings.generator_max_output_tokens,
    )
    provider = provider_cls(config, prices=prices, client=client)
    LOGGER.info("Using %s provider with model %s", provider.name, provider.model)
    return provider
