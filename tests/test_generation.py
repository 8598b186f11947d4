from __future__ import annotations

from types import SimpleNamespace

import pytest

from newsrag.config import DEFAULT_PRICE_TABLE, Settings
from newsrag.errors import ConfigurationError, GenerationFailed, NoCandidateReturned
from newsrag.models import GenerationRequest
from newsrag.services.generation import (
    DECLINE_MESSAGE,
    GeminiProvider,
    GenerationConfig,
    ModelPrice,
    OpenAIProvider,
    PriceTable,
    TemplateProvider,
    build_provider,
    is_decline,
)

CONTEXT = (
    "[1] Tech Policy Weekly (2024-05-02): The EU AI Act entered into force. It applies in stages.\n\n"
    "[2] Brussels Brief (2024-04-18): Member states agreed on enforcement bodies."
)


def _prices() -> PriceTable:
    return PriceTable.from_config(DEFAULT_PRICE_TABLE, "gemini-2.5-flash-lite")


def _request(**kwargs) -> GenerationRequest:
    return GenerationRequest(query=kwargs.pop("query", "What happened with AI regulation?"), context=CONTEXT, **kwargs)


class FakeGeminiModels:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.response


def _gemini_response(text: str, prompt_tokens: int = 120, output_tokens: int = 30):
    return SimpleNamespace(
        text=text,
        candidates=[SimpleNamespace()],
        usage_metadata=SimpleNamespace(
            prompt_token_count=prompt_tokens,
            candidates_token_count=output_tokens,
            total_token_count=prompt_tokens + output_tokens,
        ),
    )


def _openai_client(response=None, error: Exception | None = None):
    calls: list[dict] = []

    def create(**kwargs):
        calls.append(kwargs)
        if error:
            raise error
        return response

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


def test_cost_is_linear_in_tokens():
    price = ModelPrice(input=0.075 / 1_000_000, output=0.30 / 1_000_000)
    assert price.cost(0, 0) == 0.0
    assert price.cost(2000, 1000) == pytest.approx(2 * price.cost(1000, 500))
    assert price.cost(1_000_000, 1_000_000) == pytest.approx(0.375)


def test_unknown_model_uses_default_price():
    prices = _prices()
    assert prices.price_for("some-new-model") == prices.price_for("gemini-2.5-flash-lite")


def test_price_table_requires_default_entry():
    with pytest.raises(ConfigurationError):
        PriceTable({"a": ModelPrice(0.0, 0.0)}, "b")


def test_gemini_provider_reports_usage_and_cost():
    models = FakeGeminiModels(_gemini_response("The AI Act entered into force [1]."))
    provider = GeminiProvider(
        GenerationConfig(model="gemini-2.5-flash-lite"),
        prices=_prices(),
        client=SimpleNamespace(models=models),
    )
    result = provider.generate_answer(_request())

    assert result.text == "The AI Act entered into force [1]."
    assert result.provider == "gemini"
    assert result.model == "gemini-2.5-flash-lite"
    assert result.usage.input_tokens == 120
    assert result.usage.output_tokens == 30
    assert result.usage.total_tokens == 150
    assert result.usage.estimated_cost_usd == pytest.approx(120 * 0.075e-6 + 30 * 0.30e-6)
    assert not result.insufficient_evidence

    call = models.calls[0]
    assert call["model"] == "gemini-2.5-flash-lite"
    assert "What happened with AI regulation?" in call["contents"]
    assert "[2] Brussels Brief" in call["contents"]
    assert call["config"].temperature == 0.3
    assert call["config"].top_p == 0.95
    assert call["config"].top_k == 40


def test_gemini_request_overrides_temperature_and_tokens():
    models = FakeGeminiModels(_gemini_response("ok [1]"))
    provider = GeminiProvider(GenerationConfig(), prices=_prices(), client=SimpleNamespace(models=models))
    provider.generate_answer(_request(temperature=0.0, max_output_tokens=256))
    config = models.calls[0]["config"]
    assert config.temperature == 0.0
    assert config.max_output_tokens == 256


def test_gemini_without_candidates_raises():
    response = SimpleNamespace(text="", candidates=[], usage_metadata=None)
    provider = GeminiProvider(
        GenerationConfig(),
        prices=_prices(),
        client=SimpleNamespace(models=FakeGeminiModels(response)),
    )
    with pytest.raises(NoCandidateReturned):
        provider.generate_answer(_request())


def test_backend_errors_become_generation_failed():
    provider = GeminiProvider(
        GenerationConfig(),
        prices=_prices(),
        client=SimpleNamespace(models=FakeGeminiModels(error=TimeoutError("quota exceeded"))),
    )
    with pytest.raises(GenerationFailed) as excinfo:
        provider.generate_answer(_request())
    assert excinfo.value.dependency == "gemini"
    assert "quota exceeded" in excinfo.value.detail


def test_gemini_requires_client():
    with pytest.raises(ConfigurationError):
        GeminiProvider(GenerationConfig(), prices=_prices())


def test_decline_sets_insufficient_evidence():
    models = FakeGeminiModels(_gemini_response(DECLINE_MESSAGE))
    provider = GeminiProvider(GenerationConfig(), prices=_prices(), client=SimpleNamespace(models=models))
    result = provider.generate_answer(_request())
    assert result.insufficient_evidence


def test_openai_provider_maps_chat_completion():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="Enforcement bodies were agreed [2]."))],
        usage=SimpleNamespace(prompt_tokens=80, completion_tokens=12, total_tokens=92),
    )
    client, calls = _openai_client(response)
    prices = PriceTable(
        {"gpt-4o-mini": ModelPrice(input=0.15e-6, output=0.60e-6), "default": ModelPrice(0.0, 0.0)},
        "default",
    )
    provider = OpenAIProvider(GenerationConfig(model="gpt-4o-mini"), prices=prices, client=client)
    result = provider.generate_answer(_request(system_prompt="Answer in English."))

    assert result.provider == "openai"
    assert result.usage.total_tokens == 92
    assert result.usage.estimated_cost_usd == pytest.approx(80 * 0.15e-6 + 12 * 0.60e-6)
    messages = calls[0]["messages"]
    assert messages[0]["role"] == "system"
    assert messages[0]["content"].startswith("Answer in English.")
    assert messages[1]["role"] == "user"
    assert calls[0]["max_tokens"] == 4096


def test_openai_without_choices_raises():
    client, _ = _openai_client(SimpleNamespace(choices=[], usage=None))
    provider = OpenAIProvider(GenerationConfig(model="gpt-4o-mini"), prices=_prices(), client=client)
    with pytest.raises(NoCandidateReturned):
        provider.generate_answer(_request())


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        (DECLINE_MESSAGE, True),
        (DECLINE_MESSAGE.rstrip("."), True),
        ("I don’t have enough relevant information to answer that.", True),
        ("I don't have enough information about 2023, but [1] covers 2024.", False),
        ("The AI Act entered into force [1].", False),
        ("", False),
    ],
)
def test_is_decline(text, expected):
    assert is_decline(text) is expected


def test_template_provider_cites_context_entries():
    provider = TemplateProvider(GenerationConfig(model="template"), prices=_prices())
    result = provider.generate_answer(_request())
    assert "[1]" in result.text
    assert "[2]" in result.text
    assert "The EU AI Act entered into force." in result.text
    assert result.usage.output_tokens == len(result.text.split())
    assert result.usage.estimated_cost_usd == 0.0
    assert not result.insufficient_evidence


def test_template_provider_declines_without_context():
    provider = TemplateProvider(GenerationConfig(model="template"), prices=_prices())
    result = provider.generate_answer(GenerationRequest(query="Anything?", context=""))
    assert result.text == DECLINE_MESSAGE
    assert result.insufficient_evidence


def test_build_provider_from_settings():
    settings = Settings(environment="test", provider="template", generator_model="template")
    provider = build_provider(settings)
    assert isinstance(provider, TemplateProvider)
    assert provider.model == "template"


def test_build_provider_rejects_unknown_name():
    with pytest.raises(ConfigurationError):
        build_provider(Settings(environment="test", provider="mystery"))


def test_gemini_request_timeout_reaches_http_options():
    models = FakeGeminiModels(_gemini_response("ok [1]"))
    provider = GeminiProvider(GenerationConfig(), prices=_prices(), client=SimpleNamespace(models=models))
    provider.generate_answer(_request(timeout_seconds=1.5))
    provider.generate_answer(_request())
    assert models.calls[0]["config"].http_options.timeout == 1500
    assert models.calls[1]["config"].http_options is None


def test_openai_request_timeout_is_passed_to_create():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="ok [1]"))],
        usage=SimpleNamespace(prompt_tokens=1, completion_tokens=1, total_tokens=2),
    )
    client, calls = _openai_client(response)
    provider = OpenAIProvider(GenerationConfig(model="gpt-4o-mini"), prices=_prices(), client=client)
    provider.generate_answer(_request(timeout_seconds=0.75))
    provider.generate_answer(_request())
    assert calls[0]["timeout"] == 0.75
    assert "timeout" not in calls[1]
