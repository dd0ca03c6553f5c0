import json
from types import SimpleNamespace

import deepl
import pytest

from cmark_translate.configuration import Settings
from cmark_translate.errors import (
    ConfigurationError,
    InvalidRequest,
    QuotaExceeded,
    TransientServiceError,
)
from cmark_translate.providers import (
    DeepLGateway,
    EchoGateway,
    OpenAIGateway,
    build_gateway,
    deepl_source_language,
    deepl_target_language,
)


class FakeDeepLTranslator:
    def __init__(self, error=None, results=None):
        self.error = error
        self.results = results
        self.requests = []

    def translate_text(self, texts, **options):
        self.requests.append((texts, options))
        if self.error is not None:
            raise self.error
        if self.results is not None:
            return self.results
        return [SimpleNamespace(text=text.upper()) for text in texts]

    def get_usage(self):
        return SimpleNamespace(character=SimpleNamespace(count=1200, limit=500000, valid=True))


def test_language_codes():
    assert deepl_source_language("en-GB") == "EN"
    assert deepl_source_language(None) is None
    assert deepl_target_language("en") == "EN-US"
    assert deepl_target_language("pt") == "PT-BR"
    assert deepl_target_language("de") == "DE"
    assert deepl_target_language("en_gb") == "EN-GB"


def test_deepl_request_options():
    settings = Settings(
        DEEPL_AUTH_KEY="key:fx",
        FORMALITY="more",
        GLOSSARIES={"en_de": "glossary-1"},
    )
    translator = FakeDeepLTranslator()
    gateway = DeepLGateway(settings, translator=translator)

    result = gateway.translate(["<m1>a</m1>", "b"], source_language="en", target_language="de")

    assert result == ["<M1>A</M1>", "B"]
    texts, options = translator.requests[0]
    assert texts == ["<m1>a</m1>", "b"]
    assert options == {
        "source_lang": "EN",
        "target_lang": "DE",
        "tag_handling": "xml",
        "preserve_formatting": True,
        "formality": "more",
        "glossary": "glossary-1",
    }


def test_default_formality_is_not_sent():
    settings = Settings(DEEPL_AUTH_KEY="key", FORMALITY="default")
    translator = FakeDeepLTranslator()

    DeepLGateway(settings, translator=translator).translate(
        ["x"], source_language=None, target_language="fr"
    )

    assert "formality" not in translator.requests[0][1]
    assert "glossary" not in translator.requests[0][1]


def test_empty_batch_makes_no_request():
    translator = FakeDeepLTranslator()
    gateway = DeepLGateway(Settings(DEEPL_AUTH_KEY="key"), translator=translator)

    assert gateway.translate([], source_language="en", target_language="de") == []
    assert translator.requests == []


@pytest.mark.parametrize(
    "error, expected",
    [
        (deepl.QuotaExceededException("quota"), QuotaExceeded),
        (deepl.AuthorizationException("bad key"), InvalidRequest),
        (deepl.TooManyRequestsException("slow down"), TransientServiceError),
        (deepl.ConnectionException("reset"), TransientServiceError),
        (deepl.DeepLException("server", http_status_code=503), TransientServiceError),
        (deepl.DeepLException("bad request", http_status_code=400), InvalidRequest),
    ],
)
def test_deepl_errors_are_classified(error, expected):
    gateway = DeepLGateway(
        Settings(DEEPL_AUTH_KEY="key"), translator=FakeDeepLTranslator(error=error)
    )

    with pytest.raises(expected):
        gateway.translate(["x"], source_language="en", target_language="de")


def test_deepl_count_mismatch_is_invalid():
    translator = FakeDeepLTranslator(results=[SimpleNamespace(text="only one")])
    gateway = DeepLGateway(Settings(DEEPL_AUTH_KEY="key"), translator=translator)

    with pytest.raises(InvalidRequest):
        gateway.translate(["a", "b"], source_language="en", target_language="de")


def test_deepl_usage():
    gateway = DeepLGateway(Settings(DEEPL_AUTH_KEY="key"), translator=FakeDeepLTranslator())

    assert gateway.usage() == (1200, 500000)


def test_deepl_requires_a_key():
    with pytest.raises(ConfigurationError):
        DeepLGateway(Settings())


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def make_openai(content):
    completions = FakeCompletions(content)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    gateway = OpenAIGateway(Settings(PROVIDER="openai", OPENAI_API_KEY="sk"), client=client)
    return gateway, completions


def test_openai_translations_are_ordered_by_id():
    payload = {"translations": [{"id": 1, "translated": "zwei"}, {"id": "0", "translated": "eins"}]}
    gateway, completions = make_openai(json.dumps(payload))

    result = gateway.translate(["one", "two"], source_language="en", target_language="de")

    assert result == ["eins", "zwei"]
    sent = json.loads(completions.requests[0]["messages"][1]["content"])
    assert sent["segments"] == [{"id": 0, "text": "one"}, {"id": 1, "text": "two"}]


def test_openai_fenced_json_is_accepted():
    gateway, _ = make_openai('```json\n[{"id": 0, "translated": "eins"}]\n```')

    assert gateway.translate(["one"], source_language="en", target_language="de") == ["eins"]


def test_openai_missing_segments_are_invalid():
    gateway, _ = make_openai('{"translations": []}')

    with pytest.raises(InvalidRequest, match="missing segments 0"):
        gateway.translate(["one"], source_language="en", target_language="de")


def test_openai_invalid_json_is_invalid():
    gateway, _ = make_openai("not json")

    with pytest.raises(InvalidRequest):
        gateway.translate(["one"], source_language="en", target_language="de")


def test_build_gateway_by_name():
    assert isinstance(build_gateway(Settings(PROVIDER="echo")), EchoGateway)
    assert isinstance(build_gateway(Settings(), "mock"), EchoGateway)
    with pytest.raises(ConfigurationError):
        build_gateway(Settings(PROVIDER="deepl"))
    with pytest.raises(ConfigurationError):
        build_gateway(Settings(), "babelfish")


def test_echo_gateway_returns_input():
    assert EchoGateway().translate(["<m1>a</m1>"], source_language=None, target_language="de") == [
        "<m1>a</m1>"
    ]
