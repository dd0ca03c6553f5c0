import pytest

from cmark_translate.configuration import (
    Settings,
    load_settings,
    validate_provider_settings,
)
from cmark_translate.errors import ConfigurationError


def test_defaults(clean_environment):
    settings = load_settings(app_dir=clean_environment)

    assert settings.PROVIDER == "deepl"
    assert settings.MAX_BATCH_CHARS == 30000
    assert settings.MAX_BATCH_UNITS == 50
    assert settings.ON_MALFORMED == "fallback"
    assert settings.RETRY_BACKOFF == [1.0, 4.0, 9.0]
    assert settings.TRANSLATE_FRONT_MATTER is False


def test_environment_overrides(clean_environment, monkeypatch):
    monkeypatch.setenv("CMARK_TRANSLATE_PROVIDER", "GPT")
    monkeypatch.setenv("CMARK_TRANSLATE_CONCURRENCY", "8")
    monkeypatch.setenv("CMARK_TRANSLATE_RETRY_BACKOFF", "1, 2.5")
    monkeypatch.setenv("CMARK_TRANSLATE_GLOSSARIES", "en_de=abc, en_fr=def")
    monkeypatch.setenv("CMARK_TRANSLATE_TRANSLATE_FRONT_MATTER", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("CMARK_TRANSLATE_UNKNOWN", "ignored")

    settings = load_settings(app_dir=clean_environment)

    assert settings.PROVIDER == "openai"
    assert settings.CONCURRENCY == 8
    assert settings.RETRY_BACKOFF == [1.0, 2.5]
    assert settings.GLOSSARIES == {"en_de": "abc", "en_fr": "def"}
    assert settings.TRANSLATE_FRONT_MATTER is True
    assert settings.OPENAI_API_KEY == "sk-test"


def test_yaml_file_then_dotenv_then_environment(clean_environment, monkeypatch):
    (clean_environment / "cmark-translate.yaml").write_text(
        "provider: openai\nmax_batch_units: 10\nconcurrency: 2\nglossaries:\n  en_de: g1\n",
        encoding="utf-8",
    )
    (clean_environment / ".env").write_text(
        "CMARK_TRANSLATE_MAX_BATCH_UNITS=20\nCMARK_TRANSLATE_CONCURRENCY=3\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CMARK_TRANSLATE_CONCURRENCY", "5")

    settings = load_settings(app_dir=clean_environment)

    assert settings.PROVIDER == "openai"
    assert settings.MAX_BATCH_UNITS == 20
    assert settings.CONCURRENCY == 5
    assert settings.glossary_for("EN", "DE") == "g1"
    assert settings.glossary_for(None, "de") is None


def test_explicit_config_file_beats_discovered_files(clean_environment):
    (clean_environment / "cmark-translate.yaml").write_text("formality: less\n", encoding="utf-8")
    explicit = clean_environment / "custom.yaml"
    explicit.write_text("formality: more\n", encoding="utf-8")

    settings = load_settings(config_path=explicit, app_dir=clean_environment)

    assert settings.FORMALITY == "more"


def test_home_config_is_discovered(clean_environment):
    config_dir = clean_environment / "home" / ".config" / "cmark-translate"
    config_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text("on_malformed: abort\n", encoding="utf-8")

    assert load_settings(app_dir=clean_environment).ON_MALFORMED == "abort"


def test_overrides_skip_none_values(clean_environment):
    settings = load_settings(
        app_dir=clean_environment, overrides={"PROVIDER": "echo", "FORMALITY": None}
    )

    assert settings.PROVIDER == "echo"
    assert settings.FORMALITY == "prefer_less"


def test_invalid_values_are_reported(clean_environment, monkeypatch):
    monkeypatch.setenv("CMARK_TRANSLATE_CONCURRENCY", "0")
    monkeypatch.setenv("CMARK_TRANSLATE_ON_MALFORMED", "explode")

    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(app_dir=clean_environment)

    message = str(excinfo.value)
    assert message.startswith("Configuration validation errors detected:")
    assert "- CONCURRENCY:" in message
    assert "- ON_MALFORMED:" in message


def test_invalid_yaml_is_reported(clean_environment):
    broken = clean_environment / "broken.yaml"
    broken.write_text("provider: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="not valid YAML"):
        load_settings(config_path=broken, app_dir=clean_environment)


def test_missing_config_file(clean_environment):
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(config_path=clean_environment / "nope.yaml", app_dir=clean_environment)


def test_provider_credentials_are_required():
    with pytest.raises(ConfigurationError, match="DEEPL_AUTH_KEY"):
        validate_provider_settings(Settings(PROVIDER="deepl"))
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        validate_provider_settings(Settings(PROVIDER="openai"))
    validate_provider_settings(Settings(PROVIDER="echo"))


def test_glossary_keys_ignore_case(clean_environment):
    (clean_environment / "cmark-translate.yaml").write_text(
        "glossaries:\n  EN_DE: g1\n", encoding="utf-8"
    )

    settings = load_settings(app_dir=clean_environment)

    assert settings.glossary_for("en", "DE") == "g1"
    assert Settings(GLOSSARIES="En_Fr=g2").glossary_for("EN", "fr") == "g2"
