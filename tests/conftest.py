from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from cmark_translate.configuration import Settings
from cmark_translate.providers import TranslationGateway
from cmark_translate.structures import Element, NodeKind, Text


class FakeGateway(TranslationGateway):
    """Deterministic in-memory gateway that records every request."""

    name = "fake"

    def __init__(
        self,
        transform: Optional[Callable[[str], str]] = None,
        failures: Sequence[Exception] = (),
    ) -> None:
        self.transform = transform or (lambda text: text)
        self.failures = list(failures)
        self.calls: List[List[str]] = []
        self.closed = False
        self._lock = threading.Lock()

    def translate(self, texts, *, source_language, target_language):
        with self._lock:
            self.calls.append(list(texts))
            failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure
        return [self.transform(text) for text in texts]

    def close(self) -> None:
        self.closed = True

    @property
    def submitted(self) -> List[str]:
        return [text for call in self.calls for text in call]


@pytest.fixture
def fake_gateway_factory():
    return FakeGateway


@pytest.fixture
def settings() -> Settings:
    return Settings(PROVIDER="echo", RETRY_BACKOFF=[0.5, 2.0])


@pytest.fixture
def clean_environment(monkeypatch, tmp_path):
    """Isolate configuration discovery from the developer's machine."""

    import os

    for key in list(os.environ):
        if key.startswith("CMARK_TRANSLATE_") or key in {
            "DEEPL_AUTH_KEY",
            "DEEPL_SERVER_URL",
            "OPENAI_API_KEY",
        }:
            monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))
    monkeypatch.chdir(tmp_path)
    return tmp_path


def paragraph(*children) -> Element:
    return Element(NodeKind.PARAGRAPH, list(children))


def text(value: str) -> Text:
    return Text(value)


def element(kind: NodeKind, *children, **attrs) -> Element:
    return Element(kind, list(children), dict(attrs))


def document(*blocks) -> Element:
    return Element(NodeKind.DOCUMENT, list(blocks))
