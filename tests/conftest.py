import json
from unittest.mock import Mock

import pytest
from requests.structures import CaseInsensitiveDict

from draftmate.api.services.secrets import InMemorySecretStore
from draftmate.model.ai import ProviderType


class FakeClock:
    """テスト用の手動で進める時計"""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_response(status_code=200, payload=None, headers=None, lines=None):
    response = Mock()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(headers or {})
    body = b"" if payload is None else json.dumps(payload).encode("utf-8")
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    response.iter_content.side_effect = lambda *args, **kwargs: iter([body])
    response.iter_lines.return_value = iter(lines or [])
    return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    """HTTPセッションのモック"""
    return Mock()


@pytest.fixture
def secret_store():
    """全プロバイダのキーが入ったストア"""
    return InMemorySecretStore(
        {
            ProviderType.CLAUDE: "sk-ant-test",
            ProviderType.GEMINI: "gemini-test",
            ProviderType.OPENAI: "sk-openai-test",
        }
    )


@pytest.fixture
def empty_secret_store():
    return InMemorySecretStore()


@pytest.fixture
def make_response():
    """requests.Response 相当のモックを作るファクトリ"""
    return _make_response
