"""API key storage handed to provider adapters at construction time."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from dotenv import get_key, set_key

from draftmate.model.ai import ProviderType

SECRET_NAMES: dict[ProviderType, str] = {
    ProviderType.CLAUDE: "ANTHROPIC_API_KEY",
    ProviderType.GEMINI: "GEMINI_API_KEY",
    ProviderType.OPENAI: "OPENAI_API_KEY",
}


class SecretStore(Protocol):
    def save(self, key: str, provider: ProviderType) -> None: ...

    def retrieve(self, provider: ProviderType) -> str | None: ...


class InMemorySecretStore:
    """プロセス内だけで保持するストア（テスト・一時利用向け）."""

    def __init__(self, initial: dict[ProviderType, str] | None = None) -> None:
        self._keys: dict[ProviderType, str] = dict(initial or {})

    def save(self, key: str, provider: ProviderType) -> None:
        self._keys[provider] = key

    def retrieve(self, provider: ProviderType) -> str | None:
        return self._keys.get(provider)


class DotenvSecretStore:
    """Keeps keys in a dotenv file (``.env.local`` by default).

    Reads fall back to the process environment so keys exported by the shell
    still work.
    """

    def __init__(self, path: str | Path = ".env.local") -> None:
        self.path = Path(path)

    def save(self, key: str, provider: ProviderType) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(mode=0o600)
        set_key(self.path, SECRET_NAMES[provider], key)

    def retrieve(self, provider: ProviderType) -> str | None:
        name = SECRET_NAMES[provider]
        value = get_key(self.path, name) if self.path.exists() else None
        return value or os.getenv(name) or None
