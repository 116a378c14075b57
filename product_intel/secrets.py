import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import AppSettings
from .errors import ConfigurationError

logger = logging.getLogger("uvicorn.error")

MODEL_API_KEY = "OPENAI_API_KEY"
SEARCH_API_KEY = "SERPAPI_KEY"

# Secret name -> AppSettings attribute.
SETTINGS_FIELDS: Dict[str, str] = {
    MODEL_API_KEY: "model_api_key",
    SEARCH_API_KEY: "serpapi_api_key",
}


class EnvSecretProvider:
    name = "env"

    def get(self, secret_name: str) -> Optional[str]:
        value = os.getenv(secret_name)
        return value.strip() if value and value.strip() else None


class SettingsSecretProvider:
    name = "settings"

    def __init__(self, settings: AppSettings):
        self.settings = settings

    def get(self, secret_name: str) -> Optional[str]:
        field = SETTINGS_FIELDS.get(secret_name)
        if not field:
            return None
        value = getattr(self.settings, field, None)
        return str(value).strip() if value and str(value).strip() else None


class DirectorySecretProvider:
    """One file per secret, named after the secret (Docker/Kubernetes style mounts)."""

    name = "directory"

    def __init__(self, secrets_dir: Optional[str]):
        self.secrets_dir = Path(secrets_dir) if secrets_dir else None

    def get(self, secret_name: str) -> Optional[str]:
        if self.secrets_dir is None:
            return None
        path = self.secrets_dir / secret_name
        if not path.is_file():
            return None
        try:
            value = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("Could not read secret file %s: %s", path, exc)
            return None
        return value or None


class SecretResolver:
    """Tries each provider in order; the first non-empty value wins."""

    def __init__(self, providers: Iterable):
        self.providers: List = list(providers)

    def lookup(self, secret_name: str) -> Optional[str]:
        for provider in self.providers:
            value = provider.get(secret_name)
            if value:
                return value
        return None

    def resolve(self, secret_name: str) -> str:
        value = self.lookup(secret_name)
        if not value:
            tried = ", ".join(getattr(p, "name", type(p).__name__) for p in self.providers)
            raise ConfigurationError(f"{secret_name} is not configured (checked: {tried})")
        return value


def default_resolver(settings: AppSettings) -> SecretResolver:
    return SecretResolver(
        [
            EnvSecretProvider(),
            SettingsSecretProvider(settings),
            DirectorySecretProvider(settings.secrets_dir),
        ]
    )
