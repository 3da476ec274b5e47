from __future__ import annotations

import os
from pathlib import Path
from typing import Final, Literal


_ENV_PRIORITY = (".env.local", ".env.production", ".env.development", ".env.test")

_ENV_PREFIX = "CHUTES_MEDIA_"

ResourceType = Literal[
    "textGeneration",
    "imageGeneration",
    "videoGeneration",
    "audioGeneration",
    "textToSpeech",
    "speechToText",
    "inference",
    "embeddings",
    "musicGeneration",
    "contentModeration",
]

# Standard chute subdomains per resource type.
_CHUTE_SUBDOMAINS: Final[dict[str, str]] = {
    "textGeneration": "llm",
    "imageGeneration": "image",
    "videoGeneration": "video",
    "audioGeneration": "audio",
    "textToSpeech": "audio",
    "speechToText": "stt",
    "inference": "llm",
    "embeddings": "llm",
    "musicGeneration": "audio",
    "contentModeration": "llm",
}

_DEFAULT_SUBDOMAIN: Final[str] = "llm"


def get_prefixed_env(name: str) -> str | None:
    return os.environ.get(f"{_ENV_PREFIX}{name}")


def _parse_env_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    if "=" not in stripped:
        return None
    key, value = stripped.split("=", 1)
    key = key.strip()
    value = value.strip()
    if not key:
        return None
    if (value.startswith("'") and value.endswith("'")) or (
        value.startswith('"') and value.endswith('"')
    ):
        value = value[1:-1]
    return key, value


def load_env_files(root: str | Path | None = None) -> list[Path]:
    """
    Load env files by priority:
    `.env.local > .env.production > .env.development > .env.test`.

    Implementation: apply higher priority first without overriding existing env.
    """
    base = Path(root) if root is not None else Path.cwd()
    loaded: list[Path] = []
    for name in _ENV_PRIORITY:
        path = base / name
        if not path.is_file():
            continue
        loaded.append(path)
        for line in path.read_text(encoding="utf-8").splitlines():
            parsed = _parse_env_line(line)
            if parsed is None:
                continue
            key, value = parsed
            os.environ.setdefault(key, value)
    return loaded


def get_api_key() -> str | None:
    value = get_prefixed_env("API_KEY") or os.environ.get("CHUTES_API_KEY")
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_environment() -> str:
    raw = (get_prefixed_env("ENVIRONMENT") or "").strip().lower()
    if raw == "sandbox":
        return "sandbox"
    return "production"


def get_default_timeout_ms() -> int:
    raw = get_prefixed_env("TIMEOUT_MS")
    if raw is None:
        return 120_000
    try:
        value = int(raw)
    except ValueError:
        return 120_000
    return max(1, value)


def normalize_base_url(url: str) -> str:
    return url.strip().rstrip("/")


def resolve_chute_base_url(
    resource_type: ResourceType | None = None,
    *,
    custom_url: str | None = None,
    credential_url: str | None = None,
    environment: str | None = None,
) -> str:
    """
    Resolve the chute base URL for a request.

    Priority: explicit chute URL > custom URL stored with the credential >
    the standard `https://{subdomain}.chutes.ai` host for the resource type.
    """
    if custom_url and custom_url.strip():
        return normalize_base_url(custom_url)
    if credential_url and credential_url.strip():
        return normalize_base_url(credential_url)

    subdomain = _CHUTE_SUBDOMAINS.get(resource_type or "", _DEFAULT_SUBDOMAIN)
    env = environment if environment is not None else get_environment()
    if env == "sandbox":
        return f"https://sandbox-{subdomain}.chutes.ai"
    return f"https://{subdomain}.chutes.ai"
