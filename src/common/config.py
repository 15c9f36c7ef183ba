# src/common/config.py

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Self

from common.errors import ConfigError


ENV_PREFIX = "VERIFAI_"


def _get_env_str(name: str, default: str) -> str:
    value = os.getenv(ENV_PREFIX + name)
    return value if value is not None else default


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    value_lower = value.lower()
    if value_lower in ("1", "true", "yes", "y", "on"):
        return True
    if value_lower in ("0", "false", "no", "n", "off"):
        return False
    return default


def _get_env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """
    Central configuration for the verifiable inference worker.

    Defaults can be overridden via environment variables:
    - Prefix: VERIFAI_
    - Example: VERIFAI_POLL_INTERVAL_MS=10000

    PRIVATE_KEY, CONTRACT_ADDRESS and PROVIDER_API_KEY have no usable default;
    `validate()` refuses to start the worker without them.
    """

    # --- Ledger ---
    PRIVATE_KEY: str = ""
    CONTRACT_ADDRESS: str = ""
    RPC_URL: str = "https://evmrpc-testnet.0g.ai"
    RPC_TIMEOUT_MS: int = 15_000
    RECEIPT_TIMEOUT_MS: int = 120_000
    POLL_INTERVAL_MS: int = 5_000

    # --- Inference provider ---
    PROVIDER_API_KEY: str = ""
    PROVIDER_BASE_URL: str = "https://api.groq.com/openai/v1"
    DEFAULT_MODEL: str = "llama3-8b-8192"
    MAX_OUTPUT_TOKENS: int = 1_024
    TEMPERATURE: float = 0.7
    PROVIDER_TIMEOUT_MS: int = 60_000
    PROVIDER_MAX_ATTEMPTS: int = 3

    # --- Content-addressed storage ---
    # Empty disables publication (every request gets a FALLBACK: pointer).
    # The endpoint must speak the /file/info, /file/upload, /download indexer
    # protocol and accept the root computed by clients.storage_client.merkle_root.
    STORAGE_ENDPOINT: str = ""
    FLOW_CONTRACT_ADDRESS: str = ""
    STORAGE_TIMEOUT_MS: int = 30_000
    STORAGE_MAX_ATTEMPTS: int = 2

    # --- Prompt registry bridge (HTTP) ---
    WORKER_HOST: str = "0.0.0.0"
    WORKER_PORT: int = 3001
    CORS_ALLOW_ORIGINS: List[str] = field(default_factory=lambda: ["*"])
    ENCRYPTION_ENABLED: bool = True
    VERIFY_PROMPT_HASH: bool = False
    PROMPT_WAIT_ATTEMPTS: int = 3
    PROMPT_WAIT_INTERVAL_MS: int = 1_000

    # --- Pipeline / store ---
    STORE_PATH: str = "verifai_state.sqlite3"
    WORKER_CONCURRENCY: int = 4
    QUEUE_MAX_SIZE: int = 1_000
    RETRY_BACKOFF_BASE_MS: int = 5_000
    RETRY_BACKOFF_MAX_MS: int = 300_000

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    STRICT_NO_LOGGING_MODE: bool = False

    @classmethod
    def from_env(cls) -> Self:
        """
        Construct a Config object, overriding defaults with environment variables.

        Environment variable names are prefixed with VERIFAI_ and match field names.
        Example: VERIFAI_DEFAULT_MODEL=llama-3.1-8b-instant
        """

        default_origins = cls().CORS_ALLOW_ORIGINS

        return cls(
            # --- Ledger ---
            PRIVATE_KEY=_get_env_str("PRIVATE_KEY", cls.PRIVATE_KEY),
            CONTRACT_ADDRESS=_get_env_str("CONTRACT_ADDRESS", cls.CONTRACT_ADDRESS),
            RPC_URL=_get_env_str("RPC_URL", cls.RPC_URL),
            RPC_TIMEOUT_MS=_get_env_int("RPC_TIMEOUT_MS", cls.RPC_TIMEOUT_MS),
            RECEIPT_TIMEOUT_MS=_get_env_int("RECEIPT_TIMEOUT_MS", cls.RECEIPT_TIMEOUT_MS),
            POLL_INTERVAL_MS=_get_env_int("POLL_INTERVAL_MS", cls.POLL_INTERVAL_MS),

            # --- Inference provider ---
            PROVIDER_API_KEY=_get_env_str("PROVIDER_API_KEY", cls.PROVIDER_API_KEY),
            PROVIDER_BASE_URL=_get_env_str("PROVIDER_BASE_URL", cls.PROVIDER_BASE_URL),
            DEFAULT_MODEL=_get_env_str("DEFAULT_MODEL", cls.DEFAULT_MODEL),
            MAX_OUTPUT_TOKENS=_get_env_int("MAX_OUTPUT_TOKENS", cls.MAX_OUTPUT_TOKENS),
            TEMPERATURE=_get_env_float("TEMPERATURE", cls.TEMPERATURE),
            PROVIDER_TIMEOUT_MS=_get_env_int("PROVIDER_TIMEOUT_MS", cls.PROVIDER_TIMEOUT_MS),
            PROVIDER_MAX_ATTEMPTS=_get_env_int("PROVIDER_MAX_ATTEMPTS", cls.PROVIDER_MAX_ATTEMPTS),

            # --- Content-addressed storage ---
            STORAGE_ENDPOINT=_get_env_str("STORAGE_ENDPOINT", cls.STORAGE_ENDPOINT),
            FLOW_CONTRACT_ADDRESS=_get_env_str("FLOW_CONTRACT_ADDRESS", cls.FLOW_CONTRACT_ADDRESS),
            STORAGE_TIMEOUT_MS=_get_env_int("STORAGE_TIMEOUT_MS", cls.STORAGE_TIMEOUT_MS),
            STORAGE_MAX_ATTEMPTS=_get_env_int("STORAGE_MAX_ATTEMPTS", cls.STORAGE_MAX_ATTEMPTS),

            # --- Prompt registry bridge ---
            WORKER_HOST=_get_env_str("WORKER_HOST", cls.WORKER_HOST),
            WORKER_PORT=_get_env_int("WORKER_PORT", cls.WORKER_PORT),
            CORS_ALLOW_ORIGINS=_get_env_list("CORS_ALLOW_ORIGINS", default_origins),
            ENCRYPTION_ENABLED=_get_env_bool("ENCRYPTION_ENABLED", cls.ENCRYPTION_ENABLED),
            VERIFY_PROMPT_HASH=_get_env_bool("VERIFY_PROMPT_HASH", cls.VERIFY_PROMPT_HASH),
            PROMPT_WAIT_ATTEMPTS=_get_env_int("PROMPT_WAIT_ATTEMPTS", cls.PROMPT_WAIT_ATTEMPTS),
            PROMPT_WAIT_INTERVAL_MS=_get_env_int("PROMPT_WAIT_INTERVAL_MS", cls.PROMPT_WAIT_INTERVAL_MS),

            # --- Pipeline / store ---
            STORE_PATH=_get_env_str("STORE_PATH", cls.STORE_PATH),
            WORKER_CONCURRENCY=_get_env_int("WORKER_CONCURRENCY", cls.WORKER_CONCURRENCY),
            QUEUE_MAX_SIZE=_get_env_int("QUEUE_MAX_SIZE", cls.QUEUE_MAX_SIZE),
            RETRY_BACKOFF_BASE_MS=_get_env_int("RETRY_BACKOFF_BASE_MS", cls.RETRY_BACKOFF_BASE_MS),
            RETRY_BACKOFF_MAX_MS=_get_env_int("RETRY_BACKOFF_MAX_MS", cls.RETRY_BACKOFF_MAX_MS),

            # --- Logging ---
            LOG_LEVEL=_get_env_str("LOG_LEVEL", cls.LOG_LEVEL),
            STRICT_NO_LOGGING_MODE=_get_env_bool("STRICT_NO_LOGGING_MODE", cls.STRICT_NO_LOGGING_MODE),
        )

    def validate(self) -> None:
        """
        Raise ConfigError naming every required setting that is missing.
        """
        missing = [
            ENV_PREFIX + name
            for name in ("PRIVATE_KEY", "CONTRACT_ADDRESS", "PROVIDER_API_KEY")
            if not getattr(self, name).strip()
        ]
        if missing:
            raise ConfigError(f"Missing required env vars: {', '.join(missing)}")


# Global config instance used for logging and as the server's default
config = Config.from_env()
