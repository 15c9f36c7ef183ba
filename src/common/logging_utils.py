# src/common/logging_utils.py

"""
Privacy-preserving logging utilities for the verifiable inference worker.

This module ensures:
- No prompt, decrypted plaintext, model output or key material is ever logged.
- Logs are structured as key=value pairs.
- Only metadata (request_id, node_id, stage, hashes, pointers, timing) is logged.
- Logging level is controlled by config.LOG_LEVEL.
- STRICT_NO_LOGGING_MODE from config acts as a global privacy lever.

We use a very lightweight wrapper on top of Python's standard logging module.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Dict, Any

from common.config import config


# -------------------------------------------------------------------------
# Logger Initialization
# -------------------------------------------------------------------------

def _initialize_logger() -> logging.Logger:
    """
    Initializes a logger with stdout handler and configurable log level.
    Logs are formatted as: timestamp level message key=value key=value ...
    """
    logger = logging.getLogger("verifai")

    # Allow LOG_LEVEL to be a string like "INFO", "DEBUG", etc.
    level = getattr(logging, config.LOG_LEVEL.upper(), None)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler.setFormatter(formatter)

    # Avoid multiple handlers if this is re-imported
    if not logger.handlers:
        logger.addHandler(handler)

    logger.propagate = False
    return logger


_logger = _initialize_logger()


# -------------------------------------------------------------------------
# Privacy-aware sanitization
# -------------------------------------------------------------------------

# Keys that should never be logged
SENSITIVE_KEYS = {
    "prompt",
    "raw_prompt",
    "prompt_text",
    "plaintext",
    "decrypted",
    "output",
    "output_text",
    "raw_output",
    "response",
    "raw_response",
    "package",
    "private_key",
    "api_key",
    "ciphertext",
    "iv",
    "mac",
    "ephem_public_key",
}


def _sanitize_extra(extra: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Sanitize extra metadata fields before logging.

    Rules:
    - Drop known sensitive keys (SENSITIVE_KEYS) always.
    - In STRICT_NO_LOGGING_MODE drop very long string values
      (heuristic against content leakage).
    - Always coerce values to strings.
    """
    if not extra:
        return {}

    cleaned: Dict[str, str] = {}

    for key, value in extra.items():
        k = str(key)

        if k in SENSITIVE_KEYS:
            continue

        if config.STRICT_NO_LOGGING_MODE and isinstance(value, str) and len(value) > 256:
            continue

        cleaned[k] = str(value)

    return cleaned


def _level_to_int(level: str) -> int:
    lvl = level.lower()
    if lvl == "info":
        return logging.INFO
    if lvl == "warning":
        return logging.WARNING
    if lvl == "error":
        return logging.ERROR
    if lvl == "debug":
        return logging.DEBUG
    return logging.INFO


# -------------------------------------------------------------------------
# Sanitized logging function
# -------------------------------------------------------------------------

def log_event(
    message: str,
    *,
    request_id: Optional[int] = None,
    node_id: Optional[str] = None,
    error: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    level: str = "info",
    exc_info: bool = False,
):
    """
    Logs a sanitized, structured message with no sensitive data.

    Rules:
    - Do NOT log prompts, decrypted plaintext or model output.
    - Only log metadata: request_id, node_id, stage, hashes, pointers, timing.
    - extra={} can include additional safe metadata (never content).

    Examples:
        log_event(
            "worker_started",
            node_id="0xabc...",
            extra={"port": 3001},
        )

        log_event(
            "publication_degraded",
            request_id=7,
            error="StorageError('indexer unreachable')",
            extra={"pointer": "FALLBACK:0x1234"},
            level="warning",
        )
    """

    fields = []

    # request_id 0 is a valid on-chain identifier
    if request_id is not None:
        fields.append(f"request_id={request_id}")

    if node_id:
        fields.append(f"node_id={node_id}")

    if error:
        fields.append(f"error={error}")

    safe_extra = _sanitize_extra(extra)
    for k, v in safe_extra.items():
        fields.append(f"{k}={v}")

    if config.STRICT_NO_LOGGING_MODE:
        fields.append("strict_no_logging=True")

    full_message = f"{message} " + " ".join(fields)

    _logger.log(_level_to_int(level), full_message, exc_info=exc_info)
