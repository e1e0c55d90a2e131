# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Data explorer configuration.

Traversal policy constants have fixed defaults. Everything may be
overridden via environment variables.
"""

import os
from typing import Optional


# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("DATAEXPL_HTTP_HOST", "127.0.0.1")
HTTP_PORT: int = int(os.getenv("DATAEXPL_HTTP_PORT", "5658"))

# =============================================================================
# NODE API
# =============================================================================

NODE_API_URL: str = os.getenv("DATAEXPL_NODE_API_URL", "ws://127.0.0.1:1234/rpc/v1")
NODE_API_TOKEN: str = os.getenv("DATAEXPL_NODE_API_TOKEN", "")
NODE_CALL_TIMEOUT_SECONDS: float = float(os.getenv("DATAEXPL_NODE_CALL_TIMEOUT", "30.0"))
# Separate bounds for dialing and pinging a provider peer.
PING_TIMEOUT_SECONDS: float = float(os.getenv("DATAEXPL_PING_TIMEOUT", "1.0"))

# =============================================================================
# RETRIEVAL POLICY
# =============================================================================

RETRIEVAL_TIMEOUT_SECONDS: float = float(os.getenv("DATAEXPL_RETRIEVAL_TIMEOUT", "600.0"))
LOOKUP_CONCURRENCY: int = int(os.getenv("DATAEXPL_LOOKUP_CONCURRENCY", "16"))


def parse_max_price(raw: str) -> Optional[int]:
    """Parse the retrieval price ceiling in attoFIL.

    ``"any"`` is the explicit no-ceiling sentinel and maps to ``None``.
    ``"0"`` means free retrievals only.
    """
    value = raw.strip().lower()
    if value == "any":
        return None
    try:
        price = int(value)
    except ValueError as exc:
        raise ValueError(f"DATAEXPL_MAX_PRICE must be an integer or 'any', got {raw!r}") from exc
    if price < 0:
        raise ValueError(f"DATAEXPL_MAX_PRICE must not be negative, got {price}")
    return price


MAX_PRICE: Optional[int] = parse_max_price(os.getenv("DATAEXPL_MAX_PRICE", "0"))

# =============================================================================
# TRAVERSAL POLICY
# =============================================================================

TYPE_CHECK_DEPTH: int = int(os.getenv("DATAEXPL_TYPE_CHECK_DEPTH", "15"))
MAX_DIR_TYPE_CHECKS: int = int(os.getenv("DATAEXPL_MAX_DIR_TYPE_CHECKS", "16"))

# =============================================================================
# ARCHIVE LIMITS
# =============================================================================

ARCHIVE_MAX_SIZE_BYTES: int = int(os.getenv("DATAEXPL_ARCHIVE_MAX_SIZE_BYTES", str(256 * 1024 * 1024)))
EXPORT_CHUNK_SIZE: int = int(os.getenv("DATAEXPL_EXPORT_CHUNK_SIZE", "65536"))

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("DATAEXPL_LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("DATAEXPL_LOG_FORMAT", "json")
