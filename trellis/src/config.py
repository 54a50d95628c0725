"""Runtime configuration for the Trellis service.

Settings live in one dataclass with dict serialization. A JSON file may
override any subset of the defaults; a key the dataclass does not know
is rejected so that typos never pass silently.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shared.hardening import RetryConfig
from trellis.src.errors import StoreUnavailableError
from trellis.src.linearizer import LinearizerConfig

logger = logging.getLogger(__name__)


def _store_retry() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        base_delay=0.05,
        max_delay=1.0,
        retryable_exceptions=(StoreUnavailableError,),
    )


@dataclass
class TrellisConfig:
    """Service configuration.

    Attributes:
        db_path: SQLite database file, or ':memory:'.
        host: Interface the HTTP server binds to.
        port: HTTP port.
        retry: Retry policy for transient store failures.
        lock_timeout_seconds: Longest wait for a sibling group lock.
        leaf_label: Word printed before a paragraph's number.
        citation_label: Word printed before a reference's number.
        allowed_origins: CORS origins accepted by the server.
    """

    db_path: str = "data/trellis/trellis.db"
    host: str = "127.0.0.1"
    port: int = 8420
    retry: RetryConfig = field(default_factory=_store_retry)
    lock_timeout_seconds: float = 10.0
    leaf_label: str = "Paragraph"
    citation_label: str = "Reference"
    allowed_origins: list[str] = field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )

    def __post_init__(self) -> None:
        if isinstance(self.db_path, Path):
            self.db_path = str(self.db_path)
        if self.port <= 0 or self.port > 65535:
            raise ValueError(f"port must be in 1..65535, got {self.port}")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")

    def linearizer_config(self) -> LinearizerConfig:
        """Linearizer settings derived from the label words."""
        return LinearizerConfig(leaf_label=self.leaf_label, citation_label=self.citation_label)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "db_path": self.db_path,
            "host": self.host,
            "port": self.port,
            "retry": self.retry.to_dict(),
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "leaf_label": self.leaf_label,
            "citation_label": self.citation_label,
            "allowed_origins": list(self.allowed_origins),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrellisConfig:
        """Deserialize from dictionary; missing keys keep their defaults.

        Raises:
            ValueError: If *data* contains keys this class does not define.
        """
        unknown = sorted(set(data) - set(cls().to_dict()))
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

        defaults = cls()
        retry_data = data.get("retry", {})
        unknown_retry = sorted(set(retry_data) - set(defaults.retry.to_dict()))
        if unknown_retry:
            raise ValueError(f"Unknown retry keys: {', '.join(unknown_retry)}")
        retry = _store_retry()
        retry.max_attempts = retry_data.get("max_attempts", retry.max_attempts)
        retry.base_delay = retry_data.get("base_delay", retry.base_delay)
        retry.max_delay = retry_data.get("max_delay", retry.max_delay)
        retry.exponential_backoff = retry_data.get(
            "exponential_backoff", retry.exponential_backoff
        )

        return cls(
            db_path=data.get("db_path", defaults.db_path),
            host=data.get("host", defaults.host),
            port=data.get("port", defaults.port),
            retry=retry,
            lock_timeout_seconds=data.get("lock_timeout_seconds", defaults.lock_timeout_seconds),
            leaf_label=data.get("leaf_label", defaults.leaf_label),
            citation_label=data.get("citation_label", defaults.citation_label),
            allowed_origins=list(data.get("allowed_origins", defaults.allowed_origins)),
        )


def load_config(path: str | Path | None = None) -> TrellisConfig:
    """Load configuration from a JSON file.

    Args:
        path: JSON file to read, or None for the defaults.

    Returns:
        TrellisConfig instance.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the file is not a JSON object or has unknown keys.
    """
    if path is None:
        return TrellisConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a JSON object")
    config = TrellisConfig.from_dict(data)
    logger.info("Loaded configuration from %s", config_path)
    return config
