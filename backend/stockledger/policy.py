from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class LedgerPolicy:
    """Knobs the inventory commands honor; built from app config or passed directly."""

    allow_negative_stock: bool = False
    retry_attempts: int = 3
    retry_backoff_base: float = 0.1

    @classmethod
    def from_config(cls, config: Mapping) -> "LedgerPolicy":
        return cls(
            allow_negative_stock=bool(config.get("ALLOW_NEGATIVE_STOCK", False)),
            retry_attempts=int(config.get("RETRY_ATTEMPTS", 3)),
            retry_backoff_base=float(config.get("RETRY_BACKOFF_BASE", 0.1)),
        )


DEFAULT_POLICY = LedgerPolicy()
