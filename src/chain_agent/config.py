"""Configuration models for the tool-chain engine."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class ChainConfig(BaseModel):
    """Configures chain length, planner budget and execution limits."""

    max_chain_length: int = Field(default=12, ge=1, le=50)
    planner_round_trip_factor: int = Field(default=3, ge=1)
    tool_timeout_seconds: float = Field(default=20.0, gt=0.0)
    fan_out_max_workers: int = Field(default=4, ge=1)
    result_preview_chars: int = Field(default=320, ge=40)

    @property
    def max_planner_round_trips(self) -> int:
        return self.planner_round_trip_factor * self.max_chain_length

    @classmethod
    def from_env(cls) -> "ChainConfig":
        """Build a config from `CHAIN_*` environment variables."""
        overrides: dict[str, str] = {}
        for name in cls.model_fields:
            value = os.getenv(f"CHAIN_{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls.model_validate(overrides)


class StoreConfig(BaseModel):
    """Configures the conversation store used by the built-in tools."""

    sqlite_path: str = Field(default="chain_agent.db", min_length=1)
    max_messages: int = Field(default=50, ge=1, le=500)
    list_limit: int = Field(default=5, ge=1, le=50)
