"""Tool-chain orchestration agent package."""

from .config import ChainConfig, StoreConfig

__all__ = ["ChainConfig", "StoreConfig"]
