"""DeFairy: smart auto-rebalancing for Solana LP positions."""

__version__ = "0.1.0"
