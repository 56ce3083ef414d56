"""DeFairy services: audit trail, notifications, price history and the rebalancing engine."""
