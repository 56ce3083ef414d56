"""Routes package for DeFairy."""
from defairy.routes.rebalance_routes import rebalance_bp, init_rebalance_routes

__all__ = ['rebalance_bp', 'init_rebalance_routes']
