"""
Token Aggregator Service
Aggregates, deduplicates and streams token market data from multiple DEX providers.
"""

__version__ = "1.0.0"
__author__ = "Token Aggregator Team"
__description__ = "Token market data aggregation service with realtime change notifications"
