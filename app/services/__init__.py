"""
Services module for settlement business logic.

This module organizes services into:
- core: Sport-agnostic helpers (parlay payout math, circuit breakers)
- scoring: Live scoring feed gateways
- settlement: Round detection, result ingestion, settlement and the pipeline orchestrator
"""
