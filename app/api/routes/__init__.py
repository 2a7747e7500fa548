"""
API routes for the settlement service.

This module organizes routes into:
- pipeline: Automation lifecycle for the settlement pipeline (/api/v1/automation)
- settlement: Manual detection, ingestion and settlement of single rounds (/api/v1)
- matchup_results: Canonical matchup results, listing and manual entry (/api/v1)
- admin: Correction workflows such as settlement reversal (/api/admin)
"""
