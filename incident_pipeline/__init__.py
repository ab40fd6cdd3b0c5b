"""
Incident Pipeline

Tiered, resilient job processing for safety-incident reports: classification,
priority queues with an in-process fallback, per-tier worker pools, a circuit
breaker guarding the broker and an emergency direct path.
"""

__version__ = "1.0.0"
