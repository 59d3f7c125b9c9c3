"""
Observability module for the achievement engine.

This module provides:
- Metrics collection with Prometheus
"""

__all__ = ["metrics"]
