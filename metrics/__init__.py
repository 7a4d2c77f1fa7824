"""
Metrics collection and export for Slipway.
"""

from .exporter import MetricsExporter

__all__ = ['MetricsExporter']
