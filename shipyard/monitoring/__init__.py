"""Monitoring - Prometheus metrics"""

from .metrics import PipelineMetrics

__all__ = ["PipelineMetrics"]
