"""
AeroLink Metrics Module

Normalized channel observations and advisory link prediction.
"""

from .collector import (
    ChannelObservation,
    Forecast,
    Predictor,
    LinearPredictor,
    MetricsCollector,
)

__all__ = [
    'ChannelObservation',
    'Forecast',
    'Predictor',
    'LinearPredictor',
    'MetricsCollector',
]
