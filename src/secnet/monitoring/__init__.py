"""
Anomaly monitoring for SecNet.

This module provides:
- AnomalyMonitor: per (owner, category) access profiling, alerts and insights
- Pure analysis helpers (access pattern, rules, score, risk level)
- MonitorScheduler: cancellable periodic sweep
"""

from .anomaly_monitor import (
    AccessPattern,
    AnomalyMonitor,
    AnomalyThresholds,
    DetectedAnomaly,
    GeneratedInsight,
    ProfileAnalysis,
    TickResult,
    anomaly_score,
    calculate_access_pattern,
    compliance_rate,
    detect_anomalies,
    generate_insights,
    risk_level_for,
)
from .scheduler import DEFAULT_INTERVAL_SECONDS, MonitorScheduler

__all__ = [
    "AccessPattern",
    "AnomalyMonitor",
    "AnomalyThresholds",
    "DetectedAnomaly",
    "GeneratedInsight",
    "ProfileAnalysis",
    "TickResult",
    "anomaly_score",
    "calculate_access_pattern",
    "compliance_rate",
    "detect_anomalies",
    "generate_insights",
    "risk_level_for",

    "DEFAULT_INTERVAL_SECONDS",
    "MonitorScheduler",
]
