"""
Anomaly Monitor

Passive monitoring of how an owner's data is being requested. For each
active (owner, category) profile the monitor reads the consent requests
created in the last 24 hours, derives an access pattern, raises alerts for
unusual behaviour and scores the profile.

Rules (defaults in AnomalyThresholds):
- more than 5 requests in the window        -> unusual_access / warning
- estimated volume above 1000 MB             -> data_breach / error
- any request before 06:00 or after 22:00    -> unusual_access / warning
- denied ratio above 10%                     -> consent_violation / error

Score = sum of severity weights, +15 above 10 requests, +20 above 2000 MB,
capped at 100. Risk level steps at 50 / 75 / 90.

Usage:
    monitor = AnomalyMonitor(SessionLocal, ledger, notifier)
    monitor.monitor_user("0xabc", "medical")
    monitor.monitor_tick()            # sweep every active profile
    monitor.get_user_summary("0xabc")
"""

import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.exc import IntegrityError

from ..consent import ConsentRequest, parse_enum
from ..database import (
    AlertSeverity,
    AlertType,
    AnomalyAlert,
    AnomalyInsight,
    AnomalyProfile,
    ConsentStatus,
    DataCategory,
    InsightType,
    RiskLevel,
)
from ..errors import Forbidden, NotFound
from ..notifications import NotificationSink, notify

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS = {
    AlertSeverity.CRITICAL: 30,
    AlertSeverity.ERROR: 20,
    AlertSeverity.WARNING: 10,
    AlertSeverity.INFO: 5,
}

RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]

MAX_SCORE = 100


@dataclass
class AnomalyThresholds:
    frequency: int = 5
    data_volume_mb: float = 1000.0
    earliest_hour: int = 6
    latest_hour: int = 22
    denied_ratio: float = 0.1
    high_frequency: int = 10
    high_volume_mb: float = 2000.0
    window: timedelta = timedelta(hours=24)
    volume_per_request_mb: float = 75.0
    minutes_per_request: float = 25.0
    compliance_floor: float = 80.0


@dataclass
class AccessPattern:
    requester: Optional[str] = None
    frequency: int = 0
    hours_of_day: List[int] = field(default_factory=list)
    days_of_week: List[int] = field(default_factory=list)
    data_volume: float = 0.0
    access_duration: float = 0.0


@dataclass
class DetectedAnomaly:
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratedInsight:
    insight_type: InsightType
    title: str
    description: str
    confidence: int


@dataclass
class ProfileAnalysis:
    """Outcome of analyzing one profile."""
    owner: str
    category: DataCategory
    pattern: AccessPattern
    anomaly_score: int
    risk_level: RiskLevel
    compliance_rate: float
    anomalies: List[DetectedAnomaly] = field(default_factory=list)
    insights: List[GeneratedInsight] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "category": self.category.value,
            "anomaly_score": self.anomaly_score,
            "risk_level": self.risk_level.value,
            "consent_compliance_rate": self.compliance_rate,
            "access_pattern": {
                "requester": self.pattern.requester,
                "frequency": self.pattern.frequency,
                "hours_of_day": self.pattern.hours_of_day,
                "days_of_week": self.pattern.days_of_week,
                "data_volume": self.pattern.data_volume,
                "access_duration": self.pattern.access_duration,
            },
            "alerts": [
                {"type": a.alert_type.value, "severity": a.severity.value, "message": a.message}
                for a in self.anomalies
            ],
            "insights": [
                {"type": i.insight_type.value, "title": i.title, "confidence": i.confidence}
                for i in self.insights
            ],
        }


@dataclass
class TickResult:
    skipped: bool = False
    analyzed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"skipped": self.skipped, "analyzed": self.analyzed, "failed": self.failed}


# ============================================================================
# Pure analysis
# ============================================================================

def calculate_access_pattern(
    requests: Sequence[ConsentRequest],
    thresholds: AnomalyThresholds,
) -> AccessPattern:
    hours: List[int] = []
    days: List[int] = []
    volume = 0.0
    duration = 0.0

    for request in requests:
        created = request.created_at.astimezone(timezone.utc)
        if created.hour not in hours:
            hours.append(created.hour)
        if created.weekday() not in days:
            days.append(created.weekday())

        # Deterministic estimates, scaled by how many fields the request covers
        weight = max(1, len(request.scope.fields))
        volume += thresholds.volume_per_request_mb * weight
        duration += thresholds.minutes_per_request * weight

    requesters = Counter(r.requester.ens_name or r.requester.address for r in requests)
    top = requesters.most_common(1)

    return AccessPattern(
        requester=top[0][0] if top else None,
        frequency=len(requests),
        hours_of_day=sorted(hours),
        days_of_week=sorted(days),
        data_volume=volume,
        access_duration=duration,
    )


def detect_anomalies(
    pattern: AccessPattern,
    requests: Sequence[ConsentRequest],
    thresholds: AnomalyThresholds,
) -> List[DetectedAnomaly]:
    anomalies = []
    window_hours = int(thresholds.window.total_seconds() // 3600)

    if pattern.frequency > thresholds.frequency:
        anomalies.append(DetectedAnomaly(
            AlertType.UNUSUAL_ACCESS,
            AlertSeverity.WARNING,
            f"Unusual access frequency detected: {pattern.frequency} requests in {window_hours} hours",
            {"normal_range": f"0-{thresholds.frequency}", "detected": pattern.frequency,
             "time_window": f"{window_hours} hours"},
        ))

    if pattern.data_volume > thresholds.data_volume_mb:
        anomalies.append(DetectedAnomaly(
            AlertType.DATA_BREACH,
            AlertSeverity.ERROR,
            f"Large data volume detected: {pattern.data_volume:.2f} MB",
            {"threshold": thresholds.data_volume_mb, "detected": pattern.data_volume},
        ))

    unusual_hours = [h for h in pattern.hours_of_day if h < thresholds.earliest_hour or h > thresholds.latest_hour]
    if unusual_hours:
        anomalies.append(DetectedAnomaly(
            AlertType.UNUSUAL_ACCESS,
            AlertSeverity.WARNING,
            f"Data access detected during unusual hours: {', '.join(str(h) for h in unusual_hours)}",
            {"unusual_hours": unusual_hours,
             "normal_hours": f"{thresholds.earliest_hour}:00 - {thresholds.latest_hour}:00"},
        ))

    if requests:
        denied = sum(1 for r in requests if r.status is ConsentStatus.DENIED)
        ratio = denied / len(requests)
        if ratio > thresholds.denied_ratio:
            anomalies.append(DetectedAnomaly(
                AlertType.CONSENT_VIOLATION,
                AlertSeverity.ERROR,
                f"High consent violation rate: {ratio * 100:.1f}%",
                {"total_requests": len(requests), "denied_requests": denied, "violation_rate": ratio},
            ))

    return anomalies


def anomaly_score(
    anomalies: Sequence[DetectedAnomaly],
    pattern: AccessPattern,
    thresholds: AnomalyThresholds,
) -> int:
    score = sum(SEVERITY_WEIGHTS[a.severity] for a in anomalies)
    if pattern.frequency > thresholds.high_frequency:
        score += 15
    if pattern.data_volume > thresholds.high_volume_mb:
        score += 20
    return min(score, MAX_SCORE)


def risk_level_for(score: int) -> RiskLevel:
    if score < 50:
        return RiskLevel.LOW
    if score < 75:
        return RiskLevel.MEDIUM
    if score < 90:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def compliance_rate(requests: Sequence[ConsentRequest]) -> float:
    if not requests:
        return 100.0
    denied = sum(1 for r in requests if r.status is ConsentStatus.DENIED)
    return 100.0 * (1 - denied / len(requests))


def generate_insights(
    pattern: AccessPattern,
    risk_level: RiskLevel,
    compliance: float,
    thresholds: AnomalyThresholds,
) -> List[GeneratedInsight]:
    insights = []

    if pattern.frequency > thresholds.frequency:
        insights.append(GeneratedInsight(
            InsightType.PATTERN_DETECTED,
            "High Data Access Pattern",
            "Your data is being accessed frequently. Consider reviewing access permissions.",
            85,
        ))

    if risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        insights.append(GeneratedInsight(
            InsightType.RISK_ASSESSMENT,
            "Elevated Privacy Risk",
            "Your data privacy risk level is elevated. Consider reviewing recent access logs.",
            90,
        ))

    if compliance < thresholds.compliance_floor:
        insights.append(GeneratedInsight(
            InsightType.RECOMMENDATION,
            "Improve Consent Management",
            "Consider implementing stricter consent requirements for data access.",
            75,
        ))

    return insights


# ============================================================================
# Monitor
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: Union[uuid.UUID, str], label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"{label} {value} not found")


class AnomalyMonitor:
    """
    Owns anomaly profiles, alerts and insights.

    Args:
        session_factory: Callable returning a SQLAlchemy session
        ledger: ConsentLedger (only ``history_for_owner`` is used; reads never persist expiry)
        notifier: NotificationSink for ``ai_alert`` / ``ai_insight`` events
        thresholds: AnomalyThresholds
        clock: Callable returning the current aware UTC datetime
    """

    def __init__(
        self,
        session_factory,
        ledger,
        notifier: Optional[NotificationSink] = None,
        thresholds: Optional[AnomalyThresholds] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        self.thresholds = thresholds or AnomalyThresholds()
        self.clock = clock or _utcnow
        self._tick_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def track(self, owner: str, category: Union[DataCategory, str] = DataCategory.MEDICAL) -> Dict[str, Any]:
        """Create (or reactivate) the profile for ``owner`` and ``category``."""
        owner = owner.strip().lower()
        category = parse_enum(DataCategory, category, "category")

        session = self.session_factory()
        try:
            profile = session.query(AnomalyProfile).filter_by(owner_address=owner, category=category).first()
            if profile is None:
                profile = AnomalyProfile(owner_address=owner, category=category)
                session.add(profile)
                try:
                    session.commit()
                    logger.info(f"Monitoring started for {owner} ({category.value})")
                except IntegrityError:
                    # Created concurrently by another caller
                    session.rollback()
                    profile = session.query(AnomalyProfile).filter_by(
                        owner_address=owner, category=category
                    ).one()
            elif not profile.is_active:
                profile.is_active = True
                session.commit()
                logger.info(f"Monitoring resumed for {owner} ({category.value})")
            return profile.to_dict()
        finally:
            session.close()

    def monitor_user(self, owner: str, category: Union[DataCategory, str] = DataCategory.MEDICAL) -> ProfileAnalysis:
        """Track the profile and analyze it immediately."""
        profile = self.track(owner, category)
        return self._analyze(uuid.UUID(profile["id"]))

    def deactivate(self, owner: str, category: Union[DataCategory, str]) -> bool:
        category = parse_enum(DataCategory, category, "category")
        session = self.session_factory()
        try:
            profile = session.query(AnomalyProfile).filter_by(
                owner_address=owner.strip().lower(), category=category
            ).first()
            if profile is None or not profile.is_active:
                return False
            profile.is_active = False
            session.commit()
            logger.info(f"Monitoring stopped for {profile.owner_address} ({category.value})")
            return True
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def monitor_tick(self) -> TickResult:
        """
        Analyze every active profile once.

        Single-flight: a tick that starts while another is running returns
        immediately with ``skipped=True``. A failing profile is logged and
        does not stop the sweep.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Monitor tick already running, skipping")
            return TickResult(skipped=True)

        result = TickResult()
        try:
            session = self.session_factory()
            try:
                profile_ids = [
                    row.id for row in session.query(AnomalyProfile.id).filter_by(is_active=True).all()
                ]
            finally:
                session.close()

            for profile_id in profile_ids:
                try:
                    self._analyze(profile_id)
                    result.analyzed += 1
                except Exception:
                    result.failed += 1
                    logger.exception(f"Anomaly analysis failed for profile {profile_id}")
        finally:
            self._tick_lock.release()

        logger.info(f"Monitor tick complete: analyzed={result.analyzed}, failed={result.failed}")
        return result

    def _analyze(self, profile_id: uuid.UUID) -> ProfileAnalysis:
        now = self.clock()
        session = self.session_factory()
        try:
            profile = session.get(AnomalyProfile, profile_id)
            if profile is None:
                raise NotFound(f"Anomaly profile {profile_id} not found")

            requests = self.ledger.history_for_owner(
                profile.owner_address,
                category=profile.category,
                since=now - self.thresholds.window,
            )

            pattern = calculate_access_pattern(requests, self.thresholds)
            anomalies = detect_anomalies(pattern, requests, self.thresholds)
            score = anomaly_score(anomalies, pattern, self.thresholds)
            risk = risk_level_for(score)
            compliance = compliance_rate(requests)
            insights = generate_insights(pattern, risk, compliance, self.thresholds)

            profile.top_requester = pattern.requester
            profile.frequency = pattern.frequency
            profile.hours_of_day = pattern.hours_of_day
            profile.days_of_week = pattern.days_of_week
            profile.data_volume = pattern.data_volume
            profile.access_duration = pattern.access_duration
            profile.anomaly_score = score
            profile.risk_level = risk
            profile.consent_compliance_rate = compliance
            profile.last_analyzed_at = now

            for anomaly in anomalies:
                profile.alerts.append(AnomalyAlert(
                    alert_type=anomaly.alert_type,
                    severity=anomaly.severity,
                    message=anomaly.message,
                    details=anomaly.details,
                    timestamp=now,
                ))
            for insight in insights:
                profile.insights.append(AnomalyInsight(
                    insight_type=insight.insight_type,
                    title=insight.title,
                    description=insight.description,
                    confidence=insight.confidence,
                    timestamp=now,
                ))

            session.commit()
            owner = profile.owner_address
            category = profile.category
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if anomalies:
            logger.warning(
                f"{len(anomalies)} anomalies for {owner} ({category.value}): score={score}, risk={risk.value}"
            )

        for anomaly in anomalies:
            notify(self.notifier, owner, "ai_alert", {
                "type": anomaly.alert_type.value,
                "severity": anomaly.severity.value,
                "message": anomaly.message,
                "category": category.value,
                "timestamp": now.isoformat(),
            })
        if insights:
            notify(self.notifier, owner, "ai_insight", {
                "category": category.value,
                "insights": [
                    {
                        "type": i.insight_type.value,
                        "title": i.title,
                        "description": i.description,
                        "confidence": i.confidence,
                    }
                    for i in insights
                ],
                "timestamp": now.isoformat(),
            })

        return ProfileAnalysis(
            owner=owner,
            category=category,
            pattern=pattern,
            anomaly_score=score,
            risk_level=risk,
            compliance_rate=compliance,
            anomalies=anomalies,
            insights=insights,
        )

    # ------------------------------------------------------------------
    # Reads and alert handling
    # ------------------------------------------------------------------

    def get_user_summary(self, owner: str) -> Dict[str, Any]:
        owner = owner.strip().lower()
        recent_since = self.clock() - timedelta(days=7)

        session = self.session_factory()
        try:
            profiles = session.query(AnomalyProfile).filter_by(owner_address=owner).all()

            summary = {
                "profiles": len(profiles),
                "total_alerts": 0,
                "unread_alerts": 0,
                "average_anomaly_score": 0.0,
                "risk_level": RiskLevel.LOW.value,
                "recent_insights": [],
            }
            highest = RiskLevel.LOW
            for profile in profiles:
                summary["total_alerts"] += len(profile.alerts)
                summary["unread_alerts"] += sum(1 for a in profile.alerts if not a.is_read)
                summary["average_anomaly_score"] += profile.anomaly_score
                if RISK_ORDER.index(profile.risk_level) > RISK_ORDER.index(highest):
                    highest = profile.risk_level

                recent = [i for i in reversed(profile.insights) if i.timestamp >= recent_since][:5]
                summary["recent_insights"].extend(i.to_dict() for i in recent)

            if profiles:
                summary["average_anomaly_score"] /= len(profiles)
            summary["risk_level"] = highest.value
            return summary
        finally:
            session.close()

    def alerts_for(self, owner: str, unread_only: bool = False) -> List[Dict[str, Any]]:
        session = self.session_factory()
        try:
            query = (
                session.query(AnomalyAlert)
                .join(AnomalyProfile)
                .filter(AnomalyProfile.owner_address == owner.strip().lower())
            )
            if unread_only:
                query = query.filter(AnomalyAlert.is_read.is_(False))
            return [a.to_dict() for a in query.order_by(AnomalyAlert.timestamp.desc()).all()]
        finally:
            session.close()

    def mark_alert_read(self, alert_id: Union[uuid.UUID, str], owner: str) -> Dict[str, Any]:
        return self._update_alert(alert_id, owner, is_read=True)

    def resolve_alert(self, alert_id: Union[uuid.UUID, str], owner: str) -> Dict[str, Any]:
        return self._update_alert(alert_id, owner, is_read=True, is_resolved=True)

    def _update_alert(self, alert_id, owner: str, **changes) -> Dict[str, Any]:
        alert_id = _as_uuid(alert_id, "Alert")
        session = self.session_factory()
        try:
            alert = session.get(AnomalyAlert, alert_id)
            if alert is None:
                raise NotFound(f"Alert {alert_id} not found")
            if alert.profile.owner_address != owner.strip().lower():
                raise Forbidden("Alert belongs to another owner")
            for name, value in changes.items():
                setattr(alert, name, value)
            session.commit()
            return alert.to_dict()
        finally:
            session.close()

    def high_risk_profiles(self, min_level: RiskLevel = RiskLevel.HIGH) -> List[Dict[str, Any]]:
        levels = RISK_ORDER[RISK_ORDER.index(min_level):]
        session = self.session_factory()
        try:
            profiles = (
                session.query(AnomalyProfile)
                .filter(AnomalyProfile.risk_level.in_(levels))
                .filter_by(is_active=True)
                .order_by(AnomalyProfile.anomaly_score.desc())
                .all()
            )
            return [p.to_dict() for p in profiles]
        finally:
            session.close()
