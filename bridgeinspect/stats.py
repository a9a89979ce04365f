"""Dashboard statistics over stored bridges, drones and defects."""

from __future__ import annotations

import copy
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from cachetools import TLRUCache

from .database import User

CACHE_TTL: Dict[str, float] = {
    "overview": 300.0,
    "defect_types": 600.0,
    "defect_trend": 600.0,
    "bridge_ranking": 600.0,
    "recent_detections": 120.0,
    "high_risk_alerts": 120.0,
}

_CACHE_SIZE = 1024


def _expiry(key: Tuple, value: Any, now: float) -> float:
    return now + CACHE_TTL[key[0]]


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, bytes):
        value = value.decode()
    return datetime.fromisoformat(str(value))


@dataclass
class StatsOverview:
    bridge_count: int = 0
    drone_count: int = 0
    defect_count: int = 0
    detection_count: int = 0
    today_defects: int = 0
    week_defects: int = 0
    defect_trend: float = 0.0
    trend_direction: str = "stable"


@dataclass
class DefectTypeShare:
    defect_type: str
    count: int
    avg_confidence: float
    percentage: float = 0.0


@dataclass
class DefectTypeDistribution:
    total: int = 0
    distribution: List[DefectTypeShare] = field(default_factory=list)


@dataclass
class TrendPoint:
    date: str
    count: int
    cumulative_count: int = 0


@dataclass
class DefectTrend:
    period: str
    granularity: str
    trend: List[TrendPoint] = field(default_factory=list)
    total: int = 0
    avg_per_day: float = 0.0
    peak_date: str = ""
    peak_count: int = 0


@dataclass
class BridgeHealth:
    bridge_id: int
    bridge_name: str
    defect_count: int
    high_risk_count: int
    last_detection: Optional[datetime] = None
    health_score: float = 0.0
    health_level: str = ""


@dataclass
class BridgeRanking:
    ranking: List[BridgeHealth] = field(default_factory=list)


@dataclass
class RecentDetection:
    detection_id: int
    bridge_id: int
    bridge_name: str
    image_path: str
    defect_count: int
    detected_at: Optional[datetime] = None
    processing_time: int = 0


@dataclass
class RecentDetections:
    detections: List[RecentDetection] = field(default_factory=list)


@dataclass
class HighRiskAlert:
    defect_id: int
    bridge_id: int
    bridge_name: str
    defect_type: str
    confidence: float
    area: float
    detected_at: Optional[datetime] = None
    image_path: str = ""
    severity: str = ""


@dataclass
class HighRiskAlerts:
    total: int = 0
    alerts: List[HighRiskAlert] = field(default_factory=list)


def calculate_health_score(defect_count: int, high_risk_count: int) -> float:
    """Health score: 100 minus one per defect and five per high-risk defect, floored at 0."""
    score = 100.0 - float(defect_count) * 1.0 - float(high_risk_count) * 5.0
    return max(score, 0.0)


def health_level(score: float) -> str:
    """Grade label for a health score."""
    if score >= 90:
        return "优秀"
    if score >= 70:
        return "良好"
    if score >= 50:
        return "一般"
    if score >= 30:
        return "较差"
    return "危险"


def determine_severity(confidence: float, area: float) -> str:
    """Severity label for a defect from its confidence and area."""
    if confidence >= 0.95 and area >= 0.1:
        return "紧急"
    if confidence >= 0.90 or area >= 0.05:
        return "严重"
    if confidence >= 0.85 or area >= 0.02:
        return "高危"
    return "一般"


class StatsService:
    """Computes statistics scoped to what the current user may see, with caching."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        cache: Optional[TLRUCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.conn = conn
        self.clock = clock
        self._cache = cache if cache is not None else TLRUCache(
            maxsize=_CACHE_SIZE, ttu=_expiry
        )

    def _cached(self, key: Tuple, compute: Callable[[], Any]) -> Any:
        try:
            return copy.deepcopy(self._cache[key])
        except KeyError:
            pass
        value = compute()
        self._cache[key] = copy.deepcopy(value)
        return value

    @staticmethod
    def _authorized(user: User) -> Tuple[str, List[str], List[Any]]:
        if user.is_admin():
            return "FROM defects", ["defects.deleted_at IS NULL"], []
        return (
            "FROM defects JOIN bridges ON bridges.id = defects.bridge_id",
            ["bridges.user_id = ?", "defects.deleted_at IS NULL"],
            [user.id],
        )

    def _count_defects(
        self, user: User, conditions: Sequence[str], params: Sequence[Any]
    ) -> int:
        source, where, args = self._authorized(user)
        clause = " AND ".join([*where, *conditions])
        (count,) = self.conn.execute(
            f"SELECT COUNT(*) {source} WHERE {clause}", [*args, *params]
        ).fetchone()
        return count

    def get_overview(self, current_user: User) -> StatsOverview:
        """Totals for the user plus today's, this week's and yesterday's defects."""
        return self._cached(
            ("overview", current_user.id), lambda: self._overview(current_user)
        )

    def _overview(self, user: User) -> StatsOverview:
        if user.is_admin():
            row = self.conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM bridges WHERE deleted_at IS NULL) AS bridge_count,
                    (SELECT COUNT(*) FROM drones) AS drone_count,
                    (SELECT COUNT(*) FROM defects WHERE deleted_at IS NULL) AS defect_count,
                    (SELECT COUNT(DISTINCT image_path) FROM defects
                     WHERE deleted_at IS NULL) AS detection_count
                """
            ).fetchone()
        else:
            row = self.conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM bridges
                     WHERE user_id = ? AND deleted_at IS NULL) AS bridge_count,
                    (SELECT COUNT(*) FROM drones WHERE user_id = ?) AS drone_count,
                    (SELECT COUNT(d.id) FROM defects d
                     JOIN bridges b ON b.id = d.bridge_id
                     WHERE b.user_id = ? AND d.deleted_at IS NULL) AS defect_count,
                    (SELECT COUNT(DISTINCT d.image_path) FROM defects d
                     JOIN bridges b ON b.id = d.bridge_id
                     WHERE b.user_id = ? AND d.deleted_at IS NULL) AS detection_count
                """,
                (user.id, user.id, user.id, user.id),
            ).fetchone()
        overview = StatsOverview(
            bridge_count=row["bridge_count"],
            drone_count=row["drone_count"],
            defect_count=row["defect_count"],
            detection_count=row["detection_count"],
        )

        now = self.clock()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today_end = today_start + timedelta(days=1)
        yesterday_start = today_start - timedelta(days=1)
        week_start = today_start - timedelta(days=7)
        window = ["defects.detected_at >= ?", "defects.detected_at < ?"]

        today = self._count_defects(user, window, [today_start, today_end])
        week = self._count_defects(user, ["defects.detected_at >= ?"], [week_start])
        yesterday = self._count_defects(user, window, [yesterday_start, today_start])

        overview.today_defects = today
        overview.week_defects = week
        if yesterday > 0:
            overview.defect_trend = (today - yesterday) / yesterday * 100
        if today > yesterday:
            overview.trend_direction = "up"
        elif today < yesterday:
            overview.trend_direction = "down"
        else:
            overview.trend_direction = "stable"
        return overview

    def get_defect_type_distribution(
        self, current_user: User, days: int
    ) -> DefectTypeDistribution:
        """Defect counts per type over the last ``days`` days (all time when 0)."""
        return self._cached(
            ("defect_types", current_user.id, days),
            lambda: self._distribution(current_user, days),
        )

    def _distribution(self, user: User, days: int) -> DefectTypeDistribution:
        source, where, params = self._authorized(user)
        if days > 0:
            where.append("defects.detected_at >= ?")
            params.append(self.clock() - timedelta(days=days))
        rows = self.conn.execute(
            "SELECT defects.defect_type AS defect_type, COUNT(*) AS count,"
            " ROUND(AVG(defects.confidence), 2) AS avg_confidence"
            f" {source} WHERE {' AND '.join(where)}"
            " GROUP BY defects.defect_type ORDER BY count DESC, defects.defect_type",
            params,
        ).fetchall()
        shares = [
            DefectTypeShare(
                defect_type=row["defect_type"],
                count=row["count"],
                avg_confidence=row["avg_confidence"] or 0.0,
            )
            for row in rows
        ]
        total = sum(share.count for share in shares)
        if total > 0:
            for share in shares:
                share.percentage = share.count / total * 100
        return DefectTypeDistribution(total=total, distribution=shares)

    def get_defect_trend(
        self, current_user: User, days: int, granularity: str
    ) -> DefectTrend:
        """Daily defect counts over the last ``days`` days with running totals."""
        return self._cached(
            ("defect_trend", current_user.id, days, granularity),
            lambda: self._trend(current_user, days, granularity),
        )

    def _trend(self, user: User, days: int, granularity: str) -> DefectTrend:
        source, where, params = self._authorized(user)
        where.append("defects.detected_at >= ?")
        params.append(self.clock() - timedelta(days=days))
        rows = self.conn.execute(
            "SELECT substr(defects.detected_at, 1, 10) AS date, COUNT(*) AS count"
            f" {source} WHERE {' AND '.join(where)}"
            " GROUP BY date ORDER BY date ASC",
            params,
        ).fetchall()
        points: List[TrendPoint] = []
        cumulative = 0
        for row in rows:
            cumulative += row["count"]
            points.append(TrendPoint(row["date"], row["count"], cumulative))

        peak_date, peak_count = "", 0
        for point in points:
            if point.count > peak_count:
                peak_date, peak_count = point.date, point.count

        return DefectTrend(
            period=f"{days}days",
            granularity=granularity,
            trend=points,
            total=cumulative,
            avg_per_day=cumulative / days if days > 0 else 0.0,
            peak_date=peak_date,
            peak_count=peak_count,
        )

    def get_bridge_ranking(
        self, current_user: User, limit: int, order: str
    ) -> BridgeRanking:
        """Bridges ranked by defect count; ``order="best"`` puts healthiest first."""
        return self._cached(
            ("bridge_ranking", current_user.id, limit, order),
            lambda: self._ranking(current_user, limit, order),
        )

    def _ranking(self, user: User, limit: int, order: str) -> BridgeRanking:
        conditions = ["b.deleted_at IS NULL"]
        params: List[Any] = []
        if not user.is_admin():
            conditions.append("b.user_id = ?")
            params.append(user.id)
        direction = "ASC" if order == "best" else "DESC"
        rows = self.conn.execute(
            "SELECT b.id AS bridge_id, b.bridge_name AS bridge_name,"
            " COUNT(d.id) AS defect_count,"
            " COALESCE(SUM(CASE WHEN d.confidence >= 0.9 THEN 1 ELSE 0 END), 0)"
            " AS high_risk_count,"
            " MAX(d.detected_at) AS last_detection"
            " FROM bridges b"
            " LEFT JOIN defects d ON d.bridge_id = b.id AND d.deleted_at IS NULL"
            f" WHERE {' AND '.join(conditions)}"
            " GROUP BY b.id, b.bridge_name"
            f" ORDER BY defect_count {direction}, high_risk_count {direction}, b.id"
            " LIMIT ?",
            [*params, limit],
        ).fetchall()
        ranking = []
        for row in rows:
            score = calculate_health_score(row["defect_count"], row["high_risk_count"])
            ranking.append(
                BridgeHealth(
                    bridge_id=row["bridge_id"],
                    bridge_name=row["bridge_name"],
                    defect_count=row["defect_count"],
                    high_risk_count=row["high_risk_count"],
                    last_detection=_parse_dt(row["last_detection"]),
                    health_score=score,
                    health_level=health_level(score),
                )
            )
        return BridgeRanking(ranking=ranking)

    def get_recent_detections(self, current_user: User, limit: int) -> RecentDetections:
        """Most recent detections, one per analysed image."""
        return self._cached(
            ("recent_detections", current_user.id, limit),
            lambda: self._recent(current_user, limit),
        )

    def _recent(self, user: User, limit: int) -> RecentDetections:
        conditions = ["d.deleted_at IS NULL"]
        params: List[Any] = []
        if not user.is_admin():
            conditions.append("b.user_id = ?")
            params.append(user.id)
        rows = self.conn.execute(
            "SELECT MIN(d.id) AS detection_id, b.id AS bridge_id,"
            " b.bridge_name AS bridge_name, d.image_path AS image_path,"
            " COUNT(d.id) AS defect_count, MIN(d.detected_at) AS detected_at,"
            " 0 AS processing_time"
            " FROM defects d JOIN bridges b ON b.id = d.bridge_id"
            f" WHERE {' AND '.join(conditions)}"
            " GROUP BY d.image_path, b.id, b.bridge_name"
            " ORDER BY detected_at DESC, detection_id DESC LIMIT ?",
            [*params, limit],
        ).fetchall()
        return RecentDetections(
            detections=[
                RecentDetection(
                    detection_id=row["detection_id"],
                    bridge_id=row["bridge_id"],
                    bridge_name=row["bridge_name"],
                    image_path=row["image_path"],
                    defect_count=row["defect_count"],
                    detected_at=_parse_dt(row["detected_at"]),
                    processing_time=row["processing_time"],
                )
                for row in rows
            ]
        )

    def get_high_risk_alerts(
        self, current_user: User, severity: str, limit: int
    ) -> HighRiskAlerts:
        """High-risk defects, optionally narrowed to ``"urgent"`` or ``"serious"``."""
        return self._cached(
            ("high_risk_alerts", current_user.id, severity, limit),
            lambda: self._alerts(current_user, severity, limit),
        )

    def _alerts(self, user: User, severity: str, limit: int) -> HighRiskAlerts:
        conditions = ["d.deleted_at IS NULL"]
        params: List[Any] = []
        if not user.is_admin():
            conditions.append("b.user_id = ?")
            params.append(user.id)
        conditions.append("(d.confidence >= 0.85 OR d.area >= 0.02)")
        if severity == "urgent":
            conditions.append("(d.confidence >= 0.95 AND d.area >= 0.1)")
        elif severity == "serious":
            conditions.append("(d.confidence >= 0.90 OR d.area >= 0.05)")
        rows = self.conn.execute(
            "SELECT d.id AS defect_id, b.id AS bridge_id, b.bridge_name AS bridge_name,"
            " d.defect_type AS defect_type, d.confidence AS confidence, d.area AS area,"
            " d.detected_at AS detected_at, d.image_path AS image_path"
            " FROM defects d JOIN bridges b ON b.id = d.bridge_id"
            f" WHERE {' AND '.join(conditions)}"
            " ORDER BY d.confidence DESC, d.area DESC, d.id LIMIT ?",
            [*params, limit],
        ).fetchall()
        alerts = [
            HighRiskAlert(
                defect_id=row["defect_id"],
                bridge_id=row["bridge_id"],
                bridge_name=row["bridge_name"],
                defect_type=row["defect_type"],
                confidence=row["confidence"],
                area=row["area"],
                detected_at=_parse_dt(row["detected_at"]),
                image_path=row["image_path"],
                severity=determine_severity(row["confidence"], row["area"]),
            )
            for row in rows
        ]
        return HighRiskAlerts(total=len(alerts), alerts=alerts)