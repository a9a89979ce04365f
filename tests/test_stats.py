from datetime import datetime, timedelta

import pytest

from bridgeinspect.database import Bridge, Defect, User, connect
from bridgeinspect.repositories import (
    BridgeRepository,
    DefectRepository,
    UserRepository,
)
from bridgeinspect.stats import (
    StatsService,
    calculate_health_score,
    determine_severity,
    health_level,
)

NOW = datetime(2024, 5, 15, 12, 0, 0)


def _clock():
    return NOW


@pytest.fixture
def world():
    conn = connect(":memory:")
    users = UserRepository(conn)
    bridges = BridgeRepository(conn)
    defects = DefectRepository(conn)
    password = "password"
    u1 = users.create(
        User(username="user1", password=password, email="user1@example.com")
    )
    u2 = users.create(
        User(username="user2", password=password, email="user2@example.com")
    )
    admin = users.find_by_username("admin")
    b1 = bridges.create(Bridge(bridge_name="B1", bridge_code="BR001", user_id=u1.id))
    b2 = bridges.create(Bridge(bridge_name="B2", bridge_code="BR002", user_id=u1.id))
    b3 = bridges.create(Bridge(bridge_name="B3", bridge_code="BR003", user_id=u2.id))

    def add(bridge, kind, conf, area, image, when):
        return defects.create(
            Defect(
                bridge_id=bridge.id,
                defect_type=kind,
                confidence=conf,
                area=area,
                image_path=image,
                detected_at=when,
            )
        )

    today = NOW - timedelta(hours=1)
    first = add(b1, "crack", 0.96, 0.2, "a.jpg", today)
    add(b1, "crack", 0.5, 0.01, "a.jpg", today)
    add(b1, "spall", 0.91, 0.01, "b.jpg", NOW - timedelta(days=1))
    add(b2, "crack", 0.86, 0.0, "c.jpg", NOW - timedelta(days=3))
    add(b3, "spall", 0.99, 0.3, "d.jpg", today)
    gone = add(b1, "crack", 0.99, 0.5, "e.jpg", today)
    defects.delete(gone.id)
    yield {
        "conn": conn,
        "u1": u1,
        "u2": u2,
        "admin": admin,
        "b1": b1,
        "b2": b2,
        "first": first,
        "defects": defects,
        "service": StatsService(conn, clock=_clock),
    }
    conn.close()


def test_health_score_bounds():
    assert calculate_health_score(0, 0) == 100.0
    assert calculate_health_score(500, 50) == 0.0
    assert calculate_health_score(3, 1) < calculate_health_score(3, 0)


@pytest.mark.parametrize(
    "score,level",
    [(100, "优秀"), (90, "优秀"), (89.9, "良好"), (70, "良好"),
     (50, "一般"), (30, "较差"), (29.9, "危险"), (0, "危险")],
)
def test_health_level(score, level):
    assert health_level(score) == level


@pytest.mark.parametrize(
    "conf,area,expected",
    [(0.96, 0.2, "紧急"), (0.96, 0.05, "严重"), (0.5, 0.06, "严重"),
     (0.86, 0.0, "高危"), (0.1, 0.02, "高危"), (0.5, 0.01, "一般")],
)
def test_determine_severity(conf, area, expected):
    assert determine_severity(conf, area) == expected


def test_overview_user_scope(world):
    ov = world["service"].get_overview(world["u1"])
    assert ov.bridge_count == 2
    assert ov.drone_count == 0
    assert ov.defect_count == 4
    assert ov.detection_count == 3
    assert ov.today_defects == 2
    assert ov.week_defects == 4
    assert ov.trend_direction == "up"
    assert ov.defect_trend > 0


def test_overview_admin_sees_all(world):
    ov = world["service"].get_overview(world["admin"])
    assert ov.bridge_count == 3
    assert ov.defect_count == 5
    assert ov.detection_count == 4
    assert ov.today_defects == 3


def test_overview_down_and_stable(world):
    ov = world["service"].get_overview(world["u2"])
    assert ov.today_defects == 1
    assert ov.trend_direction == "up"
    assert ov.defect_trend == 0.0


def test_distribution(world):
    dist = world["service"].get_defect_type_distribution(world["u1"], 0)
    assert dist.total == 4
    assert [s.defect_type for s in dist.distribution] == ["crack", "spall"]
    assert sum(s.count for s in dist.distribution) == dist.total
    assert sum(s.percentage for s in dist.distribution) == pytest.approx(100.0)
    counts = [s.count for s in dist.distribution]
    assert counts == sorted(counts, reverse=True)


def test_distribution_days_window(world):
    recent = world["service"].get_defect_type_distribution(world["u1"], 2)
    everything = world["service"].get_defect_type_distribution(world["u1"], 0)
    assert recent.total == 3
    assert recent.total < everything.total


def test_trend(world):
    trend = world["service"].get_defect_trend(world["u1"], 7, "day")
    assert trend.period == "7days"
    assert trend.granularity == "day"
    assert trend.total == 4
    assert trend.trend[-1].cumulative_count == trend.total
    dates = [p.date for p in trend.trend]
    assert dates == sorted(dates)
    assert trend.peak_date == "2024-05-15"
    assert trend.peak_count == max(p.count for p in trend.trend)
    assert trend.avg_per_day * 7 == pytest.approx(trend.total)


def test_ranking_orders(world):
    service = world["service"]
    worst = service.get_bridge_ranking(world["u1"], 10, "worst").ranking
    best = service.get_bridge_ranking(world["u1"], 10, "best").ranking
    assert [r.bridge_id for r in worst] == [world["b1"].id, world["b2"].id]
    assert [r.bridge_id for r in best] == [world["b2"].id, world["b1"].id]
    top = worst[0]
    assert top.defect_count == 3
    assert top.high_risk_count == 2
    assert top.health_score == calculate_health_score(3, 2)
    assert top.health_level == health_level(top.health_score)
    assert top.last_detection == NOW - timedelta(hours=1)


def test_ranking_limit_and_admin(world):
    ranking = world["service"].get_bridge_ranking(world["admin"], 2, "worst").ranking
    assert len(ranking) == 2


def test_recent_detections(world):
    recent = world["service"].get_recent_detections(world["u1"], 10).detections
    assert {d.image_path for d in recent} == {"a.jpg", "b.jpg", "c.jpg"}
    assert recent[0].image_path == "a.jpg"
    assert recent[0].defect_count == 2
    assert recent[0].detection_id == world["first"].id
    assert recent[0].processing_time == 0
    stamps = [d.detected_at for d in recent]
    assert stamps == sorted(stamps, reverse=True)


def test_alerts_all(world):
    alerts = world["service"].get_high_risk_alerts(world["u1"], "", 10)
    assert alerts.total == 3
    assert [a.confidence for a in alerts.alerts] == [0.96, 0.91, 0.86]
    assert [a.severity for a in alerts.alerts] == ["紧急", "严重", "高危"]


def test_alerts_severity_filters(world):
    service = world["service"]
    urgent = service.get_high_risk_alerts(world["u1"], "urgent", 10)
    serious = service.get_high_risk_alerts(world["u1"], "serious", 10)
    assert urgent.total == 1
    assert urgent.alerts[0].severity == "紧急"
    assert serious.total == 2
    assert all(a.severity in ("紧急", "严重") for a in serious.alerts)


def test_results_are_cached(world):
    service = world["service"]
    before = service.get_defect_type_distribution(world["u1"], 0)
    world["defects"].create(
        Defect(bridge_id=world["b1"].id, defect_type="crack", detected_at=NOW)
    )
    cached = service.get_defect_type_distribution(world["u1"], 0)
    assert cached.total == before.total
    fresh = StatsService(world["conn"], clock=_clock)
    assert fresh.get_defect_type_distribution(world["u1"], 0).total == before.total + 1


def test_cached_value_is_not_shared(world):
    service = world["service"]
    first = service.get_overview(world["u1"])
    first.bridge_count = 99
    again = service.get_overview(world["u1"])
    assert again.bridge_count == 2