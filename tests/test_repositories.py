import re
from datetime import datetime, timedelta

import pytest

from bridgeinspect.database import Bridge, Defect, Drone, Report, User, close, connect
from bridgeinspect.repositories import (
    BridgeRepository,
    DefectListFilters,
    DefectRepository,
    DroneRepository,
    RecordNotFoundError,
    ReportRepository,
    UserRepository,
)


@pytest.fixture
def conn():
    connection = connect(":memory:")
    yield connection
    close(connection)


def make_user(conn, username, role="user"):
    password = "password"
    return UserRepository(conn).create(
        User(
            username=username,
            password=password,
            real_name=username,
            email=f"{username}@example.com",
            role=role,
        )
    )


def make_bridge(conn, user_id, name, code, created_at=None):
    return BridgeRepository(conn).create(
        Bridge(
            bridge_name=name,
            bridge_code=code,
            address="测试地址",
            longitude=118.78,
            latitude=32.04,
            bridge_type="梁桥",
            build_year=2020,
            length=100.5,
            width=15.0,
            user_id=user_id,
            created_at=created_at,
        )
    )


def make_defect(conn, bridge_id, defect_type, detected_at=None):
    return DefectRepository(conn).create(
        Defect(
            bridge_id=bridge_id,
            defect_type=defect_type,
            image_path="images/test.jpg",
            result_path="results/test_result.jpg",
            confidence=0.95,
            detected_at=detected_at,
        )
    )


def test_user_create_and_find(conn):
    user = make_user(conn, "testuser")
    repo = UserRepository(conn)
    found = repo.find_by_id(user.id)
    assert found.username == "testuser"
    assert repo.find_by_username("testuser").id == user.id
    assert repo.find_by_email("testuser@example.com").id == user.id
    assert found.created_at == user.created_at


def test_user_missing_returns_none(conn):
    repo = UserRepository(conn)
    assert repo.find_by_id(9999) is None
    assert repo.find_by_username("nobody") is None
    assert repo.find_by_email("nobody@example.com") is None


def test_user_update_persists(conn):
    user = make_user(conn, "testuser")
    user.real_name = "新名字"
    UserRepository(conn).update(user)
    assert UserRepository(conn).find_by_id(user.id).real_name == "新名字"


def test_user_delete_is_soft(conn):
    user = make_user(conn, "testuser")
    repo = UserRepository(conn)
    assert repo.delete(user.id) is True
    assert repo.find_by_id(user.id) is None
    row = conn.execute("SELECT deleted_at FROM users WHERE id = ?", (user.id,)).fetchone()
    assert row["deleted_at"] is not None


def test_user_list_counts_default_admin(conn):
    make_user(conn, "user1")
    make_user(conn, "user2")
    users, total = UserRepository(conn).list(1, 10)
    assert total == len(users)
    assert {u.username for u in users} == {"admin", "user1", "user2"}


def test_bridge_find_by_code_and_update(conn):
    user = make_user(conn, "testuser")
    bridge = make_bridge(conn, user.id, "OldName", "BR001")
    repo = BridgeRepository(conn)
    assert repo.find_by_code("BR001").id == bridge.id
    bridge.bridge_name = "NewName"
    bridge.status = "维修中"
    repo.update(bridge)
    updated = repo.find_by_id(bridge.id)
    assert updated.bridge_name == "NewName"
    assert updated.status == "维修中"
    assert updated.bridge_code == "BR001"


def test_bridge_delete_releases_code(conn):
    user = make_user(conn, "testuser")
    bridge = make_bridge(conn, user.id, "Bridge1", "BR001")
    repo = BridgeRepository(conn)
    deleted = repo.delete(bridge.id)
    assert re.fullmatch(r"BR001_deleted_\d+", deleted.bridge_code)
    assert repo.find_by_id(bridge.id) is None
    row = conn.execute(
        "SELECT bridge_code, deleted_at FROM bridges WHERE id = ?", (bridge.id,)
    ).fetchone()
    assert row["bridge_code"] == deleted.bridge_code
    assert row["deleted_at"] is not None
    again = make_bridge(conn, user.id, "Bridge2", "BR001")
    assert repo.find_by_code("BR001").id == again.id


def test_bridge_delete_missing_raises(conn):
    with pytest.raises(RecordNotFoundError):
        BridgeRepository(conn).delete(9999)


def test_bridge_list_by_user_filters(conn):
    user1 = make_user(conn, "user1")
    user2 = make_user(conn, "user2")
    make_bridge(conn, user1.id, "Bridge1", "BR001")
    make_bridge(conn, user1.id, "Bridge2", "BR002")
    make_bridge(conn, user2.id, "Bridge3", "BR003")
    repo = BridgeRepository(conn)
    bridges, total = repo.list_by_user_id(user1.id, 1, 10)
    assert total == 2
    assert {b.bridge_code for b in bridges} == {"BR001", "BR002"}
    _, all_total = repo.list(1, 10)
    assert all_total == 3


def test_bridge_list_newest_first_and_paged(conn):
    user = make_user(conn, "user1")
    base = datetime(2024, 1, 1)
    for i, code in enumerate(["BR001", "BR002", "BR003"]):
        make_bridge(conn, user.id, code, code, created_at=base + timedelta(days=i))
    repo = BridgeRepository(conn)
    bridges, total = repo.list(1, 10)
    assert [b.bridge_code for b in bridges] == ["BR003", "BR002", "BR001"]
    page_two, total_two = repo.list(2, 1)
    assert total_two == total
    assert [b.bridge_code for b in page_two] == ["BR002"]


def test_drone_delete_is_physical(conn):
    user = make_user(conn, "user1")
    repo = DroneRepository(conn)
    drone = repo.create(Drone(name="D1", model="M", user_id=user.id))
    assert repo.find_by_id(drone.id).name == "D1"
    assert repo.delete(drone.id) is True
    assert repo.find_by_id(drone.id) is None
    (count,) = conn.execute("SELECT COUNT(*) FROM drones").fetchone()
    assert count == 0


def test_drone_update_and_list_by_user(conn):
    user1 = make_user(conn, "user1")
    user2 = make_user(conn, "user2")
    repo = DroneRepository(conn)
    drone = repo.create(Drone(name="D1", user_id=user1.id))
    repo.create(Drone(name="D2", user_id=user2.id))
    drone.name = "Renamed"
    repo.update(drone)
    drones, total = repo.list_by_user_id(user1.id, 1, 10)
    assert total == 1
    assert drones[0].name == "Renamed"
    _, all_total = repo.list(1, 10)
    assert all_total == 2


def test_defect_list_permission_filter(conn):
    user1 = make_user(conn, "user1")
    user2 = make_user(conn, "user2")
    admin = UserRepository(conn).find_by_username("admin")
    bridge1 = make_bridge(conn, user1.id, "B1", "BR001")
    bridge2 = make_bridge(conn, user2.id, "B2", "BR002")
    make_defect(conn, bridge1.id, "裂缝")
    make_defect(conn, bridge1.id, "剥落")
    make_defect(conn, bridge2.id, "裂缝")
    repo = DefectRepository(conn)
    defects, total = repo.list(DefectListFilters(current_user=user1))
    assert total == 2
    assert all(d.bridge_id == bridge1.id for d in defects)
    _, admin_total = repo.list(DefectListFilters(current_user=admin))
    assert admin_total == 3


def test_defect_list_filters_by_bridge_and_type(conn):
    user = make_user(conn, "testuser")
    bridge1 = make_bridge(conn, user.id, "B1", "BR001")
    bridge2 = make_bridge(conn, user.id, "B2", "BR002")
    make_defect(conn, bridge1.id, "裂缝")
    make_defect(conn, bridge1.id, "剥落")
    make_defect(conn, bridge2.id, "裂缝")
    repo = DefectRepository(conn)
    _, by_bridge = repo.list(DefectListFilters(current_user=user, bridge_id=bridge1.id))
    assert by_bridge == 2
    defects, by_type = repo.list(DefectListFilters(current_user=user, defect_type="裂缝"))
    assert by_type == 2
    assert {d.defect_type for d in defects} == {"裂缝"}


def test_defect_list_time_range_and_order(conn):
    user = make_user(conn, "testuser")
    bridge = make_bridge(conn, user.id, "B1", "BR001")
    base = datetime(2024, 5, 1, 12)
    for i in range(4):
        make_defect(conn, bridge.id, f"t{i}", detected_at=base + timedelta(days=i))
    repo = DefectRepository(conn)
    defects, total = repo.list(
        DefectListFilters(
            start_time=base + timedelta(days=1), end_time=base + timedelta(days=2)
        )
    )
    assert total == 2
    assert [d.defect_type for d in defects] == ["t2", "t1"]
    assert defects[0].detected_at == base + timedelta(days=2)


def test_defect_find_by_id_carries_bridge(conn):
    user = make_user(conn, "testuser")
    bridge = make_bridge(conn, user.id, "测试桥梁", "BR001")
    defect = make_defect(conn, bridge.id, "裂缝")
    found = DefectRepository(conn).find_by_id(defect.id)
    assert found.defect_type == "裂缝"
    assert found.bridge.bridge_name == "测试桥梁"
    assert DefectRepository(conn).find_by_id(9999) is None


def test_defect_delete_is_soft(conn):
    user = make_user(conn, "testuser")
    bridge = make_bridge(conn, user.id, "B1", "BR001")
    defect = make_defect(conn, bridge.id, "裂缝")
    repo = DefectRepository(conn)
    repo.delete(defect.id)
    assert repo.find_by_id(defect.id) is None
    row = conn.execute("SELECT deleted_at FROM defects WHERE id = ?", (defect.id,)).fetchone()
    assert row["deleted_at"] is not None
    _, total = repo.list_by_bridge_id(bridge.id, 1, 10)
    assert total == 0


def test_report_find_missing_raises(conn):
    with pytest.raises(RecordNotFoundError, match="报表不存在"):
        ReportRepository(conn).find_by_id(9999)


def test_report_crud_and_filters(conn):
    user = make_user(conn, "testuser")
    bridge = make_bridge(conn, user.id, "B1", "BR001")
    repo = ReportRepository(conn)
    first = repo.create(
        Report(report_name="R1", report_type="bridge", status="completed",
               bridge_id=bridge.id, user_id=user.id)
    )
    repo.create(
        Report(report_name="R2", report_type="summary", status="pending",
               user_id=user.id)
    )
    found = repo.find_by_id(first.id)
    assert found.user.username == "testuser"
    assert found.bridge.bridge_code == "BR001"
    reports, total = repo.list(1, 10, "bridge")
    assert total == 1
    assert reports[0].report_name == "R1"
    _, everything = repo.list_by_user_id(user.id, 1, 10, None)
    assert everything == 2
    by_bridge, _ = repo.list_by_bridge_id(bridge.id, 1, 10)
    assert [r.id for r in by_bridge] == [first.id]
    assert repo.count_by_status("completed") == 1
    repo.delete(first.id)
    assert repo.count_by_status("completed") == 0


def test_report_update(conn):
    user = make_user(conn, "testuser")
    repo = ReportRepository(conn)
    report = repo.create(Report(report_name="R1", status="pending", user_id=user.id))
    report.status = "completed"
    report.health_score = 88.5
    repo.update(report)
    found = repo.find_by_id(report.id)
    assert found.status == "completed"
    assert found.health_score == 88.5