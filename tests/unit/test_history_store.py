"""
Unit tests for the location history log
"""

from datetime import timedelta

from guardline.models.emergency import LocationPoint


def _report(store, clock, user_id, lat, lng, seconds=60):
    point = store.append(LocationPoint(user_id=user_id, latitude=lat, longitude=lng))
    clock.advance(seconds=seconds)
    return point


class TestLocationHistoryStore:

    def test_append_stamps_recorded_at(self, history_store, clock):
        point = history_store.append(LocationPoint(
            user_id="user-1", latitude=1.5, longitude=2.5,
            accuracy=12.0, speed=3.2, heading=90.0, battery_level=77
        ))

        assert point.recorded_at == clock()
        latest = history_store.latest("user-1")
        assert latest == point

    def test_latest_none_without_reports(self, history_store):
        assert history_store.latest("user-1") is None

    def test_history_newest_first_with_total(self, history_store, clock):
        points = [_report(history_store, clock, "user-1", i, i) for i in range(5)]
        _report(history_store, clock, "user-2", 9, 9)

        page, total = history_store.history("user-1", limit=2)

        assert total == 5
        assert [p.id for p in page] == [points[4].id, points[3].id]

        page2, _ = history_store.history("user-1", limit=2, page=3)
        assert [p.id for p in page2] == [points[0].id]

    def test_history_time_range(self, history_store, clock):
        start = clock()
        points = [_report(history_store, clock, "user-1", i, i) for i in range(4)]

        page, total = history_store.history(
            "user-1",
            start=start + timedelta(seconds=60),
            end=start + timedelta(seconds=120)
        )

        assert total == 2
        assert [p.id for p in page] == [points[2].id, points[1].id]

    def test_latest_for_users(self, history_store, clock):
        _report(history_store, clock, "user-1", 1, 1)
        latest_1 = _report(history_store, clock, "user-1", 2, 2)
        latest_2 = _report(history_store, clock, "user-2", 3, 3)

        latest = history_store.latest_for_users(["user-1", "user-2", "user-3"])

        assert set(latest) == {"user-1", "user-2"}
        assert latest["user-1"].id == latest_1.id
        assert latest["user-2"].id == latest_2.id

    def test_latest_for_no_users(self, history_store):
        assert history_store.latest_for_users([]) == {}
