from datetime import date, timedelta
from uuid import uuid4

TODAY = date(2026, 3, 11)


def _habit_id(client, headers, name: str) -> int:
    items = client.get("/habits", headers=headers).json()["items"]
    return next(item["id"] for item in items if item["name"] == name)


def _log(client, headers, habit_id: int, day: date, **payload):
    return client.put(f"/habits/{habit_id}/logs/{day.isoformat()}", headers=headers, json=payload)


def test_default_habits_are_listed(client, auth_headers) -> None:
    response = client.get("/habits", headers=auth_headers)
    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["name"] for item in items] == [
        "Daily reflection",
        "8k steps",
        "Eat protein",
        "Drink water",
        "Track meals",
    ]
    assert all(item["days_of_week"] == [0, 1, 2, 3, 4, 5, 6] for item in items)


def test_log_upsert_keeps_one_record_per_day(client, auth_headers) -> None:
    habit_id = _habit_id(client, auth_headers, "Daily reflection")
    first = _log(client, auth_headers, habit_id, TODAY, completed=False)
    second = _log(client, auth_headers, habit_id, TODAY, completed=True)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["counts_as_complete"] is True

    stats = client.get(
        f"/habits/{habit_id}/stats",
        headers=auth_headers,
        params={"start": TODAY.isoformat(), "end": TODAY.isoformat(), "today": TODAY.isoformat()},
    )
    assert stats.json()["completion_rate"] == 100
    assert stats.json()["streak"] == 1


def test_stats_streak_and_weekly_rate(client, auth_headers) -> None:
    habit_id = _habit_id(client, auth_headers, "Track meals")
    for days_ago in range(5):
        assert _log(client, auth_headers, habit_id, TODAY - timedelta(days=days_ago), completed=True).status_code == 200
    _log(client, auth_headers, habit_id, TODAY - timedelta(days=5), completed=False)

    stats = client.get(
        f"/habits/{habit_id}/stats",
        headers=auth_headers,
        params={
            "start": (TODAY - timedelta(days=6)).isoformat(),
            "end": TODAY.isoformat(),
            "today": TODAY.isoformat(),
        },
    )
    assert stats.status_code == 200
    body = stats.json()
    assert body["streak"] == 5
    assert body["completion_rate"] == 71


def test_metric_habit_counts_when_goal_reached(client, auth_headers) -> None:
    habit_id = _habit_id(client, auth_headers, "8k steps")
    below = _log(client, auth_headers, habit_id, TODAY - timedelta(days=1), value=4000)
    reached = _log(client, auth_headers, habit_id, TODAY, value=8000)
    assert below.json()["counts_as_complete"] is False
    assert reached.json()["counts_as_complete"] is True

    stats = client.get(f"/habits/{habit_id}/stats", headers=auth_headers, params={"today": TODAY.isoformat()})
    body = stats.json()
    assert body["streak"] == 1
    assert body["start"] == (TODAY - timedelta(days=29)).isoformat()
    assert body["end"] == TODAY.isoformat()
    assert body["completion_rate"] == 3


def test_other_users_habits_are_not_found(client, auth_headers) -> None:
    email = f"other_{uuid4().hex[:10]}@test.com"
    client.post("/auth/signup", json={"email": email, "password": "StrongPass123"})
    token = client.post("/auth/login", data={"username": email, "password": "StrongPass123"}).json()["access_token"]
    other_habit = _habit_id(client, {"Authorization": f"Bearer {token}"}, "Daily reflection")

    assert _log(client, auth_headers, other_habit, TODAY, completed=True).status_code == 404
    assert client.get(f"/habits/{other_habit}/stats", headers=auth_headers).status_code == 404


def test_stats_rejects_inverted_window(client, auth_headers) -> None:
    habit_id = _habit_id(client, auth_headers, "Daily reflection")
    response = client.get(
        f"/habits/{habit_id}/stats",
        headers=auth_headers,
        params={"start": TODAY.isoformat(), "end": (TODAY - timedelta(days=1)).isoformat()},
    )
    assert response.status_code == 400
