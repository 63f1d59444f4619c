"""
tests/test_api.py
"""
from __future__ import annotations

import datetime as _dt

import pytest

UTC = _dt.timezone.utc


# ───────────────────────── helpers ──────────────────────────────────
def _create(client, text: str, status: int = 201) -> dict:
    rv = client.post("/api/diaries", data={"text": text})
    assert rv.status_code == status, rv.get_data(as_text=True)
    return rv.get_json()


def _ids(rv) -> list[str]:
    return [d["id"] for d in rv.get_json()["data"]]


# ───────────────────────── create ───────────────────────────────────
@pytest.mark.parametrize("text", [
    "<b>今日は素晴らしい一日でした</b>",
    '<span style="color: blue;">青い空を見上げて</span>',
    '<b><i>今日は</i></b><u>特別な日</u>で<span style="color: red;">感動</span>しました',
    "**重要な発見**があり、*とても*嬉しい ~~昨日は失敗したけど~~",
    "晴れ☀️のち雨☔時々曇り☁️",
    "楽しい ٩(◕‿◕)۶ 一日でした😊🎉",
    '<script>alert("test")</script>普通のテキスト',     # stored verbatim, not sanitised
])
def test_create_stores_text_verbatim(client, text):
    body = _create(client, text)
    assert body["success"] is True
    data = body["data"]
    assert data["text"] == text
    assert data["id"]
    assert data["createdAt"] == data["updatedAt"]
    assert "imageUrl" not in data


def test_create_trims_surrounding_whitespace(client):
    data = _create(client, "   hello diary \n")["data"]
    assert data["text"] == "hello diary"


@pytest.mark.parametrize("payload", [{}, {"text": ""}, {"text": "   "}, {"text": "a" * 141}])
def test_create_rejects_bad_text(client, payload):
    rv = client.post("/api/diaries", data=payload)
    assert rv.status_code == 400
    body = rv.get_json()
    assert body["success"] is False
    assert body["field"] == "text"
    assert body["error"]


def test_create_counts_markup_against_the_limit(client):
    # 142 raw characters although only 135 are visible
    _create(client, "<b>" + "あ" * 135 + "</b>", status=400)
    _create(client, "<b>" + "あ" * 133 + "</b>", status=201)


def test_limit_follows_config(client, monkeypatch):
    from diarist.diary import app

    monkeypatch.setitem(app.config, "DIARIST_MAX_LENGTH", 5)
    _create(client, "short", status=201)
    _create(client, "longer", status=400)


# ───────────────────────── list ─────────────────────────────────────
def test_list_newest_first_with_pagination(client, store):
    for i in range(12):
        store.insert(f"entry {i}", created_at=_dt.datetime(2025, 1, 1 + i, tzinfo=UTC))

    rv = client.get("/api/diaries?limit=5&page=3")
    assert rv.status_code == 200
    body = rv.get_json()
    assert [d["text"] for d in body["data"]] == ["entry 1", "entry 0"]
    assert body["pagination"] == {"page": 3, "limit": 5, "total": 12, "totalPages": 3}


def test_list_defaults(client, store):
    store.insert("only one")
    body = client.get("/api/diaries").get_json()
    assert body["pagination"] == {"page": 1, "limit": 10, "total": 1, "totalPages": 1}


def test_list_search_and_dates(client, store):
    a = store.insert("Walk in the park", created_at=_dt.datetime(2025, 9, 28, 8, tzinfo=UTC))
    store.insert("walk again", created_at=_dt.datetime(2025, 9, 29, 8, tzinfo=UTC))
    store.insert("coffee", created_at=_dt.datetime(2025, 9, 28, 9, tzinfo=UTC))

    rv = client.get("/api/diaries?search=WALK&startDate=2025-09-28&endDate=2025-09-28")
    assert _ids(rv) == [a.id]


def test_list_date_with_offset_uses_the_app_zone(client, store):
    a = store.insert("late night", created_at=_dt.datetime(2025, 9, 27, 16, tzinfo=UTC))
    store.insert("next morning", created_at=_dt.datetime(2025, 9, 28, 8, tzinfo=UTC))

    stamp = "2025-09-28T00:30:00%2B09:00"     # the 27th once moved to UTC
    rv = client.get(f"/api/diaries?startDate={stamp}&endDate={stamp}")
    assert _ids(rv) == [a.id]


def test_list_out_of_range_page_is_empty(client, store):
    store.insert("lonely")
    body = client.get("/api/diaries?page=9").get_json()
    assert body["data"] == []
    assert body["pagination"]["totalPages"] == 1


@pytest.mark.parametrize("qs, field", [
    ("page=0", "page"),
    ("page=abc", "page"),
    ("limit=0", "limit"),
    ("limit=101", "limit"),
    ("startDate=tomorrow", "startDate"),
    ("endDate=2025-13-01", "endDate"),
])
def test_list_rejects_bad_params(client, qs, field):
    rv = client.get(f"/api/diaries?{qs}")
    assert rv.status_code == 400
    assert rv.get_json()["field"] == field


# ───────────────────────── read / update / delete ───────────────────
def test_get_one(client):
    created = _create(client, "find me")["data"]
    rv = client.get(f"/api/diaries/{created['id']}")
    assert rv.status_code == 200
    assert rv.get_json()["data"] == created


def test_get_unknown_is_404_json(client):
    rv = client.get("/api/diaries/does-not-exist")
    assert rv.status_code == 404
    assert rv.get_json()["success"] is False


def test_update_with_json(client):
    created = _create(client, "draft")["data"]
    rv = client.put(f"/api/diaries/{created['id']}", json={"text": "<i>final</i>"})
    assert rv.status_code == 200
    data = rv.get_json()["data"]
    assert data["text"] == "<i>final</i>"
    assert data["id"] == created["id"]
    assert data["createdAt"] == created["createdAt"]
    assert data["updatedAt"] > created["updatedAt"]


def test_update_with_form(client):
    created = _create(client, "draft")["data"]
    rv = client.put(f"/api/diaries/{created['id']}", data={"text": "form edit"})
    assert rv.status_code == 200
    assert rv.get_json()["data"]["text"] == "form edit"


def test_update_validation_and_missing(client):
    created = _create(client, "keep me")["data"]

    rv = client.put(f"/api/diaries/{created['id']}", json={"text": "x" * 141})
    assert rv.status_code == 400
    assert rv.get_json()["field"] == "text"
    assert client.get(f"/api/diaries/{created['id']}").get_json()["data"]["text"] == "keep me"

    assert client.put("/api/diaries/nope", json={"text": "hi"}).status_code == 404


def test_delete(client):
    created = _create(client, "short-lived")["data"]

    rv = client.delete(f"/api/diaries/{created['id']}")
    assert rv.status_code == 200
    assert rv.get_json()["success"] is True

    assert client.get(f"/api/diaries/{created['id']}").status_code == 404
    assert client.delete(f"/api/diaries/{created['id']}").status_code == 404
    assert created["id"] not in _ids(client.get("/api/diaries"))


# ───────────────────────── extras ───────────────────────────────────
def test_stats_endpoint(client):
    created = _create(client, "<b>雨</b>☔ ＼(＾o＾)／")["data"]
    rv = client.get(f"/api/diaries/{created['id']}/stats")
    assert rv.status_code == 200
    assert rv.get_json()["data"] == {
        "totalLength": 17,
        "actualLength": 10,
        "emojiCount": 1,
        "hasAsciiArt": True,
        "hasDecorations": True,
    }
    assert client.get("/api/diaries/nope/stats").status_code == 404


def test_health(client):
    body = client.get("/health").get_json()
    assert body["status"] == "OK"
    assert body["timestamp"].startswith("2099-")
