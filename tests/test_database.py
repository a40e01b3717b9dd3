import json
from datetime import datetime


def _log(db, user, title_id, kind, genres=("Drama",), language="en"):
    return db.insert_action(user, title_id, kind, list(genres), language, None, datetime.now().isoformat())


def test_init_db_is_idempotent(fresh_db):
    db = fresh_db
    db.init_db()
    db.init_db()

    with db.get_db(read_only=True) as conn:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"actions", "preference_models", "item_similarities", "recommendation_cache",
            "seen_titles", "user_preferences", "titles"} <= tables


def test_actions_are_returned_in_arrival_order(fresh_db):
    db = fresh_db
    db.init_db()

    first = _log(db, "alice", 10, "like")
    second = _log(db, "alice", 11, "pass", genres=("Horror", "Thriller"))
    _log(db, "bob", 10, "like")

    actions = db.load_user_actions("alice")
    assert [a["id"] for a in actions] == [first, second]
    assert actions[1]["genres"] == ["Horror", "Thriller"]

    batch = db.load_actions_batch(["alice", "bob", "nobody"])
    assert set(batch) == {"alice", "bob"}
    assert len(db.load_all_actions()) == 3


def test_delete_latest_action_keeps_older_history(fresh_db):
    db = fresh_db
    db.init_db()

    _log(db, "alice", 10, "like")
    _log(db, "alice", 10, "pass")

    removed = db.delete_latest_action("alice", 10)
    assert removed["kind"] == "pass"
    assert [a["kind"] for a in db.load_user_actions("alice")] == ["like"]
    assert db.delete_latest_action("alice", 99) is None


def test_find_users_who_liked_uses_latest_action(fresh_db):
    db = fresh_db
    db.init_db()

    _log(db, "bob", 1, "like")
    _log(db, "bob", 2, "like")
    _log(db, "carol", 1, "like")
    _log(db, "carol", 1, "pass")  # supersedes the like
    _log(db, "dave", 2, "like")
    _log(db, "alice", 1, "like")

    found = db.find_users_who_liked([1, 2], exclude_user="alice")
    assert found == [("bob", 2), ("dave", 1)]
    assert db.find_users_who_liked([]) == []


def test_preference_snapshot_invalidates_on_schema_mismatch(fresh_db):
    db = fresh_db
    db.init_db()

    db.save_preference_model("alice", {"user_id": "alice", "version": 3}, 3)
    assert db.load_preference_model("alice")["version"] == 3

    with db.get_db() as conn:
        conn.execute("UPDATE preference_models SET schema_version = schema_version + 1")

    assert db.load_preference_model("alice") is None


def test_replace_item_similarities_bumps_version(fresh_db):
    db = fresh_db
    db.init_db()

    assert db.replace_item_similarities([(1, 2, 0.5, 2, 4)]) == 1
    assert db.replace_item_similarities([(1, 3, 1.0, 3, 3), (2, 3, 0.75, 3, 4)]) == 2

    rows, version = db.load_item_similarities()
    assert version == 2
    assert rows == [(1, 3, 1.0, 3, 3), (2, 3, 0.75, 3, 4)]
    assert db.get_item_similarity_meta()["pair_count"] == 2


def test_cache_entry_round_trip_and_delete(fresh_db):
    db = fresh_db
    db.init_db()

    payload = [{"title_id": 5, "score": 0.9}]
    db.save_cache_entry("alice", payload, {"limit": 5}, "1-abc", "2024-01-01T00:00:00", "2024-01-02T00:00:00")

    entry = db.load_cache_entry("alice")
    assert entry["payload"] == payload
    assert entry["params"] == {"limit": 5}

    db.delete_cache_entry("alice")
    assert db.load_cache_entry("alice") is None


def test_seen_titles_are_unique_per_user(fresh_db):
    db = fresh_db
    db.init_db()

    db.add_seen_titles("alice", [1, 2, 2], "served")
    db.add_seen_titles("alice", [2, 3], "swiped")
    assert db.load_seen_titles("alice") == {1, 2, 3}

    assert db.remove_seen_title("alice", 2) is True
    assert db.remove_seen_title("alice", 2) is False
    assert db.load_seen_titles("alice") == {1, 3}


def test_titles_round_trip_ordered_by_votes(fresh_db):
    db = fresh_db
    db.init_db()

    db.upsert_titles([
        {"id": 1, "title": "Small", "genres": ["Drama"], "original_language": "en",
         "vote_average": 7.0, "vote_count": 10},
        {"id": 2, "title": "Big", "genres": ["Action", "Sci-Fi"], "original_language": "en",
         "vote_average": 8.1, "vote_count": 20000, "director": "Someone"},
    ])

    titles = db.load_titles()
    assert [t["id"] for t in titles] == [2, 1]
    assert titles[0]["genres"] == ["Action", "Sci-Fi"]
    assert set(db.load_titles_by_id([1, 99])) == {1}


def test_delete_user_removes_everything(fresh_db):
    db = fresh_db
    db.init_db()

    _log(db, "alice", 1, "like")
    db.save_preference_model("alice", {"user_id": "alice"}, 1)
    db.add_seen_titles("alice", [1], "swiped")
    db.save_declared_preferences("alice", ["Drama"], ["en"])
    db.save_cache_entry("alice", [], {}, "v", "2024-01-01T00:00:00", "2024-01-02T00:00:00")
    _log(db, "bob", 1, "like")

    assert db.delete_user("alice") == 1
    assert db.load_user_actions("alice") == []
    assert db.load_preference_model("alice") is None
    assert db.load_seen_titles("alice") == set()
    assert db.load_declared_preferences(["alice"]) == {}
    assert db.load_cache_entry("alice") is None
    assert len(db.load_user_actions("bob")) == 1


def test_load_json_handles_bad_values(fresh_db):
    assert fresh_db.load_json(None) == []
    assert fresh_db.load_json(["a"]) == ["a"]
    assert fresh_db.load_json(json.dumps(["x", "y"])) == ["x", "y"]
    assert fresh_db.load_json("{not json") == []
