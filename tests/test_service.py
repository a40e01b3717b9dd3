import sqlite3
import threading
import time

import pytest

from swipr_rec.catalog import InMemoryCatalog, Title
from swipr_rec.profile import InvalidActionError, make_action
from swipr_rec.scoring_weights import ScoringWeights


def _catalog(n=30):
    titles = [Title(100 + i, f"Drama {i}", ("Drama",), "en", 8.0 + (i % 10) / 10, 2000 + i) for i in range(n)]
    titles += [Title(200 + i, f"Comedy {i}", ("Comedy",), "fr", 8.2, 1500) for i in range(5)]
    return InMemoryCatalog(titles)


def _service(service_mod, catalog=None):
    return service_mod.RecommendationService(catalog or _catalog(), weights=ScoringWeights())


def _ids(result):
    return [r.title_id for r in result.recommendations]


def test_record_action_logs_applies_and_marks_seen(fresh_service_modules):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)

    first = svc.record_action("alice", 100, "like")
    again = svc.record_action("alice", 100, "like")

    assert first.duplicate is False
    assert first.model_version == 1
    assert again.duplicate is True
    assert again.model_version == 1
    assert len(db.load_user_actions("alice")) == 2
    assert svc.get_preference_model("alice").liked_genre_counts == {"Drama": 1}
    assert svc.seen.contains("alice", 100)


def test_rejected_action_records_nothing(fresh_service_modules):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)

    with pytest.raises(InvalidActionError):
        svc.record_action("alice", 100, "superlike")
    with pytest.raises(InvalidActionError):
        svc.record_action("alice", 100, "like", genres=["Drama"], language="english")

    assert db.load_user_actions("alice") == []
    assert svc.get_preference_model("alice").action_count == 0


def test_model_survives_service_restart(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    svc.record_action("alice", 200, "pass")

    restarted = _service(service_mod)

    assert restarted.get_preference_model("alice").to_dict() == svc.get_preference_model("alice").to_dict()


def test_recording_an_action_invalidates_the_cache(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)

    first = svc.get_recommendations("alice", limit=5, discovery_ratio=0.0)
    assert svc.get_recommendations("alice", limit=5, discovery_ratio=0.0).hit is True

    swiped = _ids(first)[0]
    svc.record_action("alice", swiped, "pass")
    after = svc.get_recommendations("alice", limit=5, discovery_ratio=0.0)

    assert after.hit is False
    assert swiped not in _ids(after)


def test_served_titles_never_reappear(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)

    served = _ids(svc.get_recommendations("alice", limit=5, discovery_ratio=0.2, mark_served=True))
    second = _ids(svc.get_recommendations("alice", limit=5, discovery_ratio=0.2))

    assert served
    assert second
    assert not set(served) & set(second)


def test_undo_lets_a_title_reappear(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    assert 100 in _ids(svc.get_recommendations("alice", limit=50, discovery_ratio=0.0))

    svc.record_action("alice", 100, "like")
    assert 100 not in _ids(svc.get_recommendations("alice", limit=50, discovery_ratio=0.0))

    assert svc.undo_action("alice", 100) is True
    assert 100 in _ids(svc.get_recommendations("alice", limit=50, discovery_ratio=0.0))
    assert svc.undo_action("alice", 100) is False


def test_undo_restores_the_previous_model(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    svc.record_action("alice", 101, "pass")
    svc.record_action("alice", 200, "unwatched")
    before = svc.get_preference_model("alice").to_dict()

    svc.record_action("alice", 102, "pass")
    svc.undo_action("alice", 102)

    assert svc.get_preference_model("alice").to_dict() == before


def test_recompute_after_invalidation_is_identical(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    svc.record_action("alice", 200, "pass")

    first = svc.get_recommendations("alice", limit=8, discovery_ratio=0.25)
    svc.cache.invalidate("alice")
    second = svc.get_recommendations("alice", limit=8, discovery_ratio=0.25)

    assert second.hit is False
    assert [r.to_dict() for r in second.recommendations] == [r.to_dict() for r in first.recommendations]


def test_invalid_request_parameters_raise(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)

    with pytest.raises(ValueError):
        svc.get_recommendations("alice", limit=5, discovery_ratio=-0.1)
    with pytest.raises(ValueError):
        svc.get_recommendations("alice", limit=-1)
    assert svc.get_recommendations("alice", limit=0).recommendations == []


def test_declared_preferences_steer_cold_start(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)

    declared = svc.set_declared_preferences("alice", ["comedy", "Vaporwave"], ["fr"])
    result = svc.get_recommendations("alice", limit=3, discovery_ratio=0.0)

    assert declared.genres == frozenset({"Comedy"})
    assert all(200 <= tid < 205 for tid in _ids(result))


def test_collaborative_signals_after_rebuild(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    svc.recommender.cold_start_min_actions = 1
    for user in ("u1", "u2", "u3"):
        svc.record_action(user, 100, "like")
        svc.record_action(user, 101, "like")

    assert svc.rebuild_item_similarities() == 1
    assert svc.item_similarities.get(100, 101).score == pytest.approx(1.0)

    svc.record_action("alice", 100, "like")
    top = svc.get_recommendations("alice", limit=5, discovery_ratio=0.0).recommendations[0]

    assert top.title_id == 101
    assert top.contributions["item-cf"] == pytest.approx(0.3)
    assert top.contributions["user-cf"] == pytest.approx(0.4)
    assert [s.user_id for s in svc.similar_users("alice")] == ["u1", "u2", "u3"]


def test_compare_and_explain(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    svc.record_action("bob", 100, "like")
    svc.record_action("bob", 101, "like")

    match = svc.compare_users("alice", "bob")
    assert match.common_likes == [100]
    assert match.they_liked_you_havent == [101]

    breakdown = svc.explain("alice", 101)
    assert breakdown.components["genre_match"] > 0
    assert svc.explain("alice", 999) is None


def test_watchlist_and_stats(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 101, "unwatched")
    svc.record_action("alice", 102, "unwatched")
    svc.record_action("alice", 103, "like")
    svc.record_action("alice", 200, "pass")
    svc.record_action("alice", 201, "pass")

    assert [t.id for t in svc.watchlist("alice")] == [102, 101]

    stats = svc.user_stats("alice")
    assert (stats.total_actions, stats.likes, stats.passes, stats.unwatched) == (5, 1, 2, 2)
    assert stats.disliked_genres == ["Comedy"]
    assert stats.seen == 5


def test_delete_user_removes_all_state(fresh_service_modules):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    svc.get_recommendations("alice", limit=3, mark_served=True)

    assert svc.delete_user("alice") == 1
    assert svc.get_preference_model("alice").action_count == 0
    assert svc.seen.get("alice") == frozenset()
    assert db.load_cache_entry("alice") is None


def test_cache_write_failure_still_serves(fresh_service_modules, monkeypatch):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "save_cache_entry", locked)
    result = svc.get_recommendations("alice", limit=5)

    assert result.degraded is True
    assert len(result.recommendations) == 5


def test_concurrent_actions_for_one_user_are_all_applied(fresh_service_modules):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)

    threads = [
        threading.Thread(target=svc.record_action, args=("alice", 100 + i, "like"))
        for i in range(20)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    model = svc.get_preference_model("alice")
    assert model.action_count == 20
    assert model.version == 20
    assert len(db.load_user_actions("alice")) == 20


def test_scheduler_runs_rebuilds(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    rebuilt = []

    scheduler = service_mod.SimilarityRebuildScheduler(svc, interval=3600, on_rebuild=rebuilt.append)
    assert scheduler.run_once() == 0

    scheduler.start()
    scheduler.stop(timeout=5)

    assert scheduler.runs >= 2
    assert rebuilt[0] == 0


def test_imported_actions_reach_model_seen_set_and_cache(fresh_service_modules):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    assert svc.get_preference_model("alice").action_count == 1
    svc.get_recommendations("alice", limit=5, discovery_ratio=0.0)
    assert svc.get_recommendations("alice", limit=5, discovery_ratio=0.0).hit is True

    imported = svc.import_actions([
        make_action("alice", tid, "like", ["Drama"], "en", None, f"2024-01-0{tid - 100}T10:00:00")
        for tid in (101, 102, 103)
    ])
    after = svc.get_recommendations("alice", limit=5, discovery_ratio=0.0)

    assert imported == 3
    assert len(db.load_user_actions("alice")) == 4
    assert after.hit is False
    assert not {101, 102, 103} & set(_ids(after))
    assert svc.seen.contains("alice", 102)
    assert svc.get_preference_model("alice").liked_genre_counts == {"Drama": 4}
    assert _service(service_mod).get_preference_model("alice").action_count == 4


def test_snapshot_catches_up_with_newer_log_rows(fresh_service_modules):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)
    svc.record_action("alice", 100, "like")
    db.insert_action("alice", 101, "pass", ["Drama"], "en", None, "2024-01-02T10:00:00")
    db.insert_action("alice", 102, "pass", ["Drama"], "en", None, "2024-01-03T10:00:00")

    model = _service(service_mod).get_preference_model("alice")

    assert model.action_count == 3
    assert "Drama" in model.disliked_genres
    assert model.last_sequence == db.load_user_actions("alice")[-1]["id"]
    assert db.load_preference_model("alice")["last_sequence"] == model.last_sequence


def test_failed_snapshot_save_rolls_back_the_action(fresh_service_modules, monkeypatch):
    service_mod, db = fresh_service_modules
    svc = _service(service_mod)
    svc.get_recommendations("alice", limit=5, discovery_ratio=0.0)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "save_preference_model", locked)
    with pytest.raises(sqlite3.OperationalError):
        svc.record_action("alice", 100, "like")

    assert db.load_user_actions("alice") == []
    assert svc.get_preference_model("alice").action_count == 0
    assert not svc.seen.contains("alice", 100)
    assert svc.get_recommendations("alice", limit=5, discovery_ratio=0.0).hit is False

    monkeypatch.undo()
    receipt = svc.record_action("alice", 100, "like")
    assert receipt.duplicate is False
    assert receipt.model_version == 1


def test_per_user_state_stays_bounded(fresh_service_modules):
    service_mod, _ = fresh_service_modules
    svc = service_mod.RecommendationService(_catalog(), weights=ScoringWeights(), max_cached_models=2)

    svc.record_action("alice", 100, "like")
    for user in ("bob", "carol", "dave"):
        svc.record_action(user, 101, "pass")
    svc.record_action("alice", 102, "like")

    assert len(svc._locks) == 0
    assert len(svc._models) == 2
    assert svc.get_preference_model("alice").action_count == 2
    assert svc.get_preference_model("bob").passed_titles == [101]


def test_scheduler_keeps_running_after_unexpected_error(fresh_service_modules, monkeypatch):
    service_mod, _ = fresh_service_modules
    svc = _service(service_mod)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise ValueError("malformed timestamp in action log")
        return 0

    monkeypatch.setattr(svc, "rebuild_item_similarities", flaky)
    scheduler = service_mod.SimilarityRebuildScheduler(svc, interval=0.01)
    scheduler.start()
    deadline = time.monotonic() + 5
    while scheduler.runs < 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)

    assert len(calls) >= 2
    assert scheduler.runs >= 1
