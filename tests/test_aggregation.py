import pytest

from utils.aggregation import (
    AggregationStore,
    MonthlyDataset,
    WriteConflictError,
    make_user_id,
    monthly_path,
)
from utils.object_store import ConflictError
from utils.schemas import DayResult, MonthlyReport, ReportStatistics, UserMonthStats

from conftest import FIXED_NOW


def _raw(store, ym="2024-06"):
    return store.get_file(monthly_path(ym))


def test_make_user_id():
    assert make_user_id(None, "alice") == "auto_alice"
    assert make_user_id("", "alice") == "auto_alice"
    assert make_user_id("dev-1", "alice") == "dev-1_alice"


def test_merge_into_empty_month(aggregation, store):
    total = aggregation.merge_daily_result(
        "2024-06-01", {"alice": DayResult(score=50, is_exceed=True)}
    )

    assert total == 1
    rec = _raw(store).content["auto_alice"]
    assert rec["userName"] == "alice"
    assert rec["userIndex"] == 1
    assert rec["dailyScores"] == {"2024-06-01": 50}
    assert rec["monthlyTotal"] == 50
    assert rec["exceedDays"] == 1
    assert rec["firstSeen"] == FIXED_NOW


def test_re_merge_is_idempotent(aggregation, store):
    results = {"alice": DayResult(score=50, is_exceed=True), "bob": {"score": 10}}
    aggregation.merge_daily_result("2024-06-01", results)
    first = _raw(store)

    aggregation.merge_daily_result("2024-06-01", results)
    second = _raw(store)

    assert second.content == first.content
    assert second.revision == first.revision
    assert second.content["auto_alice"]["monthlyTotal"] == 50


def test_later_merge_overwrites_the_date(aggregation, store):
    aggregation.merge_daily_result("2024-06-01", {"alice": 50})
    aggregation.merge_daily_result("2024-06-01", {"alice": 20})

    rec = _raw(store).content["auto_alice"]
    assert rec["dailyScores"] == {"2024-06-01": 20}
    assert rec["monthlyTotal"] == 20
    assert rec["exceedDays"] == 0


def test_user_index_is_stable(aggregation, store):
    aggregation.merge_daily_result("2024-06-01", {"alice": 1, "bob": 2})
    aggregation.merge_daily_result("2024-06-02", {"carol": 3, "bob": 4, "alice": 5})
    aggregation.merge_daily_result("2024-06-03", {"bob": 50})

    doc = _raw(store).content
    assert doc["auto_alice"]["userIndex"] == 1
    assert doc["auto_bob"]["userIndex"] == 2
    assert doc["auto_carol"]["userIndex"] == 3


def test_derived_fields_match_daily_scores(aggregation, store):
    days = [
        ("2024-06-01", {"alice": 46, "bob": 45}),
        ("2024-06-02", {"alice": 10, "bob": 90}),
        ("2024-06-01", {"alice": 44}),
        ("2024-06-03", {"alice": 100}),
    ]
    for date, results in days:
        aggregation.merge_daily_result(date, results)

    for rec in _raw(store).content.values():
        scores = rec["dailyScores"].values()
        assert rec["monthlyTotal"] == sum(scores)
        assert rec["exceedDays"] == sum(1 for s in scores if s > 45)


def test_merge_routes_to_month_of_date(aggregation, store):
    aggregation.merge_daily_result("2024-07-01", {"alice": 1})
    assert not _raw(store, "2024-06").exists
    assert _raw(store, "2024-07").exists
    assert aggregation.list_months() == ["2024-07"]


def test_upload_keeps_index_and_counts(aggregation, store):
    aggregation.merge_daily_result("2024-06-01", {"alice": 1})

    rec = aggregation.upsert_from_upload(
        "2024-06", "dev-1_bob", "bob", "dev-1", {"2024-06-01": 30, "2024-06-02": 60}
    )
    assert rec.user_index == 2
    assert rec.monthly_total == 90
    assert rec.exceed_days == 1
    assert rec.upload_count == 1

    rec = aggregation.upsert_from_upload("2024-06", "dev-1_bob", "bob", "dev-1", {"2024-06-01": 5})
    assert rec.user_index == 2
    assert rec.upload_count == 2
    assert rec.daily_scores == {"2024-06-01": 5}
    assert _raw(store).content["dev-1_bob"]["monthlyTotal"] == 5


def test_legacy_record_survives_round_trip(aggregation, store):
    legacy = {"userName": "old", "dailyScores": "not-a-map", "userIndex": 1}
    store.save_file(monthly_path("2024-06"), {"dev_old": legacy})

    aggregation.merge_daily_result("2024-06-01", {"alice": 3})

    doc = _raw(store).content
    assert doc["dev_old"] == legacy
    assert doc["auto_alice"]["userIndex"] == 2
    # the query view leaves unreadable records out
    assert [u["userName"] for u in aggregation.query_month("2024-06")] == ["alice"]


def test_from_doc_rejects_non_objects():
    with pytest.raises(ValueError):
        MonthlyDataset.from_doc("2024-06", ["not", "a", "map"])


def test_query_month_expands_exceed_days(aggregation):
    aggregation.merge_daily_result("2024-06-01", {"bob": 50, "alice": 10})
    aggregation.merge_daily_result("2024-06-02", {"bob": 46})

    users = aggregation.query_month("2024-06")

    assert [u["userName"] for u in users] == ["bob", "alice"]
    assert users[0]["exceedDays"] == [
        {"date": "2024-06-01", "score": 50, "limit": 45},
        {"date": "2024-06-02", "score": 46, "limit": 45},
    ]
    assert users[1]["exceedDays"] == []


def test_known_user_names_across_months(aggregation):
    aggregation.merge_daily_result("2024-05-31", {"carol": 1})
    aggregation.merge_daily_result("2024-06-01", {"alice": 1, "carol": 2})
    assert aggregation.known_user_names() == ["carol", "alice"]


class FlakyStore:
    """Wraps a store; the first `failures` conditional saves lose a race."""

    def __init__(self, inner, failures, intruder=None):
        self.inner = inner
        self.failures = failures
        self.intruder = intruder
        self.saves = 0

    def get_file(self, path):
        return self.inner.get_file(path)

    def save_file(self, path, content, revision=None):
        self.saves += 1
        if self.failures:
            self.failures -= 1
            if self.intruder:
                self.intruder()
            raise ConflictError(f"{path} changed")
        return self.inner.save_file(path, content, revision)

    def put_text(self, path, text):
        self.inner.put_text(path, text)

    def list_files(self, prefix):
        return self.inner.list_files(prefix)


def test_conflict_is_retried_after_re_read(store, clock):
    other = AggregationStore(store, clock=clock)

    def concurrent_upload():
        other.upsert_from_upload("2024-06", "dev_bob", "bob", "dev", {"2024-06-01": 9})

    flaky = FlakyStore(store, failures=1, intruder=concurrent_upload)
    agg = AggregationStore(flaky, clock=clock)

    agg.merge_daily_result("2024-06-01", {"alice": 50})

    doc = store.get_file(monthly_path("2024-06")).content
    assert flaky.saves == 2
    # the concurrent writer's record is kept, not overwritten
    assert doc["dev_bob"]["userIndex"] == 1
    assert doc["auto_alice"]["userIndex"] == 2


def test_conflict_exhaustion_raises(store, clock):
    flaky = FlakyStore(store, failures=10)
    agg = AggregationStore(flaky, max_write_retries=3, clock=clock)

    with pytest.raises(WriteConflictError):
        agg.merge_daily_result("2024-06-01", {"alice": 50})

    assert flaky.saves == 4
    assert not store.get_file(monthly_path("2024-06")).exists


def _report(users):
    return MonthlyReport(
        year_month="2024-06",
        generated_at=FIXED_NOW,
        total_days=30,
        data_days=2,
        total_users=len(users),
        statistics=ReportStatistics(),
        users=users,
    )


def test_merge_rollup_merges_key_wise(aggregation, store):
    aggregation.merge_daily_result("2024-06-01", {"alice": 10})
    aggregation.upsert_from_upload("2024-06", "auto_alice", "alice", None, {"2024-06-01": 10, "2024-06-03": 70})

    report = _report(
        [
            UserMonthStats(
                user_name="alice",
                daily_scores={"2024-06-01": 10, "2024-06-02": 20},
                total_days=2,
                total_score=30,
                avg_score=15.0,
                max_score=20,
                min_score=10,
                first_date="2024-06-01",
                last_date="2024-06-02",
                rank=1,
            ),
            UserMonthStats(
                user_name="dave",
                daily_scores={"2024-06-02": 5},
                total_days=1,
                total_score=5,
                avg_score=5.0,
                max_score=5,
                min_score=5,
                first_date="2024-06-02",
                last_date="2024-06-02",
                rank=2,
            ),
        ]
    )

    assert aggregation.merge_rollup("2024-06", report) == 2

    doc = _raw(store).content
    alice = doc["auto_alice"]
    # the uploaded day outside the report is kept
    assert alice["dailyScores"] == {"2024-06-01": 10, "2024-06-03": 70, "2024-06-02": 20}
    assert alice["monthlyTotal"] == 100
    assert alice["exceedDays"] == 1
    assert alice["monthlyStats"] == {"avgScore": 15.0, "maxScore": 20, "minScore": 10, "totalDays": 2}
    assert doc["auto_dave"]["userIndex"] == 2
    assert doc["auto_dave"]["firstSeen"] == "2024-06-02"


def test_merge_recovers_days_of_a_legacy_record_with_the_same_key(aggregation, store):
    legacy = {
        "userName": "alice",
        "userIndex": 4,
        "dailyScores": {"2024-06-01": 30, "2024-06-02": 12.5, "2024-06-04": "n/a"},
        "firstSeen": "2024-06-01T08:00:00+00:00",
    }
    store.save_file(monthly_path("2024-06"), {"auto_alice": legacy})

    aggregation.merge_daily_result("2024-06-03", {"alice": 10})

    rec = _raw(store).content["auto_alice"]
    assert rec["dailyScores"] == {"2024-06-01": 30, "2024-06-02": 12, "2024-06-03": 10}
    assert rec["monthlyTotal"] == 52
    assert rec["userIndex"] == 4
    assert rec["firstSeen"] == "2024-06-01T08:00:00+00:00"


def test_upload_over_legacy_record_keeps_slot_and_history(aggregation, store):
    legacy = {
        "userName": "bob",
        "userIndex": 2,
        "dailyScores": "corrupt",
        "firstSeen": "2024-06-01T08:00:00+00:00",
        "uploadCount": 3,
    }
    store.save_file(monthly_path("2024-06"), {"dev_bob": legacy})

    rec = aggregation.upsert_from_upload("2024-06", "dev_bob", "bob", "dev", {"2024-06-05": 50})

    assert rec.user_index == 2
    assert rec.upload_count == 4
    assert rec.first_seen == "2024-06-01T08:00:00+00:00"
    assert rec.monthly_total == 50


def test_rollup_recovers_legacy_days(aggregation, store):
    legacy = {"userName": "carol", "userIndex": 1, "dailyScores": {"2024-06-01": 20.0, "bad-key": 1}}
    store.save_file(monthly_path("2024-06"), {"auto_carol": {**legacy, "monthlyTotal": "?"}})

    report = _report(
        [
            UserMonthStats(
                user_name="carol",
                daily_scores={"2024-06-02": 5},
                total_days=1,
                total_score=5,
                avg_score=5.0,
                max_score=5,
                min_score=5,
                first_date="2024-06-02",
                last_date="2024-06-02",
                rank=1,
            )
        ]
    )
    aggregation.merge_rollup("2024-06", report)

    rec = _raw(store).content["auto_carol"]
    assert rec["dailyScores"] == {"2024-06-01": 20, "2024-06-02": 5}
    assert rec["monthlyTotal"] == 25
