"""
Monthly dataset store.

One JSON file per calendar month (`data/{yearMonth}.json`) maps userId -> UserRecord.
All writers go through `_update_month`, a bounded read-merge-write loop on top of the
store's revision tokens, so a concurrent writer is never silently overwritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar, Union

from pydantic import ValidationError

from utils.object_store import ConflictError, FileStore
from utils.periods import is_iso_date, is_year_month, utc_now_iso, year_month_of
from utils.schemas import DayResult, MonthlyReport, MonthlyStats, UserRecord

DATA_DIR = "data"
HARVEST_DEVICE_ID = "github-actions"

logger = logging.getLogger("score-aggregation")

T = TypeVar("T")


class WriteConflictError(Exception):
    """Conditional writes kept losing to other writers; the update was not stored."""


def monthly_path(year_month: str) -> str:
    return f"{DATA_DIR}/{year_month}.json"


def make_user_id(device_id: Optional[str], user_name: str) -> str:
    return f"{device_id or 'auto'}_{user_name}"


@dataclass
class MonthlyDataset:
    """
    Ordered userId -> entry map. Entries that fail validation stay as the raw dict
    they were read as and are written back untouched, until a writer touches that
    userId; `salvage` then turns them into a UserRecord without losing days.
    """

    year_month: str
    entries: dict[str, Union[UserRecord, dict]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def from_doc(cls, year_month: str, doc: Any) -> "MonthlyDataset":
        if not isinstance(doc, dict):
            raise ValueError(f"Monthly dataset {year_month} is not a JSON object")
        entries: dict[str, Union[UserRecord, dict]] = {}
        for user_id, raw in doc.items():
            try:
                entries[user_id] = UserRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning(
                    "[Aggregation] %s: keeping legacy record %r as-is (%d validation errors)",
                    year_month,
                    user_id,
                    e.error_count(),
                )
                entries[user_id] = raw
        return cls(year_month, entries)

    def to_doc(self) -> dict[str, Any]:
        return {
            uid: (e.to_doc() if isinstance(e, UserRecord) else e) for uid, e in self.entries.items()
        }

    def records(self) -> Iterator[tuple[str, UserRecord]]:
        for uid, e in self.entries.items():
            if isinstance(e, UserRecord):
                yield uid, e

    def ensure(
        self,
        user_id: str,
        user_name: str,
        device_id: Optional[str],
        now: str,
        first_seen: Optional[str] = None,
    ) -> UserRecord:
        """Existing record for `user_id`, or a new one with the next userIndex."""
        existing = self.entries.get(user_id)
        if isinstance(existing, UserRecord):
            return existing
        rec = self.salvage(user_id)
        if rec is None:
            rec = UserRecord(
                user_name=user_name,
                user_index=self._next_index(existing),
                device_id=device_id,
                first_seen=first_seen or now,
                last_update=now,
            )
        else:
            rec.first_seen = rec.first_seen or first_seen or now
            rec.last_update = rec.last_update or now
        self.entries[user_id] = rec
        return rec

    def salvage(self, user_id: str) -> Optional[UserRecord]:
        """
        Best-effort UserRecord from a legacy entry: keeps its slot, every day whose
        score reads as a number, and firstSeen/uploadCount/lastUpdate. None when
        `user_id` is not a legacy entry.
        """
        legacy = self.entries.get(user_id)
        if not isinstance(legacy, dict):
            return None

        scores: dict[str, int] = {}
        raw_scores = legacy.get("dailyScores")
        if isinstance(raw_scores, Mapping):
            for date, value in raw_scores.items():
                score = _as_int(value)
                if is_iso_date(date) and score is not None:
                    scores[date] = score
                else:
                    logger.warning(
                        "[Aggregation] %s: dropping unreadable day %r=%r of legacy record %r",
                        self.year_month,
                        date,
                        value,
                        user_id,
                    )

        name = legacy.get("userName")
        device_id = legacy.get("deviceId")
        uploads = _as_int(legacy.get("uploadCount"))
        rec = UserRecord(
            user_name=name if isinstance(name, str) and name else user_id.split("_", 1)[-1],
            user_index=self._next_index(legacy),
            device_id=device_id if isinstance(device_id, str) else None,
            daily_scores=scores,
            first_seen=_as_str(legacy.get("firstSeen")),
            last_update=_as_str(legacy.get("lastUpdate")),
            upload_count=uploads,
        )
        logger.info(
            "[Aggregation] %s: legacy record %r recovered with %d day(s)", self.year_month, user_id, len(scores)
        )
        return rec

    def _next_index(self, legacy: Optional[dict]) -> int:
        # a legacy entry being replaced keeps its slot
        if isinstance(legacy, dict):
            idx = legacy.get("userIndex")
            if isinstance(idx, int) and not isinstance(idx, bool):
                return idx
            return len(self.entries)
        return len(self.entries) + 1


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _score_of(result: Any) -> int:
    if isinstance(result, DayResult):
        return result.score
    if isinstance(result, Mapping):
        return int(result.get("score") or 0)
    return int(result or 0)


class AggregationStore:
    def __init__(
        self,
        store: FileStore,
        daily_limit: int = 45,
        max_write_retries: int = 3,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.store = store
        self.daily_limit = daily_limit
        self.max_write_retries = max_write_retries
        self._now = clock

    @classmethod
    def from_config(cls, config, store: FileStore) -> "AggregationStore":
        return cls(store, daily_limit=config.daily_limit, max_write_retries=config.max_write_retries)

    # ---------- reads ----------
    def load_month(self, year_month: str) -> MonthlyDataset:
        return MonthlyDataset.from_doc(year_month, self.store.get_file(monthly_path(year_month)).content)

    def list_months(self) -> list[str]:
        """Months with a dataset, newest first."""
        months = []
        for path in self.store.list_files(DATA_DIR):
            name = path.rsplit("/", 1)[-1]
            if name.endswith(".json") and is_year_month(name[:-5]):
                months.append(name[:-5])
        return sorted(months, reverse=True)

    def known_user_names(self) -> list[str]:
        """Every userName seen in any stored month, first-seen order, oldest month first."""
        names: dict[str, None] = {}
        for ym in sorted(self.list_months()):
            for entry in self.load_month(ym).entries.values():
                name = entry.user_name if isinstance(entry, UserRecord) else entry.get("userName")
                if isinstance(name, str) and name:
                    names.setdefault(name, None)
        return list(names)

    def query_month(self, year_month: str) -> list[dict[str, Any]]:
        """
        Records sorted by userIndex, with `exceedDays` expanded to the list of
        {date, score, limit} entries above the daily limit.
        """
        dataset = self.load_month(year_month)
        users = []
        for _, rec in sorted(dataset.records(), key=lambda item: item[1].user_index):
            doc = rec.to_doc()
            doc["exceedDays"] = [
                {"date": d, "score": s, "limit": self.daily_limit}
                for d, s in sorted(rec.daily_scores.items())
                if s > self.daily_limit
            ]
            users.append(doc)
        skipped = len(dataset) - len(users)
        if skipped:
            logger.warning("[Aggregation] %s: %d legacy record(s) left out of query", year_month, skipped)
        return users

    # ---------- writes ----------
    def merge_daily_result(self, date: str, results: Mapping[str, Any]) -> int:
        """
        Fold one day's per-user results into the month containing `date`.

        A date already present is overwritten, never added to, so running the same
        merge twice leaves the dataset unchanged. Returns the month's user count.
        """
        year_month = year_month_of(date)
        scores = {name: _score_of(r) for name, r in results.items()}

        def apply(ds: MonthlyDataset) -> int:
            now = self._now()
            for name, score in scores.items():
                rec = ds.ensure(make_user_id(None, name), name, HARVEST_DEVICE_ID, now)
                if rec.daily_scores.get(date) != score:
                    rec.daily_scores[date] = score
                    rec.last_update = now
                rec.recompute(self.daily_limit)
            return len(ds)

        _, total = self._update_month(year_month, apply)
        logger.info("[Aggregation] Monthly data updated: %s (%d users)", monthly_path(year_month), total)
        return total

    def upsert_from_upload(
        self,
        year_month: str,
        user_id: str,
        user_name: str,
        device_id: Optional[str],
        daily_scores: Mapping[str, int],
        upload_time: Optional[str] = None,
    ) -> UserRecord:
        """
        Replace one user's month-to-date scores with an uploaded map.

        The userIndex of an existing user is kept; a new user gets datasetSize + 1.
        """

        def apply(ds: MonthlyDataset) -> UserRecord:
            now = self._now()
            existing = ds.entries.get(user_id)
            prev = existing if isinstance(existing, UserRecord) else ds.salvage(user_id)
            rec = UserRecord(
                user_name=user_name,
                user_index=prev.user_index if prev else ds._next_index(existing),
                device_id=device_id,
                daily_scores=dict(daily_scores),
                first_seen=prev.first_seen if prev and prev.first_seen else now,
                last_update=upload_time or now,
                upload_count=((prev.upload_count or 0) if prev else 0) + 1,
                monthly_stats=prev.monthly_stats if prev else None,
            )
            rec.recompute(self.daily_limit)
            ds.entries[user_id] = rec
            return rec

        _, rec = self._update_month(year_month, apply)
        logger.info(
            "[Aggregation] Upload stored for %s in %s (index=%d, total=%d, uploads=%d)",
            user_id,
            year_month,
            rec.user_index,
            rec.monthly_total,
            rec.upload_count,
        )
        return rec

    def merge_rollup(self, year_month: str, report: MonthlyReport) -> int:
        """
        Feed a monthly report back into the month's dataset.

        dailyScores are merged key by key (never replaced wholesale) and the totals are
        recomputed from the merged map; rollup statistics land under `monthlyStats`.
        """

        def apply(ds: MonthlyDataset) -> int:
            now = self._now()
            for u in report.users:
                rec = ds.ensure(
                    make_user_id(None, u.user_name),
                    u.user_name,
                    HARVEST_DEVICE_ID,
                    now,
                    first_seen=u.first_date,
                )
                before = rec.to_doc()
                rec.daily_scores.update(u.daily_scores)
                rec.recompute(self.daily_limit)
                rec.monthly_stats = MonthlyStats(
                    avg_score=u.avg_score,
                    max_score=u.max_score,
                    min_score=u.min_score,
                    total_days=u.total_days,
                )
                if rec.to_doc() != before:
                    rec.last_update = now
            return len(ds)

        _, total = self._update_month(year_month, apply)
        logger.info("[Aggregation] Rollup merged into %s (%d users)", monthly_path(year_month), total)
        return total

    def _update_month(
        self, year_month: str, mutate: Callable[[MonthlyDataset], T]
    ) -> tuple[MonthlyDataset, T]:
        path = monthly_path(year_month)
        attempts = self.max_write_retries + 1
        for attempt in range(1, attempts + 1):
            stored = self.store.get_file(path)
            dataset = MonthlyDataset.from_doc(year_month, stored.content)
            result = mutate(dataset)
            doc = dataset.to_doc()
            if stored.exists and doc == stored.content:
                logger.debug("[Aggregation] %s unchanged; skipping write", path)
                return dataset, result
            try:
                self.store.save_file(path, doc, stored.revision)
            except ConflictError as e:
                logger.warning(
                    "[Aggregation] Write conflict on %s (attempt %d/%d): %s", path, attempt, attempts, e
                )
                continue
            return dataset, result
        raise WriteConflictError(f"Gave up writing {path} after {attempts} conflicting attempts")
