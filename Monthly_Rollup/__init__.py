from __future__ import annotations

import argparse
import logging
import math
from datetime import datetime, timezone
from typing import Mapping, Optional

import azure.functions as func
from pydantic import ValidationError

from utils.aggregation import AggregationStore, WriteConflictError
from utils.config import ConfigError, ScoreConfig, load_config
from utils.object_store import FileStore, get_store
from utils.periods import is_year_month, month_dates, prev_month, utc_now_iso
from utils.schemas import (
    DailySummarySnapshot,
    DayCoverage,
    MonthlyReport,
    ReportStatistics,
    UserMonthStats,
)

from .render import render_csv, render_html

REPORT_DIR = "monthly-reports"
HIGH_RISK_EXCEED_DAYS = 5

logger = logging.getLogger("monthly-rollup")


class RollupError(Exception):
    """Nothing to roll up for the requested month."""


def _round1(value: float) -> float:
    # half-up: 2.25 -> 2.3
    return math.floor(value * 10 + 0.5) / 10


def _resolve_target_month(override: Optional[str] = None, now: datetime | None = None) -> str:
    """
    Explicit month wins; otherwise the previous month on the 1st, else the current month.
    """
    if override:
        return override
    now = now or datetime.now(timezone.utc)
    current = now.strftime("%Y-%m")
    return prev_month(current) if now.day == 1 else current


def load_daily_summaries(store: FileStore, year_month: str) -> dict[str, DailySummarySnapshot]:
    """Snapshots for every date of the month that has one, in date order."""
    summaries: dict[str, DailySummarySnapshot] = {}
    for date in month_dates(year_month):
        stored = store.get_file(f"daily-summary/{date}.json")
        if not stored.exists:
            logger.debug("[Rollup] %s: no snapshot", date)
            continue
        try:
            summaries[date] = DailySummarySnapshot.model_validate(stored.content)
        except ValidationError as e:
            logger.warning("[Rollup] %s: unreadable snapshot skipped (%d errors)", date, e.error_count())
            continue
        logger.info("[Rollup] Loaded %s: %d users", date, summaries[date].total_users)
    logger.info("[Rollup] %d day(s) of data for %s", len(summaries), year_month)
    return summaries


def build_report(
    year_month: str,
    summaries: Mapping[str, DailySummarySnapshot],
    daily_limit: int = 45,
    generated_at: Optional[str] = None,
) -> MonthlyReport:
    """
    Fold daily snapshots into a ranked monthly report.

    Users are ranked 1..N by total score, descending; equal totals keep the order
    in which the users were first encountered.
    """
    stats: dict[str, UserMonthStats] = {}
    for date in sorted(summaries):
        for name, day in summaries[date].users.items():
            score = day.score or 0
            user = stats.get(name)
            if user is None:
                user = stats[name] = UserMonthStats(
                    user_name=name,
                    max_score=score,
                    min_score=score,
                    first_date=date,
                    last_date=date,
                )
            user.daily_scores[date] = score
            user.total_days += 1
            user.total_score += score
            if score > daily_limit:
                user.exceed_days += 1
            user.max_score = max(user.max_score, score)
            user.min_score = min(user.min_score, score)
            if date > user.last_date:
                user.last_date = date

    ranked = sorted(stats.values(), key=lambda u: u.total_score, reverse=True)
    for rank, user in enumerate(ranked, start=1):
        user.avg_score = _round1(user.total_score / user.total_days)
        user.rank = rank

    n = len(ranked)
    statistics = ReportStatistics(
        avg_total_score=_round1(sum(u.total_score for u in ranked) / n) if n else 0.0,
        avg_daily_score=_round1(sum(u.avg_score for u in ranked) / n) if n else 0.0,
        total_exceed_days=sum(u.exceed_days for u in ranked),
        perfect_users=sum(1 for u in ranked if u.exceed_days == 0),
        high_risk_users=sum(1 for u in ranked if u.exceed_days >= HIGH_RISK_EXCEED_DAYS),
    )

    dates = month_dates(year_month)
    return MonthlyReport(
        year_month=year_month,
        generated_at=generated_at or utc_now_iso(),
        total_days=len(dates),
        data_days=len(summaries),
        total_users=n,
        statistics=statistics,
        users=ranked,
        daily_availability=[
            DayCoverage(
                date=d,
                has_data=d in summaries,
                user_count=summaries[d].total_users if d in summaries else 0,
            )
            for d in dates
        ],
    )


def save_report(store: FileStore, report: MonthlyReport, daily_limit: int = 45) -> dict[str, str]:
    """Write the JSON, HTML and CSV renderings; JSON is replaced wholesale."""
    base = f"{REPORT_DIR}/{report.year_month}"
    paths = {"json": f"{base}.json", "html": f"{base}.html", "csv": f"{base}.csv"}

    store.save_file(paths["json"], report.to_doc(), store.get_file(paths["json"]).revision)
    store.put_text(paths["html"], render_html(report, daily_limit))
    store.put_text(paths["csv"], render_csv(report))
    for kind, path in paths.items():
        logger.info("[Rollup] Monthly %s: %s", kind.upper(), path)
    return paths


def run_rollup(
    config: ScoreConfig,
    store: FileStore,
    year_month: str,
    aggregation: Optional[AggregationStore] = None,
) -> MonthlyReport:
    if not is_year_month(year_month):
        raise ConfigError(f"Target month must be YYYY-MM, got {year_month!r}")
    aggregation = aggregation or AggregationStore.from_config(config, store)

    logger.info("[Rollup] Monthly rollup for %s", year_month)
    summaries = load_daily_summaries(store, year_month)
    if not summaries:
        raise RollupError(f"No daily snapshots found for {year_month}")

    report = build_report(year_month, summaries, daily_limit=config.daily_limit)
    logger.info("[Rollup] %d users over %d/%d days", report.total_users, report.data_days, report.total_days)

    total = aggregation.merge_rollup(year_month, report)
    logger.info("[Rollup] Monthly dataset now holds %d users", total)

    save_report(store, report, daily_limit=config.daily_limit)
    logger.info(
        "[Rollup] perfect=%d high-risk=%d avg total=%s",
        report.statistics.perfect_users,
        report.statistics.high_risk_users,
        report.statistics.avg_total_score,
    )
    return report


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Build the monthly rollup report")
    parser.add_argument("--month", help="Target month YYYY-MM (default: TARGET_MONTH or auto)")
    args = parser.parse_args(argv)

    try:
        config = load_config()
        month = _resolve_target_month(args.month or config.target_month)
        run_rollup(config, get_store(config), month)
    except (ConfigError, RollupError, WriteConflictError) as e:
        logger.error("[Rollup] %s", e)
        return 1
    return 0


def main(mytimer: func.TimerRequest) -> None:
    """Azure Functions timer entrypoint."""
    logger.info("[Rollup] Timer fired at %s", utc_now_iso())
    if getattr(mytimer, "past_due", False):
        logger.warning("[Rollup] Timer is running past due.")

    config = load_config()
    month = _resolve_target_month(config.target_month)
    try:
        run_rollup(config, get_store(config), month)
    except Exception:
        logger.exception("[Rollup] Rollup failed for %s", month)
        raise
