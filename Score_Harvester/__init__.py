from __future__ import annotations

import argparse
import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import azure.functions as func
import requests
from pymongo.errors import PyMongoError

from utils.aggregation import AggregationStore, WriteConflictError
from utils.config import ConfigError, ScoreConfig, load_config
from utils.object_store import ConflictError, FileStore, get_store
from utils.periods import utc_now_iso
from utils.schemas import DailySummarySnapshot, DayResult, DiscoveredUser

from .score_api import RemoteScoreClient, ScoreApiError, ScoreSource

SUMMARY_DIR = "daily-summary"
DISCOVERED_PATH = "discovered-users.json"
SNAPSHOT_VERSION = "2.0"
SNAPSHOT_SOURCE = "github-actions"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

logger = logging.getLogger("score-harvester")


class HarvestError(Exception):
    """The harvest cannot run at all (e.g. nobody to query)."""


def summary_path(date: str) -> str:
    return f"{SUMMARY_DIR}/{date}.json"


@dataclass
class HarvestResult:
    date: str
    skipped: bool = False
    total_users: int = 0
    success_count: int = 0
    fail_count: int = 0
    exceed_count: int = 0
    monthly_users: int = 0

    @property
    def exit_code(self) -> int:
        attempted = self.success_count + self.fail_count
        if attempted and self.fail_count > attempted / 2:
            return EXIT_PARTIAL
        return EXIT_OK


# ---------- roster ----------
def _read_user_list(path: str) -> list[str]:
    p = Path(path)
    if not p.is_file():
        return []
    names = []
    for line in p.read_text(encoding="utf-8").splitlines():
        name = line.strip()
        if name and not name.startswith("#"):
            names.append(name)
    return names


def save_discovered(store: FileStore, roster: list[DiscoveredUser]) -> None:
    """Overwrite the discovery audit dump. Audit only; nothing reads scores from it."""
    doc = {
        "discoveredAt": utc_now_iso(),
        "count": len(roster),
        "users": [u.to_doc() for u in roster],
    }
    current = store.get_file(DISCOVERED_PATH)
    try:
        store.save_file(DISCOVERED_PATH, doc, current.revision)
    except ConflictError as e:
        logger.warning("[Harvester] Discovery audit not written (concurrent update): %s", e)


def collect_users(
    config: ScoreConfig,
    aggregation: AggregationStore,
    store: FileStore,
    source: Optional[ScoreSource] = None,
) -> list[str]:
    """
    Names to query, de-duplicated in first-seen order: stored monthly datasets,
    EXTRA_USERS, the user-list file, then the discovered roster.
    """
    users: dict[str, None] = {}

    try:
        for name in aggregation.known_user_names():
            users.setdefault(name, None)
    except (OSError, ValueError, PyMongoError) as e:
        logger.warning("[Harvester] Could not read stored monthly data: %s", e)

    for name in config.extra_users:
        users.setdefault(name, None)

    for name in _read_user_list(config.user_list_file):
        users.setdefault(name, None)

    if source is not None and config.enable_discovery:
        roster = source.discover_roster(config.target_date)
        logger.info("[Harvester] Discovery found %d names", len(roster))
        save_discovered(store, roster)
        for u in roster:
            users.setdefault(u.name, None)

    return list(users)


# ---------- run ----------
def run_harvest(
    config: ScoreConfig,
    source: ScoreSource,
    store: FileStore,
    aggregation: Optional[AggregationStore] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> HarvestResult:
    """
    One harvest run for `config.target_date`.

    Users are queried one at a time; whatever was gathered is persisted even when
    many lookups fail. The caller turns `HarvestResult.exit_code` into a status.
    """
    config.require_target_date()
    date = config.target_date
    aggregation = aggregation or AggregationStore.from_config(config, store)
    logger.info("[Harvester] Daily harvest for %s (force=%s)", date, config.force_update)

    path = summary_path(date)
    if not config.force_update:
        existing = store.get_file(path)
        if existing.exists:
            age = ""
            if existing.updated_at is not None:
                minutes = (datetime.now(timezone.utc) - existing.updated_at).total_seconds() // 60
                age = f" ({int(minutes)} minutes ago)"
            logger.warning("[Harvester] Snapshot already exists%s: %s", age, path)
            logger.info("[Harvester] Set FORCE_UPDATE=true to harvest again")
            return HarvestResult(date=date, skipped=True)

    users = collect_users(config, aggregation, store, source)
    logger.info("[Harvester] %d users to query", len(users))
    if not users:
        raise HarvestError("User list is empty; add names to the user list file or EXTRA_USERS")

    delay = config.delay_ms / 1000.0
    results: dict[str, DayResult] = {}
    result = HarvestResult(date=date, total_users=len(users))

    for i, name in enumerate(users, start=1):
        logger.info("[Harvester] [%d/%d] Querying %s", i, len(users), name)
        try:
            score = source.lookup_score(name, date, date)
        except (requests.RequestException, ScoreApiError) as e:
            logger.error("[Harvester] Lookup failed for %s: %s", name, e)
            results[name] = DayResult(score=0, is_exceed=False, error=True, error_msg=str(e))
            result.fail_count += 1
            sleep(delay * 2)
            continue

        is_exceed = score > config.daily_limit
        results[name] = DayResult(score=score, is_exceed=is_exceed, query_time=utc_now_iso())
        result.success_count += 1
        if is_exceed:
            result.exceed_count += 1
        sleep(delay)

    snapshot = DailySummarySnapshot(
        date=date,
        generated_at=utc_now_iso(),
        total_users=len(users),
        success_count=result.success_count,
        fail_count=result.fail_count,
        exceed_count=result.exceed_count,
        normal_count=result.success_count - result.exceed_count,
        users=results,
        meta={
            "source": SNAPSHOT_SOURCE,
            "version": SNAPSHOT_VERSION,
            "apiBase": config.masked_base_url,
        },
    )
    revision = store.get_file(path).revision if config.force_update else None
    try:
        store.save_file(path, snapshot.to_doc(), revision)
        logger.info("[Harvester] Snapshot saved: %s", path)
    except ConflictError as e:
        logger.warning("[Harvester] Snapshot for %s written by another run; keeping theirs: %s", date, e)

    result.monthly_users = aggregation.merge_daily_result(date, results)

    logger.info(
        "[Harvester] Done: fetched %d/%d, exceeded %d, failed %d, month users %d",
        result.success_count,
        len(users),
        result.exceed_count,
        result.fail_count,
        result.monthly_users,
    )
    if result.exit_code == EXIT_PARTIAL:
        logger.error("[Harvester] More than half of the lookups failed (%d/%d)", result.fail_count, len(users))
    return result


def harvest_from_config(config: ScoreConfig) -> HarvestResult:
    config.require_remote()
    config.require_target_date()
    store = get_store(config)
    client = RemoteScoreClient(config)
    return run_harvest(config, client, store)


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Harvest one day of remote scores")
    parser.add_argument("--date", help="Target date YYYY-MM-DD (default: TARGET_DATE or today, UTC)")
    parser.add_argument("--force", action="store_true", help="Replace an existing daily snapshot")
    args = parser.parse_args(argv)

    try:
        config = load_config()
        overrides = {}
        if args.date:
            overrides["target_date"] = args.date
        if args.force:
            overrides["force_update"] = True
        if overrides:
            config = dataclasses.replace(config, **overrides)
        result = harvest_from_config(config)
    except ConfigError as e:
        logger.error("[Harvester] Configuration error: %s", e)
        return EXIT_FATAL
    except (HarvestError, WriteConflictError) as e:
        logger.error("[Harvester] Harvest aborted: %s", e)
        return EXIT_FATAL
    return result.exit_code


def main(mytimer: func.TimerRequest) -> None:
    """Azure Functions timer entrypoint."""
    logger.info("[Harvester] Timer fired at %s", utc_now_iso())
    if getattr(mytimer, "past_due", False):
        logger.warning("[Harvester] Timer is running past due.")

    try:
        result = harvest_from_config(load_config())
    except Exception:
        logger.exception("[Harvester] Harvest failed")
        raise

    if result.exit_code == EXIT_PARTIAL:
        # snapshot and monthly data are already stored at this point
        raise HarvestError(f"Partial harvest for {result.date}: {result.fail_count} failed lookups")
