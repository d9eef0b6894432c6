#!/usr/bin/env python3
"""
Is today's harvest there?

Exit 0 when daily-summary/{today}.json exists and was written within the last
MAX_AGE_HOURS, 1 otherwise.

    SCORE_STORE=local SCORE_DATA_ROOT=./score-data python tools/health_check.py
"""
import argparse
import logging
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.config import ConfigError, load_config  # noqa: E402
from utils.object_store import get_store  # noqa: E402

MAX_AGE_HOURS = 26

logger = logging.getLogger("health-check")


def check_daily_summary(store, now=None, max_age_hours=MAX_AGE_HOURS):
    """Return (ok, message) for the snapshot of `now`'s UTC date."""
    now = now or datetime.now(timezone.utc)
    today = now.strftime("%Y-%m-%d")
    path = f"daily-summary/{today}.json"

    stored = store.get_file(path)
    if not stored.exists:
        return False, f"{path} is missing"

    users = stored.content.get("totalUsers", 0) if isinstance(stored.content, dict) else 0
    if stored.updated_at is not None:
        updated = stored.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        age = now - updated
        if age > timedelta(hours=max_age_hours):
            return False, f"{path} is stale ({age.total_seconds() / 3600:.1f}h old)"
        return True, f"{path} present, {users} users, {age.total_seconds() / 3600:.1f}h old"
    return True, f"{path} present, {users} users"


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check that today's daily snapshot exists")
    parser.add_argument("--max-age-hours", type=float, default=MAX_AGE_HOURS)
    args = parser.parse_args(argv)

    try:
        store = get_store(load_config())
    except (ConfigError, RuntimeError) as e:
        logger.error("[Health] %s", e)
        return 1

    ok, message = check_daily_summary(store, max_age_hours=args.max_age_hours)
    if ok:
        logger.info("[Health] OK: %s", message)
        return 0
    logger.error("[Health] FAIL: %s", message)
    return 1


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(main())
