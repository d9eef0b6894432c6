import logging

import azure.functions as func

from utils.aggregation import AggregationStore, WriteConflictError, make_user_id
from utils.config import load_config
from utils.http import error, options_response, respond
from utils.object_store import get_store
from utils.periods import is_iso_date, is_year_month, year_month_of

logger = logging.getLogger("score-upload-api")


def _aggregation_store() -> AggregationStore:
    config = load_config()
    return AggregationStore.from_config(config, get_store(config))


def _validate(body):
    """Return (payload, None) or (None, error message)."""
    if not isinstance(body, dict):
        return None, "Request body must be a JSON object"

    user_name = body.get("userName")
    if not isinstance(user_name, str) or not user_name.strip():
        return None, "userName is required"

    year_month = body.get("yearMonth")
    if not year_month:
        return None, "yearMonth is required"
    if not is_year_month(year_month):
        return None, "yearMonth must be YYYY-MM"

    daily = body.get("dailyScores")
    if not isinstance(daily, dict):
        return None, "dailyScores must be an object of date -> score"
    for date, score in daily.items():
        if not is_iso_date(date) or year_month_of(date) != year_month:
            return None, f"dailyScores key {date!r} is not a date in {year_month}"
        if isinstance(score, bool) or not isinstance(score, int):
            return None, f"dailyScores[{date}] must be an integer"

    device_id = body.get("deviceId")
    if device_id is not None and not isinstance(device_id, str):
        return None, "deviceId must be a string"

    return {
        "user_name": user_name.strip(),
        "year_month": year_month,
        "device_id": device_id or None,
        "daily_scores": daily,
        "upload_time": body.get("uploadTime") if isinstance(body.get("uploadTime"), str) else None,
    }, None


def main(req: func.HttpRequest) -> func.HttpResponse:
    if req.method == "OPTIONS":
        return options_response()
    if req.method != "POST":
        return error("Only POST supported", status=405)

    try:
        body = req.get_json()
    except ValueError:
        return error("Invalid JSON body")

    payload, problem = _validate(body)
    if problem:
        logger.warning("[Upload] Rejected: %s", problem)
        return error(problem)

    user_id = make_user_id(payload["device_id"], payload["user_name"])
    logger.info(
        "[Upload] %s for %s (%d day(s))", user_id, payload["year_month"], len(payload["daily_scores"])
    )

    try:
        record = _aggregation_store().upsert_from_upload(
            payload["year_month"],
            user_id,
            payload["user_name"],
            payload["device_id"],
            payload["daily_scores"],
            upload_time=payload["upload_time"],
        )
    except WriteConflictError as e:
        logger.error("[Upload] %s: %s", user_id, e)
        return error("Concurrent update, please retry", status=409)
    except Exception as e:
        logger.exception("[Upload] Failed to store upload for %s", user_id)
        return error(f"Upload failed: {e}", status=500)

    return respond(
        {
            "success": True,
            "monthlyTotal": record.monthly_total,
            "userIndex": record.user_index,
        }
    )
