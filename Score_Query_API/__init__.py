import logging

import azure.functions as func

from utils.aggregation import AggregationStore
from utils.config import load_config
from utils.http import error, options_response, respond
from utils.object_store import get_store
from utils.periods import is_year_month

logger = logging.getLogger("score-query-api")


def _aggregation_store() -> AggregationStore:
    config = load_config()
    return AggregationStore.from_config(config, get_store(config))


def get_months(aggregation: AggregationStore) -> func.HttpResponse:
    try:
        months = aggregation.list_months()
    except Exception as e:
        logger.error("[Query] Could not list months: %s", e)
        months = []
    return respond({"months": months})


def get_month(aggregation: AggregationStore, year_month: str) -> func.HttpResponse:
    if not is_year_month(year_month):
        return error("yearMonth must be YYYY-MM")
    try:
        users = aggregation.query_month(year_month)
    except Exception as e:
        # an unreadable month is served as an empty one
        logger.error("[Query] Could not read %s: %s", year_month, e)
        users = []
    return respond(
        {
            "yearMonth": year_month,
            "users": users,
            "dailyLimit": aggregation.daily_limit,
            "totalUsers": len(users),
        }
    )


def main(req: func.HttpRequest) -> func.HttpResponse:
    if req.method == "OPTIONS":
        return options_response()
    if req.method != "GET":
        return error("Only GET supported", status=405)

    # route template: "scores/{*route}"
    subpath = (req.route_params.get("route") or "").strip("/")
    logger.info("[Query] GET %s", subpath)

    aggregation = _aggregation_store()
    if subpath == "months":
        return get_months(aggregation)
    if subpath.startswith("data/"):
        return get_month(aggregation, subpath[len("data/"):])
    return error("Not Found", status=404)
