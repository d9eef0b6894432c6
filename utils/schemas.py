"""
Record shapes persisted in the score store.

Every model reads and writes the camelCase keys the JSON files have always used
(`userName`, `dailyScores`, ...). Unknown keys are kept so older files survive a
read/write cycle.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------- Monthly dataset ----------
class MonthlyStats(CamelModel):
    avg_score: float = 0.0
    max_score: int = 0
    min_score: int = 0
    total_days: int = 0


class UserRecord(CamelModel):
    user_name: str
    user_index: int
    device_id: Optional[str] = None
    daily_scores: Dict[str, int] = Field(default_factory=dict)
    monthly_total: int = 0
    exceed_days: int = 0
    first_seen: Optional[str] = None
    last_update: Optional[str] = None
    upload_count: Optional[int] = None
    monthly_stats: Optional[MonthlyStats] = None

    def recompute(self, daily_limit: int) -> None:
        """Derive totals from dailyScores; never adjusted incrementally."""
        scores = list(self.daily_scores.values())
        self.monthly_total = sum(scores)
        self.exceed_days = sum(1 for s in scores if s > daily_limit)


# ---------- Daily harvest ----------
class DayResult(CamelModel):
    score: int = 0
    is_exceed: bool = False
    query_time: Optional[str] = None
    error: Optional[bool] = None
    error_msg: Optional[str] = None


class DailySummarySnapshot(CamelModel):
    date: str
    generated_at: str
    total_users: int = 0
    success_count: int = 0
    fail_count: int = 0
    exceed_count: int = 0
    normal_count: int = 0
    users: Dict[str, DayResult] = Field(default_factory=dict)
    meta: Dict[str, Any] = Field(default_factory=dict)


class DiscoveredUser(CamelModel):
    name: str
    remote_person_id: Optional[str] = None
    department: Optional[str] = None
    score: int = 0


# ---------- Monthly report ----------
class UserMonthStats(CamelModel):
    user_name: str
    daily_scores: Dict[str, int] = Field(default_factory=dict)
    total_days: int = 0
    total_score: int = 0
    avg_score: float = 0.0
    exceed_days: int = 0
    max_score: int = 0
    min_score: int = 0
    first_date: str
    last_date: str
    rank: int = 0


class ReportStatistics(CamelModel):
    avg_total_score: float = 0.0
    avg_daily_score: float = 0.0
    total_exceed_days: int = 0
    perfect_users: int = 0
    high_risk_users: int = 0


class DayCoverage(CamelModel):
    date: str
    has_data: bool
    user_count: int = 0


class MonthlyReport(CamelModel):
    year_month: str
    generated_at: str
    total_days: int
    data_days: int
    total_users: int
    statistics: ReportStatistics
    users: List[UserMonthStats] = Field(default_factory=list)
    daily_availability: List[DayCoverage] = Field(default_factory=list)
