"""Static renderings of a MonthlyReport (CSV for spreadsheets, a single HTML page)."""

from __future__ import annotations

import html

import pandas as pd

from utils.schemas import MonthlyReport

BOM = "\ufeff"
TOP_USERS = 50
MATRIX_USERS = 100

CSV_COLUMNS = ["Rank", "Name", "Total", "Average", "Days", "Exceed days", "Max", "Min"]


def render_csv(report: MonthlyReport) -> str:
    """Ranking table; BOM first so spreadsheet apps pick UTF-8."""
    df = pd.DataFrame(
        [
            [u.rank, u.user_name, u.total_score, u.avg_score, u.total_days, u.exceed_days, u.max_score, u.min_score]
            for u in report.users
        ],
        columns=CSV_COLUMNS,
    )
    return BOM + df.to_csv(index=False, lineterminator="\n")


_STYLE = """
body{font-family:-apple-system,Segoe UI,Roboto,sans-serif;margin:24px;color:#222}
.cards{display:flex;gap:12px;flex-wrap:wrap}
.card{border:1px solid #ddd;border-radius:6px;padding:12px 16px;min-width:140px}
.card b{display:block;font-size:22px}
table{border-collapse:collapse;margin:12px 0;font-size:13px}
th,td{border:1px solid #ddd;padding:4px 8px;text-align:right}
th:first-child,td.name{text-align:left}
.exceed{background:#fde2e1;color:#b00}
.nodata{background:#f2f2f2;color:#999}
.calendar td{width:64px;text-align:center}
"""


def _card(label: str, value) -> str:
    return f'<div class="card">{html.escape(label)}<b>{html.escape(str(value))}</b></div>'


def _calendar(report: MonthlyReport) -> str:
    cells = []
    for day in report.daily_availability:
        cls = "" if day.has_data else ' class="nodata"'
        label = f"{day.user_count} users" if day.has_data else "no data"
        cells.append(f"<td{cls}>{html.escape(day.date[-2:])}<br><small>{label}</small></td>")
    rows = ["<tr>" + "".join(cells[i:i + 7]) + "</tr>" for i in range(0, len(cells), 7)]
    return '<table class="calendar">' + "".join(rows) + "</table>"


def _ranking(report: MonthlyReport) -> str:
    head = "".join(f"<th>{html.escape(c)}</th>" for c in CSV_COLUMNS)
    rows = []
    for u in report.users[:TOP_USERS]:
        cls = ' class="exceed"' if u.exceed_days else ""
        rows.append(
            f"<tr{cls}><td>{u.rank}</td><td class=\"name\">{html.escape(u.user_name)}</td>"
            f"<td>{u.total_score}</td><td>{u.avg_score}</td><td>{u.total_days}</td>"
            f"<td>{u.exceed_days}</td><td>{u.max_score}</td><td>{u.min_score}</td></tr>"
        )
    return f"<table><tr>{head}</tr>{''.join(rows)}</table>"


def _matrix(report: MonthlyReport, limit: int) -> str:
    dates = [d.date for d in report.daily_availability]
    head = "<th>Name</th>" + "".join(f"<th>{d[-2:]}</th>" for d in dates)
    rows = []
    for u in report.users[:MATRIX_USERS]:
        cells = []
        for d in dates:
            score = u.daily_scores.get(d)
            if score is None:
                cells.append('<td class="nodata">-</td>')
            else:
                cls = ' class="exceed"' if score > limit else ""
                cells.append(f"<td{cls}>{score}</td>")
        rows.append(f'<tr><td class="name">{html.escape(u.user_name)}</td>{"".join(cells)}</tr>')
    return f"<table><tr>{head}</tr>{''.join(rows)}</table>"


def render_html(report: MonthlyReport, daily_limit: int = 45) -> str:
    s = report.statistics
    title = f"Score report {report.year_month}"
    cards = "".join(
        [
            _card("Users", report.total_users),
            _card("Days with data", f"{report.data_days}/{report.total_days}"),
            _card("Avg total", s.avg_total_score),
            _card("Avg daily", s.avg_daily_score),
            _card("Exceed days", s.total_exceed_days),
            _card("Never exceeded", s.perfect_users),
            _card("High risk", s.high_risk_users),
        ]
    )
    return (
        "<!DOCTYPE html>\n"
        f'<html><head><meta charset="utf-8"><title>{html.escape(title)}</title>'
        f"<style>{_STYLE}</style></head><body>"
        f"<h1>{html.escape(title)}</h1>"
        f"<p>Generated {html.escape(report.generated_at)}, daily limit {daily_limit}</p>"
        f'<div class="cards">{cards}</div>'
        f"<h2>Coverage</h2>{_calendar(report)}"
        f"<h2>Top {TOP_USERS}</h2>{_ranking(report)}"
        f"<h2>Daily scores</h2>{_matrix(report, daily_limit)}"
        "</body></html>\n"
    )
