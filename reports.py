"""
reports.py
----------
Financial summaries computed from rows already fetched by ``queries.py``.

Nothing in here touches the database: every function takes DataFrames (or
the dict produced by another function in this module) plus ``today`` and
returns plain dicts ready for JSON. Figures are rounded to 2 decimals only
when the output dict is built.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import pandas as pd

TRANSACTION_COLUMNS = ["id", "user_id", "category_id", "category_name", "amount", "type", "date", "note"]
GOAL_COLUMNS = ["id", "name", "description", "goal_amount", "saved_amount", "status", "start_date", "end_date"]
CONTRIBUTION_COLUMNS = ["id", "goal_id", "amount", "date"]

TOP_CATEGORY_LIMIT = 10
LARGEST_TRANSACTION_LIMIT = 5
TOP_GOAL_LIMIT = 5
TREND_MONTHS = 12
AT_RISK_DAYS = 30
AT_RISK_PROGRESS = 50
RECENT_ACTIVITY_DAYS = 30
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _round(value) -> float:
    return round(float(value), 2)


def _mean(values) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def _as_date(value) -> Optional[date]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.to_datetime(value).date()


def _iso(value) -> Optional[str]:
    value = _as_date(value)
    return value.isoformat() if value else None


# --- Transactions ---

def _prep_transactions(df: Optional[pd.DataFrame]) -> pd.DataFrame:
    """
    Normalizes a transactions frame: numeric amounts, datetime dates, a
    ``month`` column and split income/expense columns.
    """
    if df is None or df.empty:
        df = pd.DataFrame(columns=TRANSACTION_COLUMNS)
    df = df.copy()
    for col in TRANSACTION_COLUMNS:
        if col not in df.columns:
            df[col] = None

    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0.0).astype(float)
    df["date"] = pd.to_datetime(df["date"])
    df["month"] = df["date"].dt.to_period("M").astype(str)
    df["category_name"] = df["category_name"].fillna("Uncategorized")
    df["income"] = df["amount"].where(df["type"] == "income", 0.0)
    df["expense"] = df["amount"].where(df["type"] == "expense", 0.0)
    return df


def _trailing_months(today: date, count: int = TREND_MONTHS) -> List[str]:
    end = pd.Timestamp(today).to_period("M")
    return [str(p) for p in pd.period_range(end=end, periods=count, freq="M")]


def transaction_report(df: Optional[pd.DataFrame], today: date) -> Dict:
    """Totals, category and month breakdowns, top lists and a 12-month trend."""
    df = _prep_transactions(df)

    income = df.loc[df["type"] == "income", "amount"]
    expense = df.loc[df["type"] == "expense", "amount"]
    total_income = float(income.sum())
    total_expense = float(expense.sum())

    summary = {
        "total_income": _round(total_income),
        "total_expense": _round(total_expense),
        "net_balance": _round(total_income - total_expense),
        "income_count": int(len(income)),
        "expense_count": int(len(expense)),
        "avg_income": _round(income.mean()) if len(income) else 0.0,
        "avg_expense": _round(expense.mean()) if len(expense) else 0.0,
        "total_transactions": int(len(df)),
    }

    by_category = []
    top_categories = []
    by_month = []
    if not df.empty:
        grouped = (
            df.groupby(["category_id", "category_name", "type"])["amount"]
            .agg(total="sum", entries="count")
            .reset_index()
            .sort_values(["total", "category_id"], ascending=[False, True])
        )
        by_category = [
            {
                "category_id": int(row.category_id),
                "category_name": row.category_name,
                "type": row.type,
                "total": _round(row.total),
                "count": int(row.entries),
            }
            for row in grouped.itertuples(index=False)
        ]

        ranked = (
            df.groupby(["category_id", "category_name"])["amount"]
            .agg(total="sum", entries="count")
            .reset_index()
            .sort_values(["total", "category_id"], ascending=[False, True])
            .head(TOP_CATEGORY_LIMIT)
        )
        top_categories = [
            {
                "category_id": int(row.category_id),
                "category_name": row.category_name,
                "total": _round(row.total),
                "count": int(row.entries),
            }
            for row in ranked.itertuples(index=False)
        ]

        monthly = (
            df.groupby("month")
            .agg(income=("income", "sum"), expense=("expense", "sum"), entries=("amount", "count"))
            .reset_index()
            .sort_values("month")
        )
        by_month = [
            {
                "month": row.month,
                "income": _round(row.income),
                "expense": _round(row.expense),
                "net": _round(row.income - row.expense),
                "count": int(row.entries),
            }
            for row in monthly.itertuples(index=False)
        ]

    largest = df.sort_values(["amount", "id"], ascending=[False, True]).head(LARGEST_TRANSACTION_LIMIT)
    largest_transactions = [
        {
            "id": int(row.id),
            "amount": _round(row.amount),
            "type": row.type,
            "date": _iso(row.date),
            "category_id": int(row.category_id),
            "category_name": row.category_name,
            "note": row.note,
        }
        for row in largest.itertuples(index=False)
    ]

    month_totals = {m["month"]: m for m in by_month}
    monthly_trend = []
    for month in _trailing_months(today):
        entry = month_totals.get(month)
        income_total = entry["income"] if entry else 0.0
        expense_total = entry["expense"] if entry else 0.0
        monthly_trend.append({
            "month": month,
            "income": income_total,
            "expense": expense_total,
            "net": _round(income_total - expense_total),
        })

    return {
        "summary": summary,
        "by_category": by_category,
        "by_month": by_month,
        "top_categories": top_categories,
        "largest_transactions": largest_transactions,
        "monthly_trend": monthly_trend,
    }


def income_expense_comparison(report: Dict) -> Dict:
    summary = report["summary"]
    ratio = summary["total_income"] / summary["total_expense"] if summary["total_expense"] > 0 else 0.0
    return {
        "income": {
            "total": summary["total_income"],
            "count": summary["income_count"],
            "average": summary["avg_income"],
        },
        "expense": {
            "total": summary["total_expense"],
            "count": summary["expense_count"],
            "average": summary["avg_expense"],
        },
        "net_balance": summary["net_balance"],
        "ratio": _round(ratio),
    }


def category_analysis(report: Dict) -> Dict:
    income_categories = [c for c in report["by_category"] if c["type"] == "income"]
    expense_categories = [c for c in report["by_category"] if c["type"] == "expense"]
    return {
        "income_categories": income_categories,
        "expense_categories": expense_categories,
        "top_income_categories": income_categories[:5],
        "top_expense_categories": expense_categories[:5],
        "total_categories": len({c["category_id"] for c in report["by_category"]}),
    }


def monthly_trends(report: Dict) -> Dict:
    trend = report["monthly_trend"]
    return {
        "monthly_data": trend,
        "total_months": len(trend),
        "average_monthly_income": _round(_mean(m["income"] for m in trend)),
        "average_monthly_expense": _round(_mean(m["expense"] for m in trend)),
    }


def spending_insights(report: Dict) -> Dict:
    summary = report["summary"]
    income = summary["total_income"]
    savings_rate = (income - summary["total_expense"]) / income * 100 if income > 0 else 0.0
    return {
        "largest_transactions": report["largest_transactions"],
        "top_categories": report["top_categories"],
        "average_transaction_size": {
            "income": summary["avg_income"],
            "expense": summary["avg_expense"],
        },
        "transaction_frequency": {
            "income": summary["income_count"],
            "expense": summary["expense_count"],
        },
        "spending_patterns": {
            "total_spent": summary["total_expense"],
            "total_earned": income,
            "savings_rate": _round(savings_rate),
        },
    }


# --- Goals ---

def _prep_goals(df: Optional[pd.DataFrame]) -> pd.DataFrame:
    if df is None or df.empty:
        return pd.DataFrame(columns=GOAL_COLUMNS)
    df = df.copy()
    for col in GOAL_COLUMNS:
        if col not in df.columns:
            df[col] = None
    df["goal_amount"] = pd.to_numeric(df["goal_amount"], errors="coerce").fillna(0.0).astype(float)
    df["saved_amount"] = pd.to_numeric(df["saved_amount"], errors="coerce").fillna(0.0).astype(float)
    return df


def _prep_contributions(df: Optional[pd.DataFrame]) -> pd.DataFrame:
    if df is None or df.empty:
        df = pd.DataFrame(columns=CONTRIBUTION_COLUMNS)
    df = df.copy()
    df["amount"] = pd.to_numeric(df["amount"], errors="coerce").fillna(0.0).astype(float)
    df["date"] = pd.to_datetime(df["date"])
    return df


def goal_metrics(goal: Dict, today: date) -> Dict:
    """
    Unrounded progress figures for one goal row.

    A goal counts as on track when the daily average saved since its start
    date covers the daily amount still needed before its end date.
    """
    goal_amount = float(goal.get("goal_amount") or 0)
    saved_amount = float(goal.get("saved_amount") or 0)
    start_date = _as_date(goal.get("start_date")) or today
    end_date = _as_date(goal.get("end_date")) or today

    progress = saved_amount / goal_amount * 100 if goal_amount > 0 else 0.0
    raw_days_remaining = (end_date - today).days
    days_remaining = max(raw_days_remaining, 0)
    total_days = max((end_date - start_date).days, 1)
    elapsed_days = min(max((today - start_date).days, 0), total_days)

    remaining_amount = max(goal_amount - saved_amount, 0.0)
    # nothing is saved per day before the goal starts
    days_saving = (today - start_date).days
    actual_daily_average = saved_amount / max(days_saving, 1) if days_saving >= 0 else 0.0
    required_daily_savings = remaining_amount / max(days_remaining, 1)

    return {
        "goal_amount": goal_amount,
        "saved_amount": saved_amount,
        "remaining_amount": remaining_amount,
        "progress": progress,
        "days_remaining": days_remaining,
        "is_overdue": raw_days_remaining < 0,
        "elapsed_days": elapsed_days,
        "total_days": total_days,
        "time_progress": elapsed_days / total_days * 100,
        "actual_daily_average": actual_daily_average,
        "required_daily_savings": required_daily_savings,
        "is_on_track": actual_daily_average >= required_daily_savings,
    }


def risk_level(days_remaining: int) -> str:
    if days_remaining <= 7:
        return "critical"
    if days_remaining <= 30:
        return "high"
    return "medium"


def goal_overview(goals_df: Optional[pd.DataFrame], contributions_df: Optional[pd.DataFrame], today: date) -> Dict:
    """Per-goal progress, portfolio summary, top performers and goals at risk."""
    goals = _prep_goals(goals_df)
    contributions = _prep_contributions(contributions_df)
    stats = contributions.groupby("goal_id")["amount"].agg(["count", "sum"]) if not contributions.empty else None

    rows = []
    for goal in goals.to_dict("records"):
        metrics = goal_metrics(goal, today)
        goal_id = int(goal["id"])
        has_stats = stats is not None and goal_id in stats.index
        transaction_count = int(stats.at[goal_id, "count"]) if has_stats else 0
        total_contributed = float(stats.at[goal_id, "sum"]) if has_stats else 0.0
        entry = {
            "id": goal_id,
            "name": goal["name"],
            "status": goal["status"],
            "goal_amount": _round(metrics["goal_amount"]),
            "saved_amount": _round(metrics["saved_amount"]),
            "remaining_amount": _round(metrics["remaining_amount"]),
            "progress": _round(metrics["progress"]),
            "start_date": _iso(goal["start_date"]),
            "end_date": _iso(goal["end_date"]),
            "days_remaining": metrics["days_remaining"],
            "is_overdue": metrics["is_overdue"],
            "is_on_track": metrics["is_on_track"],
            "transaction_count": transaction_count,
            "total_contributed": _round(total_contributed),
        }
        rows.append((metrics, entry))

    active = [(m, e) for m, e in rows if e["status"] == "active"]
    top_performing = sorted(active, key=lambda r: (-r[0]["progress"], r[1]["id"]))[:TOP_GOAL_LIMIT]
    at_risk = sorted(
        [
            (m, e)
            for m, e in active
            if m["days_remaining"] <= AT_RISK_DAYS and m["progress"] < AT_RISK_PROGRESS
        ],
        key=lambda r: (r[0]["days_remaining"], r[1]["id"]),
    )

    total_target = sum(m["goal_amount"] for m, _ in rows)
    total_saved = sum(m["saved_amount"] for m, _ in rows)
    summary = {
        "total_goals": len(rows),
        "active_goals": len(active),
        "completed_goals": sum(1 for _, e in rows if e["status"] == "completed"),
        "cancelled_goals": sum(1 for _, e in rows if e["status"] == "cancelled"),
        "total_target_amount": _round(total_target),
        "total_saved_amount": _round(total_saved),
        "overall_progress": _round(total_saved / total_target * 100) if total_target > 0 else 0.0,
        "average_progress": _round(_mean(m["progress"] for m, _ in rows)),
        "on_track_goals": sum(1 for _, e in active if e["is_on_track"]),
        "overdue_goals": sum(1 for _, e in active if e["is_overdue"]),
    }

    return {
        "summary": summary,
        "goals": [e for _, e in rows],
        "top_performing_goals": [e for _, e in top_performing],
        "goals_at_risk": [
            dict(e, required_daily_savings=_round(m["required_daily_savings"])) for m, e in at_risk
        ],
    }


def goals_at_risk_report(overview: Dict) -> Dict:
    at_risk = [
        {
            "goal_id": goal["id"],
            "goal_name": goal["name"],
            "goal_amount": goal["goal_amount"],
            "saved_amount": goal["saved_amount"],
            "progress": goal["progress"],
            "days_remaining": goal["days_remaining"],
            "is_overdue": goal["is_overdue"],
            "required_daily_savings": goal["required_daily_savings"],
            "risk_level": risk_level(goal["days_remaining"]),
        }
        for goal in overview["goals_at_risk"]
    ]
    return {
        "at_risk_goals": at_risk,
        "total_at_risk": len(at_risk),
        "critical_risk": sum(1 for g in at_risk if g["risk_level"] == "critical"),
        "high_risk": sum(1 for g in at_risk if g["risk_level"] == "high"),
        "medium_risk": sum(1 for g in at_risk if g["risk_level"] == "medium"),
    }


def top_performers_report(overview: Dict) -> Dict:
    performers = [
        {
            "goal_id": goal["id"],
            "goal_name": goal["name"],
            "goal_amount": goal["goal_amount"],
            "saved_amount": goal["saved_amount"],
            "progress": goal["progress"],
            "days_remaining": goal["days_remaining"],
            "transaction_count": goal["transaction_count"],
            "average_contribution": (
                _round(goal["total_contributed"] / goal["transaction_count"]) if goal["transaction_count"] else 0.0
            ),
            "completion_rate": round(goal["progress"] / 100, 4),
        }
        for goal in overview["top_performing_goals"]
    ]
    return {
        "top_performers": performers,
        "total_top_performers": len(performers),
        "average_progress": _round(_mean(g["progress"] for g in performers)),
    }


def contribution_report(goals_df: Optional[pd.DataFrame], contributions_df: Optional[pd.DataFrame], today: date) -> Dict:
    """Contribution activity across the given goals."""
    goals = _prep_goals(goals_df)
    contributions = _prep_contributions(contributions_df)
    contributions = contributions[contributions["goal_id"].isin(goals["id"])]

    names = {int(g["id"]): g["name"] for g in goals.to_dict("records")}
    amounts = contributions["amount"]
    cutoff = pd.Timestamp(today - timedelta(days=RECENT_ACTIVITY_DAYS))
    recent = contributions[contributions["date"] >= cutoff]

    summary = {
        "total_contributions": int(len(contributions)),
        "total_amount": _round(amounts.sum()),
        "average_contribution": _round(amounts.mean()) if len(amounts) else 0.0,
        "largest_contribution": _round(amounts.max()) if len(amounts) else 0.0,
        "smallest_contribution": _round(amounts.min()) if len(amounts) else 0.0,
        "goals_with_contributions": int(contributions["goal_id"].nunique()),
        "recent_activity_count": int(len(recent)),
        "recent_activity_total": _round(recent["amount"].sum()),
    }

    by_goal = []
    monthly = []
    frequency = []
    if not contributions.empty:
        per_goal = (
            contributions.groupby("goal_id")
            .agg(entries=("amount", "count"), total=("amount", "sum"), last_date=("date", "max"))
            .reset_index()
            .sort_values(["total", "goal_id"], ascending=[False, True])
        )
        by_goal = [
            {
                "goal_id": int(row.goal_id),
                "goal_name": names.get(int(row.goal_id)),
                "contribution_count": int(row.entries),
                "total_contributed": _round(row.total),
                "average_contribution": _round(row.total / row.entries),
                "last_contribution_date": _iso(row.last_date),
            }
            for row in per_goal.itertuples(index=False)
        ]

        contributions = contributions.assign(
            month=contributions["date"].dt.to_period("M").astype(str),
            weekday=contributions["date"].dt.dayofweek,
        )
        per_month = (
            contributions.groupby("month")["amount"]
            .agg(entries="count", total="sum")
            .reset_index()
            .sort_values("month")
        )
        monthly = [
            {"month": row.month, "contribution_count": int(row.entries), "total_contributed": _round(row.total)}
            for row in per_month.itertuples(index=False)
        ]

    per_weekday = (
        contributions.groupby("weekday")["amount"].agg(["count", "sum"])
        if "weekday" in contributions.columns
        else None
    )
    for index, name in enumerate(WEEKDAYS):
        has_day = per_weekday is not None and index in per_weekday.index
        frequency.append({
            "weekday": name,
            "contribution_count": int(per_weekday.at[index, "count"]) if has_day else 0,
            "total_contributed": _round(per_weekday.at[index, "sum"]) if has_day else 0.0,
        })

    return {
        "summary": summary,
        "by_goal": by_goal,
        "monthly_trends": monthly,
        "contribution_frequency": frequency,
    }


def contribution_trends(report: Dict) -> Dict:
    monthly = report["monthly_trends"]
    summary = report["summary"]
    count = summary["recent_activity_count"]
    return {
        "monthly_trends": monthly,
        "contribution_frequency": report["contribution_frequency"],
        "average_monthly_contribution": _round(_mean(m["total_contributed"] for m in monthly)),
        "total_months": len(monthly),
        "recent_activity": {
            "count": count,
            "total": summary["recent_activity_total"],
            "average": _round(summary["recent_activity_total"] / count) if count else 0.0,
        },
    }


def progress_entry(goal: Dict, today: date) -> Dict:
    metrics = goal_metrics(goal, today)
    return {
        "goal_id": int(goal["id"]),
        "goal_name": goal["name"],
        "status": goal["status"],
        "goal_amount": _round(metrics["goal_amount"]),
        "saved_amount": _round(metrics["saved_amount"]),
        "remaining_amount": _round(metrics["remaining_amount"]),
        "progress": _round(metrics["progress"]),
        "start_date": _iso(goal["start_date"]),
        "end_date": _iso(goal["end_date"]),
        "elapsed_days": metrics["elapsed_days"],
        "remaining_days": metrics["days_remaining"],
        "total_days": metrics["total_days"],
        "time_progress": _round(metrics["time_progress"]),
        "actual_daily_average": _round(metrics["actual_daily_average"]),
        "required_daily_savings": _round(metrics["required_daily_savings"]),
        "is_on_track": metrics["is_on_track"],
        "is_overdue": metrics["is_overdue"],
    }


def progress_report(goals_df: Optional[pd.DataFrame], today: date) -> Dict:
    progress = [progress_entry(goal, today) for goal in _prep_goals(goals_df).to_dict("records")]
    on_track = sum(1 for p in progress if p["is_on_track"])
    return {
        "progress_data": progress,
        "summary": {
            "total_goals": len(progress),
            "on_track_goals": on_track,
            "behind_goals": len(progress) - on_track,
            "average_progress": _round(_mean(p["progress"] for p in progress)),
            "average_time_progress": _round(_mean(p["time_progress"] for p in progress)),
        },
    }


def completion_probability(metrics: Dict) -> str:
    if metrics["is_on_track"]:
        return "high"
    if metrics["actual_daily_average"] > metrics["required_daily_savings"] * 0.8:
        return "medium"
    return "low"


def completion_forecast(goals_df: Optional[pd.DataFrame], today: date) -> Dict:
    """
    Projects each goal's completion date from its average daily saving.

    Goals with nothing saved yet have no estimate, and neither do goals
    whose projection runs past the last representable date.
    """
    forecasts = []
    for goal in _prep_goals(goals_df).to_dict("records"):
        metrics = goal_metrics(goal, today)
        average = metrics["actual_daily_average"]
        remaining = metrics["remaining_amount"]
        if average > 0:
            days_needed = remaining / average
            estimated_days = math.ceil(days_needed)
            # too far out to be a calendar date
            if days_needed <= (date.max - today).days:
                estimated_date = (today + timedelta(days=days_needed)).isoformat()
            else:
                estimated_date = None
        else:
            estimated_date = None
            estimated_days = None

        forecasts.append({
            "goal_id": int(goal["id"]),
            "goal_name": goal["name"],
            "goal_amount": _round(metrics["goal_amount"]),
            "saved_amount": _round(metrics["saved_amount"]),
            "remaining_amount": _round(remaining),
            "progress": _round(metrics["progress"]),
            "days_remaining": metrics["days_remaining"],
            "actual_daily_average": _round(average),
            "required_daily_savings": _round(metrics["required_daily_savings"]),
            "estimated_completion_date": estimated_date,
            "estimated_days_to_complete": estimated_days,
            "is_on_track": metrics["is_on_track"],
            "completion_probability": completion_probability(metrics),
        })

    estimated = [f["estimated_days_to_complete"] for f in forecasts if f["estimated_days_to_complete"]]
    summary = {
        "total_goals": len(forecasts),
        "on_track_goals": sum(1 for f in forecasts if f["is_on_track"]),
        "high_probability": sum(1 for f in forecasts if f["completion_probability"] == "high"),
        "medium_probability": sum(1 for f in forecasts if f["completion_probability"] == "medium"),
        "low_probability": sum(1 for f in forecasts if f["completion_probability"] == "low"),
        "average_estimated_days": _round(_mean(estimated)),
    }
    return {"forecasts": forecasts, "summary": summary}
