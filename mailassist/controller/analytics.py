import re
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, case
from sqlalchemy.orm import Session

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.email import Email
from mailassist.controller.auth import get_current_user
from mailassist.utils.response import success, bad_request, server_error
from mailassist.utils.logger import get_logger

logger = get_logger("analytics")

router = APIRouter()

RANGE_PATTERN = re.compile(r"^(\d+)d$")
PRIORITY_ORDER = ["critical", "high", "medium", "low"]


def _range_start(value: str):
    """'7d' -> 7天前；'all' -> None；格式不对抛 ValueError"""
    if value == "all":
        return None
    match = RANGE_PATTERN.match(value or "")
    if not match:
        raise ValueError("range 参数格式应为 Nd 或 all")
    return datetime.utcnow() - timedelta(days=int(match.group(1)))


@router.get("")
async def get_analytics(
    range: str = Query(default="7d"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    try:
        start = _range_start(range)
    except ValueError as e:
        return bad_request(str(e))

    try:
        filters = [Email.user_id == current_user.id, Email.is_deleted == False]
        if start:
            filters.append(Email.received_at >= start)

        overview = db.query(
            func.count(Email.id),
            func.count(Email.ai_analyzed_at),
            func.sum(case((Email.is_starred == True, 1), else_=0)),
            func.sum(case((Email.is_read == False, 1), else_=0)),
        ).filter(*filters).one()

        by_category = db.query(Email.category, func.count(Email.id).label("count")).filter(
            *filters
        ).group_by(Email.category).order_by(func.count(Email.id).desc()).limit(10).all()

        by_priority = db.query(Email.priority_level, func.count(Email.id)).filter(
            *filters, Email.priority_level.isnot(None)
        ).group_by(Email.priority_level).all()
        by_priority = sorted(
            by_priority,
            key=lambda row: PRIORITY_ORDER.index(row[0]) if row[0] in PRIORITY_ORDER else len(PRIORITY_ORDER),
        )

        top_senders = db.query(
            Email.from_address,
            Email.from_name,
            func.count(Email.id).label("total"),
            func.sum(case((Email.is_read == False, 1), else_=0)).label("unread"),
        ).filter(*filters).group_by(Email.from_address, Email.from_name).order_by(
            func.count(Email.id).desc()
        ).limit(10).all()

        day = func.date(Email.received_at)
        daily = db.query(day.label("date"), func.count(Email.id)).filter(*filters).group_by(day).order_by(
            day.desc()
        ).limit(30).all()

        return success({
            "overview": {
                "totalEmails": overview[0] or 0,
                "aiAnalyzed": overview[1] or 0,
                "starred": int(overview[2] or 0),
                "unread": int(overview[3] or 0),
            },
            "byCategory": [{"category": c, "count": n} for c, n in by_category],
            "byPriority": [{"priority_level": p, "count": n} for p, n in by_priority],
            "topSenders": [
                {"from_address": a, "from_name": name, "total": total, "unread": int(unread or 0)}
                for a, name, total, unread in top_senders
            ],
            "dailyActivity": [{"date": str(d), "count": n} for d, n in reversed(daily)],
        })
    except Exception as e:
        logger.error(f"获取分析数据失败: {e}", exc_info=True)
        return server_error("获取分析数据失败")
