from datetime import timedelta

from sqlalchemy import select, func, case

from linkearn.config import Earnings
from linkearn.database import AsyncSessionLocal
from linkearn.errors import NotFound
from linkearn.models import DailyEarning, Link, User, Visit
from linkearn.modules.helpers import ZERO, display_money, quantize_money, to_decimal, utcnow
from linkearn.server.interfaces import Clock

OVERVIEW_DAYS = 7
MAX_STATS_DAYS = 365

def _percent(share) -> str:
    return f"{(to_decimal(share) * 100).normalize():f}%"

class PublisherStatsService:
    """Read-only earnings statistics for one publisher's links"""

    def __init__(self, session_factory=AsyncSessionLocal, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def overview(self, user_id: int) -> dict:
        """
        Balance, link totals, today's traffic and the last seven days of earnings

        The daily series comes from the DailyEarning rollup, so it only counts
        visits that earned; `today.clicks` counts every recorded visit.
        """
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        first_day = now.date() - timedelta(days=OVERVIEW_DAYS - 1)

        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFound(f'User {user_id} not found')

            link_totals = (await session.execute(
                select(
                    func.count(Link.id),
                    func.sum(Link.total_clicks),
                    func.sum(Link.unique_clicks),
                    func.sum(Link.total_earned),
                ).where(Link.user_id == user_id)
            )).one()

            today = (await session.execute(
                select(func.count(Visit.id), func.sum(Visit.earned))
                .join(Link, Link.id == Visit.link_id)
                .where(Link.user_id == user_id, Visit.created_at >= day_start)
            )).one()

            daily_rows = (await session.execute(
                select(
                    DailyEarning.earning_date,
                    func.sum(DailyEarning.unique_visits),
                    func.sum(DailyEarning.user_earnings),
                )
                .where(DailyEarning.user_id == user_id, DailyEarning.earning_date >= first_day)
                .group_by(DailyEarning.earning_date)
            )).all()

        total_links, total_clicks, unique_clicks, links_earned = link_totals
        today_clicks, today_earned = today
        by_date = {row[0]: (int(row[1] or 0), quantize_money(to_decimal(row[2]))) for row in daily_rows}

        daily = []
        for offset in range(OVERVIEW_DAYS):
            day = first_day + timedelta(days=offset)
            visits, earned = by_date.get(day, (0, ZERO))
            daily.append({'date': day.isoformat(), 'unique_visits': visits, 'earned': str(quantize_money(earned))})

        return {
            'balance': str(display_money(user.balance)),
            'total_earned': str(quantize_money(to_decimal(links_earned))),
            'total_links': int(total_links or 0),
            'total_clicks': int(total_clicks or 0),
            'unique_clicks': int(unique_clicks or 0),
            'today': {
                'clicks': int(today_clicks or 0),
                'earned': str(quantize_money(to_decimal(today_earned))),
            },
            'daily': daily,
            'user_share': _percent(Earnings.USER_SHARE),
            'platform_fee': _percent(1 - Earnings.USER_SHARE),
        }

    async def _grouped_visits(self, user_id: int, column, days: int) -> list:
        since = self.clock() - timedelta(days=min(days, MAX_STATS_DAYS))

        async with self.session_factory() as session:
            rows = (await session.execute(
                select(
                    column,
                    func.count(Visit.id),
                    func.sum(case((Visit.is_unique == True, 1), else_=0)),
                    func.sum(Visit.earned),
                )
                .join(Link, Link.id == Visit.link_id)
                .where(Link.user_id == user_id, Visit.created_at >= since)
                .group_by(column)
            )).all()

        result = [
            {
                'key': key,
                'clicks': int(clicks or 0),
                'unique_clicks': int(unique_clicks or 0),
                'earned': str(quantize_money(to_decimal(earned))),
            }
            for key, clicks, unique_clicks, earned in rows
        ]
        result.sort(key=lambda entry: entry['clicks'], reverse=True)
        return result

    async def countries(self, user_id: int, days: int = 30) -> list:
        stats = await self._grouped_visits(user_id, Visit.country, days)
        for entry in stats:
            entry['country'] = entry.pop('key') or 'XX'
        return stats

    async def devices(self, user_id: int, days: int = 30) -> list:
        stats = await self._grouped_visits(user_id, Visit.device, days)
        for entry in stats:
            entry['device'] = entry.pop('key') or 'unknown'
        return stats

    async def top_links(self, user_id: int, limit: int = 10) -> list:
        async with self.session_factory() as session:
            links = (await session.execute(
                select(Link)
                .where(Link.user_id == user_id)
                .order_by(Link.total_clicks.desc(), Link.id)
                .limit(min(limit, 100))
            )).scalars().all()

        return [
            {
                'id': link.id,
                'short_code': link.short_code,
                'title': link.title or link.original_url,
                'clicks': link.total_clicks,
                'unique_clicks': link.unique_clicks,
                'earned': str(quantize_money(link.total_earned)),
            }
            for link in links
        ]
