import logging
from datetime import timedelta

from sqlalchemy import select, func

from linkearn.config import Earnings
from linkearn.database import AsyncSessionLocal
from linkearn.models import Visit
from linkearn.modules.helpers import utcnow
from linkearn.server.interfaces import Clock, GateDecision

logger = logging.getLogger('linkearn.fraud_gate')

REASON_DAILY_LIMIT = 'daily_limit'
REASON_RATE_LIMIT = 'rate_limit'

def previous_visit_query(ip_fingerprint: str, link_id: int, since):
    return select(Visit.id).where(
        Visit.ip_hash == ip_fingerprint,
        Visit.link_id == link_id,
        Visit.created_at >= since
    ).limit(1)

class VisitFraudGate:
    """
    Decides from an IP fingerprint whether a visit may earn

    Counters are queries over the shared visits table, so every service
    instance sees the same numbers. The check is read-then-decide: two
    concurrent visits can both pass the last free slot, which is accepted.
    Uniqueness is confirmed again by the ledger while it holds the link lock.
    """

    def __init__(self, session_factory=AsyncSessionLocal, clock: Clock = utcnow,
                 max_visits_daily: int = Earnings.MAX_VISITS_PER_IP_DAILY,
                 max_visits_per_minute: int = Earnings.RATE_LIMIT_PER_MINUTE,
                 uniqueness_window_hours: int = Earnings.UNIQUENESS_WINDOW_HOURS):
        self.session_factory = session_factory
        self.clock = clock
        self.max_visits_daily = max_visits_daily
        self.max_visits_per_minute = max_visits_per_minute
        self.uniqueness_window = timedelta(hours=uniqueness_window_hours)

    async def evaluate(self, ip_fingerprint: str, link_id: int) -> GateDecision:
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        minute_ago = now - timedelta(seconds=60)

        async with self.session_factory() as session:
            visits_today = await session.scalar(
                select(func.count(Visit.id)).where(
                    Visit.ip_hash == ip_fingerprint,
                    Visit.created_at >= day_start
                )
            ) or 0

            if visits_today >= self.max_visits_daily:
                logger.info(f"Visit to link {link_id} blocked: fingerprint {ip_fingerprint[:8]} reached daily limit ({visits_today})")
                return GateDecision(allowed=False, reason=REASON_DAILY_LIMIT, is_unique=False)

            recent_visits = await session.scalar(
                select(func.count(Visit.id)).where(
                    Visit.ip_hash == ip_fingerprint,
                    Visit.created_at >= minute_ago
                )
            ) or 0

            if recent_visits >= self.max_visits_per_minute:
                logger.info(f"Visit to link {link_id} blocked: fingerprint {ip_fingerprint[:8]} exceeded rate limit ({recent_visits}/min)")
                return GateDecision(allowed=False, reason=REASON_RATE_LIMIT, is_unique=False)

            previous_visit = await session.scalar(
                previous_visit_query(ip_fingerprint, link_id, now - self.uniqueness_window)
            )

        return GateDecision(allowed=True, reason=None, is_unique=previous_visit is None)
