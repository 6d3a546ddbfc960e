import asyncio
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import SQLAlchemyError

from linkearn.config import Earnings
from linkearn.database import AsyncSessionLocal, dialect_insert
from linkearn.errors import LinkEarnError, NotFound, OwnerInactive, PreconditionFailed, TransactionFailure
from linkearn.models import DailyEarning, Link, User, Visit, VisitEvent
from linkearn.modules.device_detection import classify_user_agent
from linkearn.modules.helpers import ZERO, quantize_money, to_decimal, utcnow
from linkearn.server.cpm_rates import normalize_country_code
from linkearn.server.encryption import encrypt_ip
from linkearn.server.fraud_gate import previous_visit_query
from linkearn.server.interfaces import (
    Clock, EarningResult, EarningsCalculator, RateResolver, VisitRecordedHandler, VisitResult
)
from linkearn.server.security import hash_ip

logger = logging.getLogger('linkearn.visit_ledger')

EVENT_PENDING = 'pending'

LINK_LOCK_STRIPES = 64

def daily_earning_upsert(dialect_name: str, values: dict):
    """INSERT ... ON CONFLICT DO UPDATE for the (user, date, country) rollup"""
    stmt = dialect_insert(dialect_name)(DailyEarning).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=['user_id', 'earning_date', 'country'],
        set_={
            'visits': DailyEarning.visits + stmt.excluded.visits,
            'unique_visits': DailyEarning.unique_visits + stmt.excluded.unique_visits,
            'user_earnings': DailyEarning.user_earnings + stmt.excluded.user_earnings,
            'platform_earnings': DailyEarning.platform_earnings + stmt.excluded.platform_earnings,
        }
    )

class VisitLedger:
    """
    Records a visit and applies its money effects as one unit of work

    The transaction writes the visit snapshot, the link counters, the owner's
    balance, the daily rollup and the outbox event; either all of them land or
    none do. The referral commission runs only after commit.
    """

    def __init__(self, calculator: EarningsCalculator, session_factory=AsyncSessionLocal,
                 clock: Clock = utcnow, commission_handler: Optional[VisitRecordedHandler] = None,
                 rates: Optional[RateResolver] = None,
                 ip_encryptor: Callable[[Optional[str]], Optional[str]] = encrypt_ip,
                 uniqueness_window_hours: int = Earnings.UNIQUENESS_WINDOW_HOURS):
        self.calculator = calculator
        self.session_factory = session_factory
        self.clock = clock
        self.commission_handler = commission_handler
        self.rates = rates
        self.ip_encryptor = ip_encryptor
        self.uniqueness_window = timedelta(hours=uniqueness_window_hours)
        # Serializes same-link visits inside this process; the row lock covers other processes
        self._link_locks = [asyncio.Lock() for _ in range(LINK_LOCK_STRIPES)]

    async def _load_link(self, link_id: int) -> Link:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Link, User.is_active)
                .join(User, User.id == Link.user_id)
                .where(Link.id == link_id)
            )
            row = result.first()

        if row is None:
            raise NotFound(f'Link {link_id} not found')

        link, owner_active = row
        if not link.is_active:
            raise PreconditionFailed('Link is inactive', reason='link_inactive')
        if not owner_active:
            raise OwnerInactive()
        return link

    async def record_visit(self, link_id: int, ip_fingerprint: str, country_code: Optional[str],
                           device: Optional[str] = None, browser: Optional[str] = None,
                           encrypted_ip: Optional[str] = None) -> VisitResult:
        """
        Record one visit to a link and credit the owner when it earns

        The calculator's uniqueness answer is confirmed inside the transaction
        after the link row is locked; a visit that lost the race to an earlier
        one from the same fingerprint is stored as a repeat and earns nothing.

        Raises:
            NotFound: the link does not exist
            PreconditionFailed: the link is inactive
            OwnerInactive: the link owner is deactivated
            TransactionFailure: the database rejected the transaction
        """
        link = await self._load_link(link_id)
        earnings = await self.calculator.calculate(ip_fingerprint, link.id, country_code)
        country = normalize_country_code(earnings.country_code or country_code)

        earned = quantize_money(earnings.earned)
        platform_earned = quantize_money(earnings.platform_earned)
        credits_owner = earnings.is_unique and not earnings.blocked

        event_id = None
        try:
            async with self._link_locks[link.id % LINK_LOCK_STRIPES]:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(
                            select(Link.id).where(Link.id == link.id).with_for_update()
                        )
                        # Owner is locked after the link so a concurrent deactivation or payout sees a consistent balance
                        owner_active = await session.scalar(
                            select(User.is_active).where(User.id == link.user_id).with_for_update()
                        )
                        if not owner_active:
                            raise OwnerInactive()

                        now = self.clock()
                        if credits_owner:
                            earlier_visit = await session.scalar(
                                previous_visit_query(ip_fingerprint, link.id, now - self.uniqueness_window)
                            )
                            if earlier_visit is not None:
                                logger.info(f"Visit to link {link.id} from fingerprint {ip_fingerprint[:8]} lost the uniqueness race to visit {earlier_visit}")
                                credits_owner = False
                                earned = ZERO
                                platform_earned = ZERO

                        visit = Visit(
                            link_id=link.id,
                            ip_hash=ip_fingerprint,
                            encrypted_ip=encrypted_ip,
                            country=country,
                            country_tier=earnings.tier,
                            device=(device or 'desktop')[:20],
                            browser=browser[:50] if browser else None,
                            earned=earned,
                            platform_earned=platform_earned,
                            cpm_rate_used=quantize_money(earnings.cpm_rate_used),
                            is_unique=credits_owner,
                            fraud_blocked=earnings.blocked,
                            block_reason=earnings.block_reason,
                            created_at=now,
                        )
                        session.add(visit)
                        await session.flush()

                        link_values = {'total_clicks': Link.total_clicks + 1}
                        if credits_owner:
                            link_values['unique_clicks'] = Link.unique_clicks + 1
                            link_values['total_earned'] = Link.total_earned + earned
                        await session.execute(
                            update(Link).where(Link.id == link.id).values(**link_values)
                        )

                        if credits_owner and earned > ZERO:
                            await session.execute(
                                update(User).where(User.id == link.user_id).values(
                                    balance=User.balance + earned,
                                    total_earned=User.total_earned + earned,
                                )
                            )

                            await session.execute(daily_earning_upsert(session.get_bind().dialect.name, {
                                'user_id': link.user_id,
                                'earning_date': now.date(),
                                'country': country,
                                'visits': 1,
                                'unique_visits': 1,
                                'user_earnings': earned,
                                'platform_earnings': platform_earned,
                            }))

                            event = VisitEvent(
                                visit_id=visit.id,
                                user_id=link.user_id,
                                user_earning=earned,
                                platform_earning=platform_earned,
                                status=EVENT_PENDING,
                                created_at=now,
                            )
                            session.add(event)
                            await session.flush()
                            event_id = event.id

                    visit_id = visit.id
        except LinkEarnError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Visit transaction for link {link.id} rolled back: {e}")
            raise TransactionFailure('Could not record visit, please retry') from e

        if earnings.blocked:
            logger.info(f"Visit {visit_id} to link {link.id} recorded as blocked ({earnings.block_reason})")
        elif earned > ZERO:
            logger.info(f"Visit {visit_id} to link {link.id} credited {earned} to user {link.user_id} ({country})")

        if event_id is not None and self.commission_handler is not None:
            try:
                await self.commission_handler.handle_visit_recorded(event_id)
            except Exception as e:
                logger.exception(f"Referral commission hand-off failed for visit {visit_id}: {e}")

        return VisitResult(
            visit_id=visit_id,
            link_id=link.id,
            earnings=EarningResult(
                earned=earned,
                platform_earned=platform_earned,
                is_unique=credits_owner,
                cpm_rate_used=earnings.cpm_rate_used,
                tier=earnings.tier,
                blocked=earnings.blocked,
                block_reason=earnings.block_reason,
                country_code=country,
            ),
            redirect_url=link.original_url,
            event_id=event_id,
        )

    async def record_visit_from_ip(self, link_id: int, client_ip: Optional[str], country_code: Optional[str],
                                   user_agent: Optional[str] = None) -> VisitResult:
        """Fingerprint and encrypt the client IP, classify the user agent, then record the visit"""
        client_ip = client_ip or 'unknown'
        classification = classify_user_agent(user_agent or '')
        return await self.record_visit(
            link_id,
            hash_ip(client_ip),
            country_code,
            device=classification['device'],
            browser=classification['browser'],
            encrypted_ip=self.ip_encryptor(client_ip),
        )

    async def earnings_stats_by_country(self, days: int = 30) -> list:
        since = self.clock() - timedelta(days=days)

        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    Visit.country,
                    func.count(Visit.id),
                    func.sum(case((Visit.is_unique == True, 1), else_=0)),
                    func.sum(Visit.earned),
                    func.sum(Visit.platform_earned),
                )
                .where(Visit.created_at >= since)
                .group_by(Visit.country)
            )
            rows = result.all()

        stats = []
        for country, total_visits, unique_visits, user_earnings, platform_earnings in rows:
            country = country or 'XX'
            unique_visits = int(unique_visits or 0)
            user_earnings = quantize_money(to_decimal(user_earnings))
            platform_earnings = quantize_money(to_decimal(platform_earnings))

            entry = {
                'country': country,
                'country_name': 'Unknown',
                'tier': 3,
                'total_visits': int(total_visits or 0),
                'unique_visits': unique_visits,
                'user_earnings': str(user_earnings),
                'platform_earnings': str(platform_earnings),
                'configured_cpm': None,
                'effective_cpm': str(
                    (user_earnings / unique_visits * 1000).quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP)
                    if unique_visits else Decimal('0.0000')
                ),
            }
            if self.rates is not None:
                rate = await self.rates.resolve_rate(country)
                entry['country_name'] = rate.country_name
                entry['tier'] = rate.tier
                entry['configured_cpm'] = str(rate.base_cpm)
            stats.append(entry)

        stats.sort(key=lambda s: Decimal(s['user_earnings']), reverse=True)
        return stats
