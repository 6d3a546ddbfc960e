"""
Referral commission engine

Commissions are paid out of the platform's share of a referred user's visit,
never out of the referred user's own earning. Each visit yields at most one
commission, processed after the visit commits through the visit_events outbox.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from linkearn.config import Server
from linkearn.database import AsyncSessionLocal
from linkearn.errors import NotFound, PreconditionFailed, TransactionFailure
from linkearn.models import FraudAlert, ReferralCommission, User, VisitEvent
from linkearn.modules.helpers import ZERO, as_utc, mask_email, quantize_money, to_decimal, utcnow
from linkearn.server.interfaces import Clock
from linkearn.server.security import hash_ip, hash_user_agent
from linkearn.server.settings_service import SettingsService

logger = logging.getLogger('linkearn.referrals')

EVENT_PENDING = 'pending'
EVENT_PROCESSING = 'processing'
EVENT_PROCESSED = 'processed'
EVENT_SKIPPED = 'skipped'
EVENT_FAILED = 'failed'

ALERT_PENDING = 'PENDING'
ALERT_DISMISSED = 'DISMISSED'
ALERT_BLOCKED_REFERRED = 'BLOCKED_REFERRED'
ALERT_BLOCKED_BOTH = 'BLOCKED_BOTH'

RESOLUTION_STATUSES = {
    'dismiss': ALERT_DISMISSED,
    'block': ALERT_BLOCKED_REFERRED,
    'block_both': ALERT_BLOCKED_BOTH,
}

FRAUD_THRESHOLD = 30
HIGH_RISK_THRESHOLD = 70
RECENT_REFERRALS_CHECKED = 10

@dataclass
class FraudCheck:
    risk_score: int = 0
    reasons: list = field(default_factory=list)
    ip_match: bool = False
    user_agent_match: bool = False
    timing_anomaly: bool = False

    @property
    def is_suspicious(self) -> bool:
        return self.risk_score >= FRAUD_THRESHOLD

    @property
    def reason(self) -> Optional[str]:
        return ', '.join(self.reasons) or None

def score_referral(referrer: User, previous_referrals: list, ip_hash: Optional[str],
                   user_agent_hash: Optional[str], now) -> FraudCheck:
    """
    Risk score of a new referral against what is known about the referrer

    previous_referrals holds (referral_ip_hash, created_at) pairs of the
    referrer's latest referred users.
    """
    check = FraudCheck()

    referrer_ip_hashes = {h for h in (referrer.referral_ip_hash, referrer.registration_ip_hash) if h}
    if ip_hash and ip_hash in referrer_ip_hashes:
        check.reasons.append('same_ip_as_referrer')
        check.ip_match = True
        check.risk_score += 40

    if user_agent_hash and referrer.user_agent_hash == user_agent_hash:
        check.reasons.append('same_user_agent')
        check.user_agent_match = True
        check.risk_score += 15

    if ip_hash and any(prev_ip == ip_hash for prev_ip, _ in previous_referrals):
        check.reasons.append('ip_matches_previous_referrals')
        check.risk_score += 25

    day_ago = now - timedelta(hours=24)
    recent = sum(1 for _, created_at in previous_referrals if created_at and as_utc(created_at) > day_ago)
    if recent >= 5:
        check.reasons.append('burst_referral_pattern')
        check.risk_score += 20
    elif recent >= 3:
        check.reasons.append('high_referral_frequency')
        check.risk_score += 10

    referrer_created = as_utc(referrer.created_at)
    if referrer_created is not None:
        age = now - referrer_created
        if age < timedelta(hours=1):
            check.reasons.append('suspicious_timing_very_fast')
            check.timing_anomaly = True
            check.risk_score += 15
        elif age < timedelta(hours=24):
            check.reasons.append('suspicious_timing_fast')
            check.timing_anomaly = True
            check.risk_score += 5

    check.risk_score = min(100, check.risk_score)
    return check

def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        'page': page,
        'limit': limit,
        'total': total,
        'total_pages': math.ceil(total / limit) if limit else 0,
    }

def _page_args(page, limit, max_limit: int = 100) -> tuple[int, int]:
    try:
        page = max(1, int(page))
        limit = max(1, min(int(limit), max_limit))
    except (TypeError, ValueError):
        raise PreconditionFailed('page and limit must be integers', reason='invalid_pagination')
    return page, limit

class ReferralService:
    def __init__(self, session_factory=AsyncSessionLocal, settings: Optional[SettingsService] = None,
                 clock: Clock = utcnow):
        self.session_factory = session_factory
        self.settings = settings or SettingsService(session_factory, clock)
        self.clock = clock

    # ---- commission processing ----

    async def process_commission(self, referred_user_id: int, visit_id: int, user_earning,
                                 platform_earning) -> Optional[ReferralCommission]:
        """
        Credit the referrer of `referred_user_id` for one visit

        Returns None without error when no commission is due.

        Raises:
            TransactionFailure: the commission transaction was rejected
        """
        settings = await self.settings.get_settings()
        if not settings.referral_system_active:
            logger.debug(f"Referral system inactive, no commission for visit {visit_id}")
            return None

        referrer_alias = aliased(User)
        async with self.session_factory() as session:
            result = await session.execute(
                select(User, referrer_alias)
                .outerjoin(referrer_alias, referrer_alias.id == User.referred_by_id)
                .where(User.id == referred_user_id)
            )
            row = result.first()

        if row is None:
            logger.debug(f"User {referred_user_id} not found, no commission for visit {visit_id}")
            return None

        user, referrer = row
        if referrer is None or not referrer.is_active:
            logger.debug(f"User {referred_user_id} has no active referrer, no commission for visit {visit_id}")
            return None

        if user.referral_fraud_flag:
            logger.debug(f"Skipping referral commission for user {referred_user_id}: fraud flag set")
            return None

        now = self.clock()
        bonus_expires = as_utc(user.referral_bonus_expires)
        if bonus_expires is not None and now > bonus_expires:
            logger.debug(f"Referral bonus window of user {referred_user_id} expired at {bonus_expires}")
            return None

        platform_earning = to_decimal(platform_earning)
        commission_rate = settings.referral_commission_rate
        commission = quantize_money(platform_earning * commission_rate)

        if commission <= ZERO:
            return None

        if commission > platform_earning:
            logger.warning(f"Referral commission {commission} exceeds platform earning {platform_earning} for visit {visit_id}, skipping")
            return None

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    record = ReferralCommission(
                        referrer_id=referrer.id,
                        referred_id=referred_user_id,
                        visit_id=visit_id,
                        amount=commission,
                        referred_earning=quantize_money(user_earning),
                        commission_rate=commission_rate,
                        status='processed',
                        processed_at=now,
                        created_at=now,
                    )
                    session.add(record)

                    await session.execute(
                        update(User).where(User.id == referrer.id).values(
                            balance=User.balance + commission,
                            referral_earnings=User.referral_earnings + commission,
                            total_earned=User.total_earned + commission,
                        )
                    )
        except SQLAlchemyError as e:
            raise TransactionFailure(f'Referral commission for visit {visit_id} rolled back') from e

        logger.info(f"Referral commission {commission} credited to user {referrer.id} for visit {visit_id} of user {referred_user_id}")
        return record

    async def _finish_event(self, event_id: int, status: str, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(VisitEvent).where(VisitEvent.id == event_id).values(
                        status=status,
                        error=error,
                        processed_at=self.clock(),
                    )
                )

    async def handle_visit_recorded(self, event_id: int) -> Optional[ReferralCommission]:
        """
        Consume one outbox event at most once

        The event is claimed (pending -> processing) and committed before any
        work starts, so a crash mid-way leaves it in processing, never retried.
        """
        async with self.session_factory() as session:
            async with session.begin():
                claim = await session.execute(
                    update(VisitEvent)
                    .where(VisitEvent.id == event_id, VisitEvent.status == EVENT_PENDING)
                    .values(status=EVENT_PROCESSING)
                )
                claimed = claim.rowcount == 1

        if not claimed:
            logger.debug(f"Visit event {event_id} already claimed")
            return None

        async with self.session_factory() as session:
            event = await session.get(VisitEvent, event_id)

        try:
            commission = await self.process_commission(
                event.user_id, event.visit_id, event.user_earning, event.platform_earning
            )
        except Exception as e:
            logger.exception(f"Referral commission for visit event {event_id} failed: {e}")
            await self._finish_event(event_id, EVENT_FAILED, str(e)[:500])
            return None

        await self._finish_event(event_id, EVENT_PROCESSED if commission is not None else EVENT_SKIPPED)
        return commission

    async def drain_pending_events(self, limit: int = 100) -> int:
        """Process events left pending, e.g. after a crash between commit and hand-off"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(VisitEvent.id)
                .where(VisitEvent.status == EVENT_PENDING)
                .order_by(VisitEvent.created_at, VisitEvent.id)
                .limit(limit)
            )
            event_ids = list(result.scalars().all())

        for event_id in event_ids:
            await self.handle_visit_recorded(event_id)

        if event_ids:
            logger.info(f"Drained {len(event_ids)} pending visit events")
        return len(event_ids)

    # ---- assignment ----

    async def validate_referral_code(self, code: Optional[str]) -> Optional[dict]:
        if not code or not isinstance(code, str):
            return None

        async with self.session_factory() as session:
            referrer = await session.scalar(
                select(User).where(User.referral_code == code.strip().upper(), User.is_active == True)
            )

        if referrer is None:
            return None
        return {'id': referrer.id, 'email': mask_email(referrer.email), 'referral_code': referrer.referral_code}

    async def assign_referrer(self, user_id: int, referral_code: str, registration_ip: Optional[str],
                              user_agent: Optional[str] = None) -> dict:
        """
        Attach a referrer to a freshly registered user and score the pair for fraud

        Raises:
            NotFound: the user does not exist
            PreconditionFailed: referral system inactive, unknown code,
                self-referral or the user already has a referrer
        """
        settings = await self.settings.get_settings()
        if not settings.referral_system_active:
            raise PreconditionFailed('Referral system is inactive', reason='referral_inactive')

        ip_hash = hash_ip(registration_ip) if registration_ip else None
        user_agent_hash = hash_user_agent(user_agent) if user_agent else None

        async with self.session_factory() as session:
            async with session.begin():
                user = await session.get(User, user_id, with_for_update=True)
                if user is None:
                    raise NotFound(f'User {user_id} not found')
                if user.referred_by_id is not None:
                    raise PreconditionFailed('User already has a referrer', reason='already_referred')

                referrer = await session.scalar(
                    select(User).where(
                        User.referral_code == (referral_code or '').strip().upper(),
                        User.is_active == True
                    )
                )
                if referrer is None:
                    raise PreconditionFailed('Invalid referral code', reason='invalid_code')
                if referrer.id == user.id:
                    raise PreconditionFailed('You cannot refer yourself', reason='self_referral')

                previous = await session.execute(
                    select(User.referral_ip_hash, User.created_at)
                    .where(User.referred_by_id == referrer.id)
                    .order_by(User.created_at.desc())
                    .limit(RECENT_REFERRALS_CHECKED)
                )
                now = self.clock()
                check = score_referral(referrer, previous.all(), ip_hash, user_agent_hash, now)

                bonus_expires = None
                if settings.referral_bonus_duration_days:
                    bonus_expires = now + timedelta(days=settings.referral_bonus_duration_days)

                user.referred_by_id = referrer.id
                user.referral_bonus_expires = bonus_expires
                user.referral_ip_hash = ip_hash
                if user_agent_hash:
                    user.user_agent_hash = user_agent_hash
                user.referral_fraud_flag = check.is_suspicious
                user.referral_fraud_reason = check.reason
                user.referral_fraud_checked_at = now

                if check.is_suspicious:
                    session.add(FraudAlert(
                        referrer_id=referrer.id,
                        referred_id=user.id,
                        reasons=check.reason or '',
                        risk_score=check.risk_score,
                        ip_match=check.ip_match,
                        user_agent_match=check.user_agent_match,
                        timing_anomaly=check.timing_anomaly,
                        status=ALERT_PENDING,
                        created_at=now,
                    ))

            referrer_id = referrer.id

        if check.is_suspicious:
            logger.warning(f"Fraud alert created: user {user_id} referred by {referrer_id}, risk score {check.risk_score} ({check.reason})")
        else:
            logger.info(f"User {user_id} referred by {referrer_id}")

        return {
            'referrer_id': referrer_id,
            'bonus_expires': bonus_expires.isoformat() if bonus_expires else None,
            'fraud_detected': check.is_suspicious,
            'fraud_reason': check.reason,
            'risk_score': check.risk_score,
        }

    async def update_referrer_ip_hash(self, user_id: int, ip: Optional[str], user_agent: Optional[str] = None) -> None:
        """Refresh the known fingerprints of a user on login"""
        if not ip:
            return

        values = {'referral_ip_hash': hash_ip(ip)}
        if user_agent:
            values['user_agent_hash'] = hash_user_agent(user_agent)

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(update(User).where(User.id == user_id).values(**values))

    # ---- admin resolution ----

    async def resolve_fraud_flag(self, referred_user_id: int, action: str, admin_id: Optional[int],
                                 notes: Optional[str] = None) -> dict:
        """
        Resolve the fraud flag of a referred user

        dismiss clears the flag, block deactivates the referred user,
        block_both deactivates the referrer as well. Pending alerts for the
        pair are closed with the matching status.
        """
        if action not in RESOLUTION_STATUSES:
            raise PreconditionFailed(f'Unknown action: {action}', reason='invalid_action')
        alert_status = RESOLUTION_STATUSES[action]

        async with self.session_factory() as session:
            async with session.begin():
                user = await session.get(User, referred_user_id, with_for_update=True)
                if user is None:
                    raise NotFound(f'User {referred_user_id} not found')

                referrer = None
                if user.referred_by_id is not None:
                    referrer = await session.get(User, user.referred_by_id, with_for_update=True)

                if action == 'dismiss':
                    if not user.referral_fraud_flag:
                        raise PreconditionFailed('User is not flagged', reason='flag_state_conflict')
                    user.referral_fraud_flag = False
                    user.referral_fraud_reason = 'dismissed_by_admin'

                elif action == 'block':
                    if not user.is_active:
                        raise PreconditionFailed('User is already blocked', reason='flag_state_conflict')
                    user.is_active = False
                    user.referral_fraud_flag = True
                    user.referral_fraud_reason = 'blocked_by_admin'

                else:
                    if referrer is None:
                        raise PreconditionFailed('User has no referrer', reason='flag_state_conflict')
                    if not user.is_active and not referrer.is_active:
                        raise PreconditionFailed('Both users are already blocked', reason='flag_state_conflict')
                    user.is_active = False
                    user.referral_fraud_flag = True
                    user.referral_fraud_reason = 'blocked_both_by_admin'
                    referrer.is_active = False

                now = self.clock()
                alerts_query = update(FraudAlert).where(
                    FraudAlert.referred_id == user.id,
                    FraudAlert.status == ALERT_PENDING,
                )
                if referrer is not None:
                    alerts_query = alerts_query.where(FraudAlert.referrer_id == referrer.id)
                closed = await session.execute(alerts_query.values(
                    status=alert_status,
                    resolved_by_id=admin_id,
                    resolved_at=now,
                    admin_notes=notes,
                ))

            closed_count = closed.rowcount

        logger.info(
            f"Fraud flag of user {referred_user_id} resolved with '{action}' by admin {admin_id}; "
            f"{closed_count} alert(s) closed as {alert_status}"
        )
        return {
            'user_id': referred_user_id,
            'action': action,
            'alert_status': alert_status,
            'alerts_closed': closed_count,
            'referral_fraud_flag': user.referral_fraud_flag,
            'is_active': user.is_active,
        }

    # ---- read side ----

    async def get_user_referral_stats(self, user_id: int) -> dict:
        referrer_alias = aliased(User)
        async with self.session_factory() as session:
            result = await session.execute(
                select(User, referrer_alias.email)
                .outerjoin(referrer_alias, referrer_alias.id == User.referred_by_id)
                .where(User.id == user_id)
            )
            row = result.first()
            if row is None:
                raise NotFound(f'User {user_id} not found')
            user, referred_by_email = row

            referred_by = {'email': mask_email(referred_by_email)} if referred_by_email else None

            if not user.referral_code:
                return {
                    'referral_code': None,
                    'referral_link': None,
                    'referred_by': referred_by,
                    'stats': {
                        'total_referrals': 0,
                        'active_referrals': 0,
                        'total_earnings': '0.00',
                        'last_30_days_earnings': '0.00',
                        'total_commissions': 0,
                    },
                    'referrals': [],
                }

            total_referrals = await session.scalar(
                select(func.count(User.id)).where(User.referred_by_id == user_id)
            ) or 0
            active_referrals = await session.scalar(
                select(func.count(User.id)).where(User.referred_by_id == user_id, User.total_earned > 0)
            ) or 0
            referrals = (await session.execute(
                select(User)
                .where(User.referred_by_id == user_id)
                .order_by(User.created_at.desc())
                .limit(50)
            )).scalars().all()
            commission_count = await session.scalar(
                select(func.count(ReferralCommission.id)).where(ReferralCommission.referrer_id == user_id)
            ) or 0
            recent_sum = await session.scalar(
                select(func.sum(ReferralCommission.amount)).where(
                    ReferralCommission.referrer_id == user_id,
                    ReferralCommission.created_at >= self.clock() - timedelta(days=30)
                )
            )

        return {
            'referral_code': user.referral_code,
            'referral_link': f"{Server.BASE_URL}/ref/{user.referral_code}",
            'referred_by': referred_by,
            'stats': {
                'total_referrals': total_referrals,
                'active_referrals': active_referrals,
                'total_earnings': str(quantize_money(user.referral_earnings)),
                'last_30_days_earnings': str(quantize_money(to_decimal(recent_sum))),
                'total_commissions': commission_count,
            },
            'referrals': [
                {
                    'id': ref.id,
                    'email': mask_email(ref.email),
                    'joined_at': ref.created_at.isoformat() if ref.created_at else None,
                    'total_earned': str(quantize_money(ref.total_earned)),
                    'is_active': ref.is_active,
                    'bonus_expires': ref.referral_bonus_expires.isoformat() if ref.referral_bonus_expires else None,
                }
                for ref in referrals
            ],
        }

    async def get_user_commissions(self, user_id: int, page: int = 1, limit: int = 20) -> dict:
        page, limit = _page_args(page, limit)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count(ReferralCommission.id)).where(ReferralCommission.referrer_id == user_id)
            ) or 0
            result = await session.execute(
                select(ReferralCommission, User.email)
                .join(User, User.id == ReferralCommission.referred_id)
                .where(ReferralCommission.referrer_id == user_id)
                .order_by(ReferralCommission.created_at.desc(), ReferralCommission.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = result.all()

        return {
            'commissions': [
                {
                    'id': commission.id,
                    'visit_id': commission.visit_id,
                    'referred_email': mask_email(email),
                    'referred_earning': str(quantize_money(commission.referred_earning)),
                    'commission': str(quantize_money(commission.amount)),
                    'commission_rate': f"{(Decimal(commission.commission_rate) * 100).normalize():f}%",
                    'created_at': commission.created_at.isoformat() if commission.created_at else None,
                }
                for commission, email in rows
            ],
            'pagination': _pagination(page, limit, total),
        }

    async def get_fraud_alerts(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
        page, limit = _page_args(page, limit)
        referrer_alias = aliased(User)
        referred_alias = aliased(User)

        query = (
            select(FraudAlert, referrer_alias, referred_alias)
            .join(referrer_alias, referrer_alias.id == FraudAlert.referrer_id)
            .join(referred_alias, referred_alias.id == FraudAlert.referred_id)
        )
        count_query = select(func.count(FraudAlert.id))
        if status:
            query = query.where(FraudAlert.status == status.upper())
            count_query = count_query.where(FraudAlert.status == status.upper())

        async with self.session_factory() as session:
            total = await session.scalar(count_query) or 0
            result = await session.execute(
                query.order_by(FraudAlert.created_at.desc(), FraudAlert.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = result.all()

        return {
            'alerts': [
                {
                    'id': alert.id,
                    'status': alert.status,
                    'risk_score': alert.risk_score,
                    'reasons': [r for r in alert.reasons.split(', ') if r] if alert.reasons else [],
                    'ip_match': alert.ip_match,
                    'user_agent_match': alert.user_agent_match,
                    'timing_anomaly': alert.timing_anomaly,
                    'created_at': alert.created_at.isoformat() if alert.created_at else None,
                    'resolved_at': alert.resolved_at.isoformat() if alert.resolved_at else None,
                    'admin_notes': alert.admin_notes,
                    'referrer': {
                        'id': referrer.id,
                        'email': referrer.email,
                        'referral_code': referrer.referral_code,
                        'is_active': referrer.is_active,
                    },
                    'referred': {
                        'id': referred.id,
                        'email': referred.email,
                        'is_active': referred.is_active,
                        'created_at': referred.created_at.isoformat() if referred.created_at else None,
                    },
                }
                for alert, referrer, referred in rows
            ],
            'pagination': _pagination(page, limit, total),
        }

    async def get_fraud_alert_stats(self) -> dict:
        async with self.session_factory() as session:
            pending = await session.scalar(
                select(func.count(FraudAlert.id)).where(FraudAlert.status == ALERT_PENDING)
            ) or 0
            dismissed = await session.scalar(
                select(func.count(FraudAlert.id)).where(FraudAlert.status == ALERT_DISMISSED)
            ) or 0
            blocked = await session.scalar(
                select(func.count(FraudAlert.id)).where(
                    FraudAlert.status.in_([ALERT_BLOCKED_REFERRED, ALERT_BLOCKED_BOTH])
                )
            ) or 0
            total = await session.scalar(select(func.count(FraudAlert.id))) or 0
            high_risk = await session.scalar(
                select(func.count(FraudAlert.id)).where(
                    FraudAlert.status == ALERT_PENDING,
                    FraudAlert.risk_score >= HIGH_RISK_THRESHOLD
                )
            ) or 0
            avg_risk = await session.scalar(
                select(func.avg(FraudAlert.risk_score)).where(FraudAlert.status == ALERT_PENDING)
            )

        return {
            'pending': pending,
            'dismissed': dismissed,
            'blocked': blocked,
            'total': total,
            'high_risk': high_risk,
            'avg_risk_score': round(float(avg_risk or 0)),
        }

    async def get_admin_stats(self) -> dict:
        referrer_alias = aliased(User)
        async with self.session_factory() as session:
            total_referrals = await session.scalar(
                select(func.count(User.id)).where(User.referred_by_id.is_not(None))
            ) or 0
            total_commissions = await session.scalar(select(func.count(ReferralCommission.id))) or 0
            commissions_sum = await session.scalar(select(func.sum(ReferralCommission.amount)))
            active_referrers = await session.scalar(
                select(func.count(func.distinct(User.referred_by_id))).where(User.referred_by_id.is_not(None))
            ) or 0
            flagged = await session.scalar(
                select(func.count(User.id)).where(User.referral_fraud_flag == True, User.referred_by_id.is_not(None))
            ) or 0

            referral_counts = (
                select(User.referred_by_id.label('referrer_id'), func.count(User.id).label('referrals'))
                .where(User.referred_by_id.is_not(None))
                .group_by(User.referred_by_id)
                .subquery()
            )
            top_referrers = (await session.execute(
                select(User, func.coalesce(referral_counts.c.referrals, 0))
                .outerjoin(referral_counts, referral_counts.c.referrer_id == User.id)
                .where(User.referral_earnings > 0)
                .order_by(User.referral_earnings.desc())
                .limit(10)
            )).all()

            recent_referrals = (await session.execute(
                select(User, referrer_alias.email, referrer_alias.referral_code)
                .join(referrer_alias, referrer_alias.id == User.referred_by_id)
                .order_by(User.created_at.desc())
                .limit(20)
            )).all()

        alert_stats = await self.get_fraud_alert_stats()
        settings = await self.settings.get_settings()

        return {
            'overview': {
                'total_referrals': total_referrals,
                'total_commissions': total_commissions,
                'total_commissions_amount': str(quantize_money(to_decimal(commissions_sum))),
                'active_referrers': active_referrers,
                'fraud_flags': flagged,
                'pending_fraud_alerts': alert_stats['pending'],
                'high_risk_alerts': alert_stats['high_risk'],
            },
            'fraud_alert_stats': alert_stats,
            'top_referrers': [
                {
                    'id': user.id,
                    'email': user.email,
                    'referral_code': user.referral_code,
                    'earnings': str(quantize_money(user.referral_earnings)),
                    'referrals_count': count,
                }
                for user, count in top_referrers
            ],
            'recent_referrals': [
                {
                    'id': user.id,
                    'email': mask_email(user.email),
                    'joined_at': user.created_at.isoformat() if user.created_at else None,
                    'fraud_flag': user.referral_fraud_flag,
                    'referred_by': {'email': email, 'code': code},
                }
                for user, email, code in recent_referrals
            ],
            'settings': settings.to_dict(),
        }
