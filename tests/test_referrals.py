import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from linkearn.errors import NotFound, PreconditionFailed
from linkearn.models import FraudAlert, ReferralCommission, SystemSettings, User, VisitEvent
from linkearn.server.referral_service import FRAUD_THRESHOLD, score_referral
from linkearn.server.security import hash_ip, hash_user_agent
from linkearn.server.settings_service import DEFAULT_SETTINGS

VISITOR = hash_ip('203.0.113.50')
REFERRER_IP = '198.51.100.10'
CHROME = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36'

@pytest.fixture
async def pair(make_user):
    referrer = await make_user()
    referred = await make_user(referred_by_id=referrer.id)
    return referrer, referred

async def set_commission_rate(services, rate):
    await services.settings.update_settings({'referral_commission_rate': rate})

async def test_concurrent_first_settings_read_creates_one_row(services, session_factory):
    first, second = await asyncio.gather(services.settings.get_settings(), services.settings.get_settings())

    assert first == DEFAULT_SETTINGS
    assert second == DEFAULT_SETTINGS
    async with session_factory() as session:
        assert await session.scalar(select(func.count(SystemSettings.id))) == 1

async def test_commission_is_share_of_platform_earning(services, fetch, pair):
    referrer, referred = pair
    await set_commission_rate(services, '0.10')

    commission = await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045')

    assert commission is not None
    assert commission.amount == Decimal('0.000045')
    assert commission.referrer_id == referrer.id

    referrer = await fetch(User, referrer.id)
    assert referrer.balance == Decimal('0.000045')
    assert referrer.referral_earnings == Decimal('0.000045')
    assert referrer.total_earned == Decimal('0.000045')

async def test_flagged_referred_user_yields_nothing(services, fetch, make_user):
    referrer = await make_user()
    referred = await make_user(referred_by_id=referrer.id, referral_fraud_flag=True)

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is None
    assert (await fetch(User, referrer.id)).balance == Decimal('0')

async def test_no_referrer_yields_nothing(services, make_user):
    user = await make_user()

    assert await services.referrals.process_commission(user.id, 1001, '0.00255', '0.00045') is None

async def test_inactive_referrer_yields_nothing(services, make_user):
    referrer = await make_user(is_active=False)
    referred = await make_user(referred_by_id=referrer.id)

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is None

async def test_inactive_system_yields_nothing(services, pair):
    _, referred = pair
    await services.settings.update_settings({'referral_system_active': 'false'})

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is None

async def test_expired_bonus_window_yields_nothing(services, clock, make_user):
    referrer = await make_user()
    referred = await make_user(referred_by_id=referrer.id, referral_bonus_expires=clock() - timedelta(days=1))

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is None

async def test_open_bonus_window_pays(services, clock, make_user):
    referrer = await make_user()
    referred = await make_user(referred_by_id=referrer.id, referral_bonus_expires=clock() + timedelta(days=1))

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is not None

async def test_zero_commission_yields_nothing(services, pair):
    _, referred = pair
    await set_commission_rate(services, '0')

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is None

async def test_visit_pays_referrer_through_outbox(services, session_factory, fetch, make_link, pair):
    referrer, referred = pair
    link = await make_link(referred)

    result = await services.ledger.record_visit(link.id, VISITOR, 'US')

    event = await fetch(VisitEvent, result.event_id)
    assert event.status == 'processed'

    referrer = await fetch(User, referrer.id)
    # 0.00045 * 0.05 = 0.0000225, rounded half up
    assert referrer.balance == Decimal('0.000023')

    async with session_factory() as session:
        commissions = (await session.execute(select(ReferralCommission))).scalars().all()
    assert len(commissions) == 1
    assert commissions[0].visit_id == result.visit_id

async def test_event_is_processed_at_most_once(services, fetch, make_link, pair):
    referrer, referred = pair
    link = await make_link(referred)
    result = await services.ledger.record_visit(link.id, VISITOR, 'US')

    assert await services.referrals.handle_visit_recorded(result.event_id) is None

    referrer = await fetch(User, referrer.id)
    assert referrer.balance == Decimal('0.000023')

async def test_drain_processes_events_left_pending(services, fetch, make_link, pair):
    referrer, referred = pair
    link = await make_link(referred)
    services.ledger.commission_handler = None

    result = await services.ledger.record_visit(link.id, VISITOR, 'US')
    assert (await fetch(VisitEvent, result.event_id)).status == 'pending'

    assert await services.referrals.drain_pending_events() == 1
    assert await services.referrals.drain_pending_events() == 0

    assert (await fetch(VisitEvent, result.event_id)).status == 'processed'
    assert (await fetch(User, referrer.id)).balance == Decimal('0.000023')

async def test_event_without_referrer_is_skipped(services, fetch, make_user, make_link):
    link = await make_link(await make_user())

    result = await services.ledger.record_visit(link.id, VISITOR, 'US')

    assert (await fetch(VisitEvent, result.event_id)).status == 'skipped'

async def test_failed_event_is_not_retried(services, fetch, make_link, pair, monkeypatch):
    _, referred = pair
    link = await make_link(referred)
    services.ledger.commission_handler = None
    result = await services.ledger.record_visit(link.id, VISITOR, 'US')

    async def broken(*args, **kwargs):
        raise RuntimeError('database went away')

    monkeypatch.setattr(services.referrals, 'process_commission', broken)
    assert await services.referrals.handle_visit_recorded(result.event_id) is None

    event = await fetch(VisitEvent, result.event_id)
    assert event.status == 'failed'
    assert 'database went away' in event.error
    assert await services.referrals.drain_pending_events() == 0

async def test_dismissing_flag_restores_commissions(services, make_user):
    referrer = await make_user()
    referred = await make_user(referred_by_id=referrer.id, referral_fraud_flag=True)
    await set_commission_rate(services, '0.10')

    assert await services.referrals.process_commission(referred.id, 1001, '0.00255', '0.00045') is None

    result = await services.referrals.resolve_fraud_flag(referred.id, 'dismiss', admin_id=None)
    assert result['referral_fraud_flag'] is False

    commission = await services.referrals.process_commission(referred.id, 1002, '0.00255', '0.00045')
    assert commission.amount == Decimal('0.000045')

async def test_assign_clean_referral(services, fetch, make_user):
    referrer = await make_user(registration_ip_hash=hash_ip(REFERRER_IP))
    user = await make_user()

    result = await services.referrals.assign_referrer(user.id, referrer.referral_code.lower(), '203.0.113.9', CHROME)

    assert result['referrer_id'] == referrer.id
    assert result['fraud_detected'] is False
    assert result['bonus_expires'] is None

    user = await fetch(User, user.id)
    assert user.referred_by_id == referrer.id
    assert not user.referral_fraud_flag

async def test_assign_sets_bonus_expiry(services, clock, make_user):
    referrer = await make_user()
    user = await make_user()
    await services.settings.update_settings({'referral_bonus_duration_days': 30})

    result = await services.referrals.assign_referrer(user.id, referrer.referral_code, '203.0.113.9')

    assert result['bonus_expires'] == (clock() + timedelta(days=30)).isoformat()

async def test_assign_same_ip_as_referrer_is_flagged(services, session_factory, fetch, make_user):
    referrer = await make_user(registration_ip_hash=hash_ip(REFERRER_IP))
    user = await make_user()

    result = await services.referrals.assign_referrer(user.id, referrer.referral_code, REFERRER_IP, CHROME)

    assert result['fraud_detected'] is True
    assert result['risk_score'] >= 40
    assert (await fetch(User, user.id)).referral_fraud_flag

    alerts = await services.referrals.get_fraud_alerts('pending')
    assert alerts['pagination']['total'] == 1
    assert 'same_ip_as_referrer' in alerts['alerts'][0]['reasons']

@pytest.mark.parametrize('code, reason', [
    ('NOPE1234', 'invalid_code'),
    (None, 'invalid_code'),
])
async def test_assign_rejects_unknown_code(services, make_user, code, reason):
    user = await make_user()

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.assign_referrer(user.id, code, '203.0.113.9')
    assert exc.value.reason == reason

async def test_assign_rejects_self_referral(services, make_user):
    user = await make_user()

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.assign_referrer(user.id, user.referral_code, '203.0.113.9')
    assert exc.value.reason == 'self_referral'

async def test_assign_rejects_second_referrer(services, make_user, pair):
    _, referred = pair
    other = await make_user()

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.assign_referrer(referred.id, other.referral_code, '203.0.113.9')
    assert exc.value.reason == 'already_referred'

async def test_assign_rejected_while_system_inactive(services, make_user):
    referrer = await make_user()
    user = await make_user()
    await services.settings.update_settings({'referral_system_active': False})

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.assign_referrer(user.id, referrer.referral_code, '203.0.113.9')
    assert exc.value.reason == 'referral_inactive'

async def test_assign_unknown_user(services, make_user):
    referrer = await make_user()

    with pytest.raises(NotFound):
        await services.referrals.assign_referrer(999, referrer.referral_code, '203.0.113.9')

def test_score_referral_signals(clock):
    referrer = User(
        registration_ip_hash=hash_ip(REFERRER_IP),
        user_agent_hash=hash_user_agent(CHROME),
        created_at=clock() - timedelta(minutes=30),
    )
    previous = [(hash_ip('203.0.113.9'), clock() - timedelta(hours=1)) for _ in range(5)]

    check = score_referral(referrer, previous, hash_ip('203.0.113.9'), hash_user_agent(CHROME), clock())

    assert check.reasons == [
        'same_user_agent',
        'ip_matches_previous_referrals',
        'burst_referral_pattern',
        'suspicious_timing_very_fast',
    ]
    assert check.risk_score == 15 + 25 + 20 + 15
    assert check.is_suspicious
    assert check.timing_anomaly

def test_score_referral_below_threshold(clock):
    referrer = User(created_at=clock() - timedelta(hours=5))
    previous = [(None, clock() - timedelta(hours=2)) for _ in range(3)]

    check = score_referral(referrer, previous, hash_ip('203.0.113.9'), None, clock())

    assert check.risk_score == 10 + 5
    assert check.risk_score < FRAUD_THRESHOLD
    assert not check.is_suspicious

async def test_resolve_dismiss_requires_flag(services, pair):
    _, referred = pair

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.resolve_fraud_flag(referred.id, 'dismiss', admin_id=None)
    assert exc.value.reason == 'flag_state_conflict'

async def test_resolve_unknown_action(services, pair):
    _, referred = pair

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.resolve_fraud_flag(referred.id, 'delete', admin_id=None)
    assert exc.value.reason == 'invalid_action'

async def test_resolve_block_closes_alert(services, session_factory, fetch, make_user):
    referrer = await make_user(registration_ip_hash=hash_ip(REFERRER_IP))
    user = await make_user()
    await services.referrals.assign_referrer(user.id, referrer.referral_code, REFERRER_IP)

    result = await services.referrals.resolve_fraud_flag(user.id, 'block', admin_id=None, notes='same household')

    assert result['alerts_closed'] == 1
    assert result['alert_status'] == 'BLOCKED_REFERRED'
    assert not (await fetch(User, user.id)).is_active
    assert (await fetch(User, referrer.id)).is_active

    async with session_factory() as session:
        alert = await session.scalar(select(FraudAlert))
    assert alert.status == 'BLOCKED_REFERRED'
    assert alert.admin_notes == 'same household'

async def test_resolve_block_both(services, fetch, pair):
    referrer, referred = pair

    result = await services.referrals.resolve_fraud_flag(referred.id, 'block_both', admin_id=None)

    assert result['is_active'] is False
    assert not (await fetch(User, referrer.id)).is_active

async def test_resolve_block_both_without_referrer(services, make_user):
    user = await make_user()

    with pytest.raises(PreconditionFailed) as exc:
        await services.referrals.resolve_fraud_flag(user.id, 'block_both', admin_id=None)
    assert exc.value.reason == 'flag_state_conflict'

async def test_referral_stats_and_commissions(services, make_link, pair):
    referrer, referred = pair
    link = await make_link(referred)
    await services.ledger.record_visit(link.id, VISITOR, 'US')

    stats = await services.referrals.get_user_referral_stats(referrer.id)
    assert stats['referral_code'] == referrer.referral_code
    assert stats['stats']['total_referrals'] == 1
    assert stats['stats']['active_referrals'] == 1
    assert stats['stats']['total_commissions'] == 1

    page = await services.referrals.get_user_commissions(referrer.id)
    assert page['pagination']['total'] == 1
    assert page['commissions'][0]['commission'] == '0.000023'
    assert page['commissions'][0]['commission_rate'] == '5%'

    admin_stats = await services.referrals.get_admin_stats()
    assert admin_stats['overview']['total_referrals'] == 1
    assert admin_stats['top_referrers'][0]['id'] == referrer.id

async def test_validate_referral_code(services, make_user):
    referrer = await make_user(email='alice@example.com')

    found = await services.referrals.validate_referral_code(referrer.referral_code.lower())

    assert found['id'] == referrer.id
    assert found['email'] == 'al***@example.com'
    assert await services.referrals.validate_referral_code('MISSING1') is None
