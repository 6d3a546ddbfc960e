import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError

from linkearn.errors import NotFound, OwnerInactive, PreconditionFailed, TransactionFailure
from linkearn.models import DailyEarning, Link, User, Visit, VisitEvent
from linkearn.modules.helpers import quantize_money
from linkearn.server import visit_ledger
from linkearn.server.earning_service import EarningService
from linkearn.server.encryption import decrypt_ip
from linkearn.server.fraud_gate import VisitFraudGate
from linkearn.server.interfaces import EarningResult
from linkearn.server.security import hash_ip

FINGERPRINT = hash_ip('203.0.113.7')

async def count(session_factory, model, *where):
    async with session_factory() as session:
        return await session.scalar(select(func.count(model.id)).where(*where))

async def test_unique_visit_credits_owner(services, session_factory, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)

    result = await services.ledger.record_visit(link.id, FINGERPRINT, 'US', 'mobile', 'Chrome')

    assert result.redirect_url == 'https://example.com/target'
    assert result.earnings.earned == Decimal('0.00255')
    assert result.earnings.platform_earned == Decimal('0.00045')
    assert result.event_id is not None

    owner = await fetch(User, owner.id)
    assert owner.balance == Decimal('0.00255')
    assert owner.total_earned == Decimal('0.00255')

    link = await fetch(Link, link.id)
    assert link.total_clicks == 1
    assert link.unique_clicks == 1
    assert link.total_earned == Decimal('0.00255')

    visit = await fetch(Visit, result.visit_id)
    assert visit.country == 'US'
    assert visit.country_tier == 1
    assert visit.device == 'mobile'
    assert visit.is_unique
    assert not visit.fraud_blocked

async def test_daily_earning_rollup_accumulates(services, session_factory, clock, make_user, make_link):
    owner = await make_user()
    first, second = await make_link(owner), await make_link(owner)

    await services.ledger.record_visit(first.id, FINGERPRINT, 'US')
    clock.advance(minutes=1)
    await services.ledger.record_visit(second.id, FINGERPRINT, 'US')

    async with session_factory() as session:
        rows = (await session.execute(select(DailyEarning))).scalars().all()

    assert len(rows) == 1
    assert rows[0].earning_date == clock().date()
    assert rows[0].visits == 2
    assert rows[0].unique_visits == 2
    assert rows[0].user_earnings == Decimal('0.0051')
    assert rows[0].platform_earnings == Decimal('0.0009')

async def test_repeat_visit_counts_click_without_credit(services, session_factory, clock, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)

    await services.ledger.record_visit(link.id, FINGERPRINT, 'US')
    clock.advance(hours=1)
    second = await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    assert second.earnings.earned == Decimal('0')
    assert not second.earnings.is_unique
    assert second.event_id is None

    link = await fetch(Link, link.id)
    assert link.total_clicks == 2
    assert link.unique_clicks == 1

    owner = await fetch(User, owner.id)
    assert owner.balance == Decimal('0.00255')
    assert await count(session_factory, VisitEvent) == 1

async def test_fifty_first_visit_is_recorded_as_blocked(services, session_factory, clock, fetch, make_user, make_link):
    owner = await make_user()
    links = [await make_link(owner) for _ in range(51)]

    for link in links[:50]:
        await services.ledger.record_visit(link.id, FINGERPRINT, 'US')
        clock.advance(minutes=1)

    result = await services.ledger.record_visit(links[50].id, FINGERPRINT, 'US')

    assert result.earnings.blocked
    assert result.earnings.block_reason == 'daily_limit'
    assert result.earnings.earned == Decimal('0')

    visit = await fetch(Visit, result.visit_id)
    assert visit.fraud_blocked
    assert visit.earned == Decimal('0')
    assert not visit.is_unique

    blocked_link = await fetch(Link, links[50].id)
    assert blocked_link.total_clicks == 1
    assert blocked_link.unique_clicks == 0

    owner = await fetch(User, owner.id)
    assert owner.balance == Decimal('0.00255') * 50

async def test_missing_link_is_not_found(services, session_factory):
    with pytest.raises(NotFound):
        await services.ledger.record_visit(999, FINGERPRINT, 'US')

    assert await count(session_factory, Visit) == 0

async def test_inactive_link_is_rejected(services, session_factory, make_user, make_link):
    link = await make_link(await make_user(), is_active=False)

    with pytest.raises(PreconditionFailed) as exc:
        await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    assert exc.value.reason == 'link_inactive'
    assert await count(session_factory, Visit) == 0

async def test_inactive_owner_is_rejected(services, session_factory, make_user, make_link):
    link = await make_link(await make_user(is_active=False))

    with pytest.raises(OwnerInactive):
        await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    assert await count(session_factory, Visit) == 0

class CountingCalculator:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    async def calculate(self, ip_fingerprint, link_id, country_code):
        self.calls += 1
        return await self.inner.calculate(ip_fingerprint, link_id, country_code)

async def test_calculator_invoked_once_per_visit(services, make_user, make_link):
    link = await make_link(await make_user())
    counting = CountingCalculator(services.calculator)
    services.ledger.calculator = counting

    await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    assert counting.calls == 1

class FailingHandler:
    async def handle_visit_recorded(self, event_id):
        raise RuntimeError('commission engine down')

async def test_commission_failure_keeps_visit(services, session_factory, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)
    services.ledger.commission_handler = FailingHandler()

    result = await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    owner = await fetch(User, owner.id)
    assert owner.balance == Decimal('0.00255')
    event = await fetch(VisitEvent, result.event_id)
    assert event.status == 'pending'

async def test_record_visit_from_ip(services, fetch, make_user, make_link):
    link = await make_link(await make_user())
    iphone = 'Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1'

    result = await services.ledger.record_visit_from_ip(link.id, '203.0.113.7', 'gb', iphone)

    visit = await fetch(Visit, result.visit_id)
    assert visit.ip_hash == FINGERPRINT
    assert visit.country == 'GB'
    assert visit.device == 'mobile'
    assert visit.browser == 'Safari'
    assert decrypt_ip(visit.encrypted_ip) == '203.0.113.7'

async def test_earnings_stats_by_country(services, clock, make_user, make_link):
    link = await make_link(await make_user())

    await services.ledger.record_visit(link.id, hash_ip('198.51.100.1'), 'US')
    clock.advance(minutes=1)
    await services.ledger.record_visit(link.id, hash_ip('198.51.100.2'), 'US')
    clock.advance(minutes=1)
    await services.ledger.record_visit(link.id, hash_ip('198.51.100.2'), 'US')
    clock.advance(minutes=1)
    await services.ledger.record_visit(link.id, hash_ip('198.51.100.3'), 'IN')

    stats = {entry['country']: entry for entry in await services.ledger.earnings_stats_by_country()}

    assert stats['US']['total_visits'] == 3
    assert stats['US']['unique_visits'] == 2
    assert Decimal(stats['US']['user_earnings']) == Decimal('0.0051')
    assert stats['US']['country_name'] == 'United States'
    assert stats['US']['tier'] == 1
    assert Decimal(stats['US']['effective_cpm']) == Decimal('2.55')
    assert stats['IN']['tier'] == 3

class RacingCalculator:
    """Holds every caller until all of them have their answer, so none has recorded yet"""

    def __init__(self, inner, callers: int):
        self.inner = inner
        self.callers = callers
        self.arrived = 0
        self.ready = asyncio.Event()

    async def calculate(self, ip_fingerprint, link_id, country_code):
        result = await self.inner.calculate(ip_fingerprint, link_id, country_code)
        self.arrived += 1
        if self.arrived >= self.callers:
            self.ready.set()
        await self.ready.wait()
        return result

async def test_concurrent_duplicate_visits_credit_once(services, session_factory, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)
    services.ledger.calculator = RacingCalculator(services.calculator, callers=2)
    services.ledger.commission_handler = None

    results = await asyncio.gather(
        services.ledger.record_visit(link.id, FINGERPRINT, 'US'),
        services.ledger.record_visit(link.id, FINGERPRINT, 'US'),
    )

    assert sorted(r.earnings.is_unique for r in results) == [False, True]
    assert sum(r.earnings.earned for r in results) == Decimal('0.00255')
    assert (await fetch(User, owner.id)).balance == Decimal('0.00255')

    link = await fetch(Link, link.id)
    assert link.total_clicks == 2
    assert link.unique_clicks == 1
    assert link.total_earned == Decimal('0.00255')
    assert await count(session_factory, VisitEvent) == 1

UNIQUE_US = EarningResult(
    earned=Decimal('0.00255'),
    platform_earned=Decimal('0.00045'),
    is_unique=True,
    cpm_rate_used=Decimal('3.00'),
    tier=1,
    blocked=False,
    block_reason=None,
    country_code='US',
)

class FixedCalculator:
    def __init__(self, result):
        self.result = result

    async def calculate(self, ip_fingerprint, link_id, country_code):
        return self.result

async def test_stale_unique_answer_is_recorded_as_repeat(services, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)
    services.ledger.calculator = FixedCalculator(UNIQUE_US)

    first = await services.ledger.record_visit(link.id, FINGERPRINT, 'US')
    second = await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    assert first.earnings.is_unique
    assert not second.earnings.is_unique
    assert second.earnings.earned == Decimal('0')
    assert second.event_id is None

    visit = await fetch(Visit, second.visit_id)
    assert visit.earned == Decimal('0')
    assert visit.platform_earned == Decimal('0')
    assert not visit.is_unique
    assert (await fetch(User, owner.id)).balance == Decimal('0.00255')

async def assert_nothing_recorded(session_factory, fetch, owner, link):
    assert await count(session_factory, Visit) == 0
    assert await count(session_factory, VisitEvent) == 0
    assert await count(session_factory, DailyEarning) == 0

    link = await fetch(Link, link.id)
    assert link.total_clicks == 0
    assert link.total_earned == Decimal('0')

    owner = await fetch(User, owner.id)
    assert owner.balance == Decimal('0')
    assert owner.total_earned == Decimal('0')

async def test_failure_after_credit_rolls_back_everything(services, session_factory, fetch, make_user, make_link, monkeypatch):
    owner = await make_user()
    link = await make_link(owner)

    def broken_upsert(dialect_name, values):
        raise SQLAlchemyError('daily_earnings is unavailable')

    monkeypatch.setattr(visit_ledger, 'daily_earning_upsert', broken_upsert)

    with pytest.raises(TransactionFailure):
        await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    await assert_nothing_recorded(session_factory, fetch, owner, link)

async def test_rejected_visit_row_rolls_back(services, session_factory, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)
    # A blocked visit may not carry earnings; the table constraint refuses it
    services.ledger.calculator = FixedCalculator(EarningResult(
        earned=Decimal('0.00255'),
        platform_earned=Decimal('0.00045'),
        is_unique=False,
        cpm_rate_used=Decimal('3.00'),
        tier=1,
        blocked=True,
        block_reason='rate_limit',
        country_code='US',
    ))

    with pytest.raises(TransactionFailure):
        await services.ledger.record_visit(link.id, FINGERPRINT, 'US')

    await assert_nothing_recorded(session_factory, fetch, owner, link)

async def test_visit_earnings_add_up_to_link_and_owner_totals(services, session_factory, clock, fetch, make_user, make_link):
    owner = await make_user()
    link = await make_link(owner)
    gate = VisitFraudGate(session_factory, clock, max_visits_per_minute=3)
    ledger = visit_ledger.VisitLedger(EarningService(gate, services.rates), session_factory, clock)
    repeat_visitor = hash_ip('198.51.100.20')

    results = [await ledger.record_visit(link.id, hash_ip('198.51.100.10'), 'US')]
    for _ in range(4):
        results.append(await ledger.record_visit(link.id, repeat_visitor, 'US'))
    results.append(await ledger.record_visit(link.id, hash_ip('198.51.100.30'), 'IN'))

    assert [r.earnings.is_unique for r in results] == [True, True, False, False, False, True]
    assert [r.earnings.block_reason for r in results] == [None, None, None, None, 'rate_limit', None]

    async with session_factory() as session:
        visit_total = await session.scalar(select(func.sum(Visit.earned)).where(Visit.link_id == link.id))

    link = await fetch(Link, link.id)
    owner = await fetch(User, owner.id)
    expected = Decimal('0.00255') * 2 + Decimal('0.000128')
    assert quantize_money(visit_total) == expected
    assert link.total_earned == expected
    assert owner.balance == expected
    assert link.total_clicks == 6
    assert link.unique_clicks == 3
