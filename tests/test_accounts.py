from decimal import Decimal

import pytest
from sqlalchemy import select

from linkearn.errors import NotFound, PreconditionFailed
from linkearn.models import BalanceAdjustment, User
from linkearn.server import account_service
from linkearn.server.account_service import AccountService
from linkearn.server.security import hash_ip, hash_password

async def test_create_user(services, fetch):
    user = await services.accounts.create_user(' Alice@Example.com ', 'correct horse', registration_ip='203.0.113.4')

    assert user['email'] == 'alice@example.com'
    assert len(user['referral_code']) == 8
    assert user['balance'] == '0.00'

    stored = await fetch(User, user['id'])
    assert stored.registration_ip_hash == hash_ip('203.0.113.4')
    assert stored.password_hash != 'correct horse'

class CountingSessionFactory:
    """Wraps a session factory and counts the sessions it opens"""

    def __init__(self, inner):
        self.inner = inner
        self.opened = 0

    def __call__(self, *args, **kwargs):
        self.opened += 1
        return self.inner(*args, **kwargs)

async def test_password_is_hashed_before_any_session(monkeypatch, session_factory, clock, fetch):
    counting = CountingSessionFactory(session_factory)
    accounts = AccountService(session_factory=counting, clock=clock)
    hashed_with_sessions_open = []

    def tracking_hash(password):
        hashed_with_sessions_open.append(counting.opened)
        return hash_password(password)

    monkeypatch.setattr(account_service, 'hash_password', tracking_hash)

    user = await accounts.create_user('erin@example.com', 'password123')

    assert hashed_with_sessions_open == [0]
    assert counting.opened > 0
    assert (await fetch(User, user['id'])).password_hash.startswith('$2')

@pytest.mark.parametrize('email, password, reason', [
    ('not-an-email', 'long enough', 'invalid_email'),
    ('bob@example.com', 'short', 'weak_password'),
])
async def test_create_user_validation(services, email, password, reason):
    with pytest.raises(PreconditionFailed) as exc:
        await services.accounts.create_user(email, password)
    assert exc.value.reason == reason

async def test_duplicate_email(services):
    await services.accounts.create_user('carol@example.com', 'password123')

    with pytest.raises(PreconditionFailed) as exc:
        await services.accounts.create_user('CAROL@example.com', 'password123')
    assert exc.value.reason == 'email_taken'

async def test_create_user_with_referral(services, make_user):
    referrer = await make_user()

    user = await services.accounts.create_user('dave@example.com', 'password123', '203.0.113.5',
                                               referral_code=referrer.referral_code)

    assert user['referral']['referrer_id'] == referrer.id

async def test_invalid_referral_code_does_not_block_registration(services):
    user = await services.accounts.create_user('erin@example.com', 'password123', referral_code='BADCODE1')

    assert user['id'] is not None
    assert user['referral'] is None

async def test_authenticate(services, fetch):
    created = await services.accounts.create_user('frank@example.com', 'password123')

    assert await services.accounts.authenticate('frank@example.com', 'wrong-password') is None

    user = await services.accounts.authenticate('FRANK@example.com', 'password123', ip='198.51.100.7')
    assert user['id'] == created['id']

    stored = await fetch(User, created['id'])
    assert stored.referral_ip_hash == hash_ip('198.51.100.7')
    assert stored.last_login is not None

async def test_inactive_user_cannot_authenticate(services):
    created = await services.accounts.create_user('gina@example.com', 'password123')
    await services.accounts.set_active(created['id'], False)

    assert await services.accounts.authenticate('gina@example.com', 'password123') is None

async def test_adjust_balance(services, session_factory, make_user):
    user = await make_user(balance=Decimal('1.00'))

    updated = await services.accounts.adjust_balance(user.id, '2.50', admin_id=None, note='manual bonus')

    assert updated['balance'] == '3.50'
    async with session_factory() as session:
        adjustment = await session.scalar(select(BalanceAdjustment))
    assert adjustment.amount == Decimal('2.50')
    assert adjustment.note == 'manual bonus'

async def test_adjust_balance_cannot_go_negative(services, make_user):
    user = await make_user(balance=Decimal('1.00'))

    with pytest.raises(PreconditionFailed) as exc:
        await services.accounts.adjust_balance(user.id, '-2', admin_id=None)
    assert exc.value.reason == 'insufficient_balance'

@pytest.mark.parametrize('amount', ['0', 'ten', None])
async def test_adjust_balance_rejects_bad_amount(services, make_user, amount):
    user = await make_user()

    with pytest.raises(PreconditionFailed) as exc:
        await services.accounts.adjust_balance(user.id, amount, admin_id=None)
    assert exc.value.reason == 'invalid_amount'

async def test_get_missing_user(services):
    with pytest.raises(NotFound):
        await services.accounts.get_user(12345)

async def test_links(services, make_user):
    user = await make_user()

    link = await services.links.create_link(user.id, 'https://example.org/article', title='  Article ')

    assert len(link['short_code']) == 6
    assert link['short_url'].endswith('/' + link['short_code'])
    assert link['title'] == 'Article'

    fetched = await services.links.get_by_short_code(link['short_code'])
    assert fetched.id == link['id']

    disabled = await services.links.set_link_active(link['id'], user.id, False)
    assert disabled['is_active'] is False
    assert len(await services.links.list_user_links(user.id)) == 1

async def test_create_link_rejects_bad_url(services, make_user):
    user = await make_user()

    with pytest.raises(PreconditionFailed) as exc:
        await services.links.create_link(user.id, 'javascript:alert(1)')
    assert exc.value.reason == 'invalid_url'

async def test_set_link_active_checks_owner(services, make_user, make_link):
    owner, stranger = await make_user(), await make_user()
    link = await make_link(owner)

    with pytest.raises(NotFound):
        await services.links.set_link_active(link.id, stranger.id, False)
