import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from linkearn.database import AsyncSessionLocal, generate_unique_referral_code
from linkearn.errors import LinkEarnError, NotFound, PreconditionFailed, TransactionFailure
from linkearn.models import BalanceAdjustment, User
from linkearn.modules.helpers import ZERO, display_money, quantize_money, utcnow
from linkearn.server.interfaces import Clock
from linkearn.server.security import (
    hash_ip, hash_password, hash_user_agent, normalize_email, validate_email_format, verify_password
)

logger = logging.getLogger('linkearn.accounts')

MIN_PASSWORD_LENGTH = 8

def user_to_dict(user: User) -> dict:
    return {
        'id': user.id,
        'email': user.email,
        'is_active': user.is_active,
        'is_admin': user.is_admin,
        'balance': str(display_money(user.balance)),
        'total_earned': str(display_money(user.total_earned)),
        'referral_code': user.referral_code,
        'referred_by_id': user.referred_by_id,
        'referral_fraud_flag': user.referral_fraud_flag,
        'referral_earnings': str(display_money(user.referral_earnings)),
        'created_at': user.created_at.isoformat() if user.created_at else None,
    }

class AccountService:
    """User records as seen by the earning pipeline: creation, login fingerprints, admin overrides"""

    def __init__(self, session_factory=AsyncSessionLocal, clock: Clock = utcnow, referrals=None):
        self.session_factory = session_factory
        self.clock = clock
        self.referrals = referrals

    async def create_user(self, email: str, password: str, registration_ip: Optional[str] = None,
                          user_agent: Optional[str] = None, referral_code: Optional[str] = None,
                          is_admin: bool = False) -> dict:
        """
        Create a user with its own referral code

        A referral code, when given, is applied after the user exists; an
        invalid code does not prevent registration.
        """
        if not validate_email_format(email or ''):
            raise PreconditionFailed('Invalid email address', reason='invalid_email')
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise PreconditionFailed(f'Password must be at least {MIN_PASSWORD_LENGTH} characters long', reason='weak_password')

        email = normalize_email(email)
        # Hashed before any session opens
        password_hash = hash_password(password)
        code = await generate_unique_referral_code(self.session_factory)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await session.scalar(select(User.id).where(User.email == email))
                    if existing is not None:
                        raise PreconditionFailed('Email is already registered', reason='email_taken')

                    user = User(
                        email=email,
                        password_hash=password_hash,
                        is_admin=is_admin,
                        balance=ZERO,
                        total_earned=ZERO,
                        referral_earnings=ZERO,
                        referral_code=code,
                        registration_ip_hash=hash_ip(registration_ip) if registration_ip else None,
                        user_agent_hash=hash_user_agent(user_agent) if user_agent else None,
                        created_at=self.clock(),
                    )
                    session.add(user)
                    await session.flush()
                user_id = user.id
                payload = user_to_dict(user)
        except LinkEarnError:
            raise
        except IntegrityError as e:
            raise PreconditionFailed('Email is already registered', reason='email_taken') from e
        except SQLAlchemyError as e:
            logger.exception(f"User creation rolled back: {e}")
            raise TransactionFailure('Could not create account, please retry') from e

        logger.info(f"User {user_id} created")

        if referral_code and self.referrals is not None:
            try:
                payload['referral'] = await self.referrals.assign_referrer(
                    user_id, referral_code, registration_ip, user_agent
                )
            except PreconditionFailed as e:
                logger.info(f"Referral code not applied for user {user_id}: {e.message}")
                payload['referral'] = None

        return payload

    async def authenticate(self, email: str, password: str, ip: Optional[str] = None,
                           user_agent: Optional[str] = None) -> Optional[dict]:
        """Check credentials; on success refresh last_login and the known fingerprints"""
        email = normalize_email(email or '')
        async with self.session_factory() as session:
            user = await session.scalar(select(User).where(User.email == email))

        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            return None

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(update(User).where(User.id == user.id).values(last_login=self.clock()))

        if self.referrals is not None:
            await self.referrals.update_referrer_ip_hash(user.id, ip, user_agent)

        return user_to_dict(user)

    async def get_user(self, user_id: int) -> dict:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
        if user is None:
            raise NotFound(f'User {user_id} not found')
        return user_to_dict(user)

    async def set_active(self, user_id: int, active: bool, admin_id: Optional[int] = None) -> dict:
        async with self.session_factory() as session:
            async with session.begin():
                user = await session.get(User, user_id, with_for_update=True)
                if user is None:
                    raise NotFound(f'User {user_id} not found')
                user.is_active = bool(active)
            payload = user_to_dict(user)

        logger.info(f"User {user_id} {'activated' if active else 'deactivated'} by admin {admin_id}")
        return payload

    async def adjust_balance(self, user_id: int, amount, admin_id: Optional[int], note: Optional[str] = None) -> dict:
        """
        Admin balance override: signed delta plus its BalanceAdjustment row

        Raises:
            PreconditionFailed: zero or malformed amount, or the balance would go negative
        """
        try:
            delta = quantize_money(Decimal(str(amount)))
        except (InvalidOperation, ValueError, TypeError):
            raise PreconditionFailed('Amount must be a number', reason='invalid_amount')
        if not delta.is_finite() or delta == ZERO:
            raise PreconditionFailed('Amount must be a non-zero number', reason='invalid_amount')

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    user = await session.get(User, user_id, with_for_update=True)
                    if user is None:
                        raise NotFound(f'User {user_id} not found')

                    if Decimal(user.balance) + delta < ZERO:
                        raise PreconditionFailed('Balance cannot go negative', reason='insufficient_balance')

                    session.add(BalanceAdjustment(
                        user_id=user_id,
                        amount=delta,
                        note=(note or '').strip() or None,
                        admin_id=admin_id,
                        created_at=self.clock(),
                    ))
                    await session.execute(
                        update(User).where(User.id == user_id).values(balance=User.balance + delta)
                    )
                    await session.refresh(user)
                payload = user_to_dict(user)
        except LinkEarnError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Balance adjustment for user {user_id} rolled back: {e}")
            raise TransactionFailure('Could not adjust balance, please retry') from e

        logger.info(f"Balance of user {user_id} adjusted by {delta} by admin {admin_id}")
        return payload
