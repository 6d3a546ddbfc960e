import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError

from linkearn.config import Earnings
from linkearn.database import AsyncSessionLocal
from linkearn.errors import LinkEarnError, NotFound, PreconditionFailed, TransactionFailure
from linkearn.models import Payout, User
from linkearn.modules.helpers import display_money, quantize_money, utcnow
from linkearn.server.interfaces import Clock

logger = logging.getLogger('linkearn.payouts')

METHOD_MAP = {
    'paypal': 'PAYPAL',
    'bitcoin': 'BITCOIN',
    'btc': 'BITCOIN',
    'bank_transfer': 'BANK_TRANSFER',
}

OPEN_STATUSES = ('PENDING', 'PROCESSING')

# Allowed status transitions; REJECTED refunds the amount
TRANSITIONS = {
    'PENDING': {'PROCESSING', 'REJECTED'},
    'PROCESSING': {'COMPLETED', 'REJECTED'},
    'COMPLETED': set(),
    'REJECTED': set(),
}

def normalize_method(method: Optional[str]) -> Optional[str]:
    if not method or not isinstance(method, str):
        return None
    return METHOD_MAP.get(method.strip().lower())

def payout_to_dict(payout: Payout) -> dict:
    return {
        'id': payout.id,
        'user_id': payout.user_id,
        'amount': str(display_money(payout.amount)),
        'method': payout.method,
        'address': payout.address,
        'status': payout.status,
        'admin_note': payout.admin_note,
        'created_at': payout.created_at.isoformat() if payout.created_at else None,
        'processed_at': payout.processed_at.isoformat() if payout.processed_at else None,
    }

class PayoutService:
    def __init__(self, session_factory=AsyncSessionLocal, clock: Clock = utcnow,
                 min_payout: Decimal = Earnings.MIN_PAYOUT):
        self.session_factory = session_factory
        self.clock = clock
        self.min_payout = min_payout

    async def request_payout(self, user_id: int, amount, method: str, address: str) -> dict:
        """
        Create a payout request and debit the balance in the same transaction

        Raises:
            NotFound: unknown user
            PreconditionFailed: below minimum, unknown method, missing address,
                insufficient balance or an open payout already exists
        """
        try:
            amount = quantize_money(Decimal(str(amount)))
        except (InvalidOperation, ValueError, TypeError):
            raise PreconditionFailed('Amount must be a number', reason='invalid_amount')
        if not amount.is_finite() or amount < self.min_payout:
            raise PreconditionFailed(f'Minimum payout is ${display_money(self.min_payout)}', reason='below_minimum')

        normalized_method = normalize_method(method)
        if normalized_method is None:
            raise PreconditionFailed('Invalid payout method', reason='invalid_method')

        address = (address or '').strip()
        if not address:
            raise PreconditionFailed('Payout address is required', reason='invalid_address')

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    user = await session.get(User, user_id, with_for_update=True)
                    if user is None:
                        raise NotFound(f'User {user_id} not found')
                    if not user.is_active:
                        raise PreconditionFailed('Account is inactive', reason='owner_inactive')

                    if Decimal(user.balance) < amount:
                        raise PreconditionFailed('Insufficient balance', reason='insufficient_balance')

                    open_payout = await session.scalar(
                        select(Payout.id).where(Payout.user_id == user_id, Payout.status.in_(OPEN_STATUSES)).limit(1)
                    )
                    if open_payout is not None:
                        raise PreconditionFailed('You already have a pending payout', reason='payout_pending')

                    payout = Payout(
                        user_id=user_id,
                        amount=amount,
                        method=normalized_method,
                        address=address[:500],
                        status='PENDING',
                        created_at=self.clock(),
                    )
                    session.add(payout)

                    debit = await session.execute(
                        update(User)
                        .where(User.id == user_id, User.balance >= amount)
                        .values(balance=User.balance - amount)
                    )
                    if debit.rowcount != 1:
                        raise PreconditionFailed('Insufficient balance', reason='insufficient_balance')

                    await session.flush()
                payload = payout_to_dict(payout)
        except LinkEarnError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Payout request of user {user_id} rolled back: {e}")
            raise TransactionFailure('Could not create payout, please retry') from e

        logger.info(f"Payout {payload['id']} of {amount} requested by user {user_id} via {normalized_method}")
        return payload

    async def list_user_payouts(self, user_id: int) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payout).where(Payout.user_id == user_id).order_by(Payout.created_at.desc(), Payout.id.desc())
            )
            return [payout_to_dict(p) for p in result.scalars().all()]

    async def list_payouts(self, status: Optional[str] = None, page: int = 1, limit: int = 50) -> dict:
        page = max(1, int(page))
        limit = max(1, min(int(limit), 200))

        query = select(Payout, User.email).join(User, User.id == Payout.user_id)
        if status and status.lower() != 'all':
            query = query.where(Payout.status == status.upper())

        async with self.session_factory() as session:
            result = await session.execute(
                query.order_by(Payout.created_at.desc(), Payout.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = result.all()

            counts = dict((await session.execute(
                select(Payout.status, func.count(Payout.id)).group_by(Payout.status)
            )).all())

        payouts = []
        for payout, email in rows:
            entry = payout_to_dict(payout)
            entry['email'] = email
            payouts.append(entry)

        return {
            'payouts': payouts,
            'counts': {status_name: counts.get(status_name, 0) for status_name in TRANSITIONS},
            'page': page,
            'limit': limit,
        }

    async def update_status(self, payout_id: int, new_status: str, admin_id: Optional[int],
                            admin_note: Optional[str] = None) -> dict:
        """
        Move a payout along PENDING -> PROCESSING -> COMPLETED, or to REJECTED

        A rejection credits the amount back to the user in the same transaction.
        """
        new_status = (new_status or '').strip().upper()
        if new_status not in TRANSITIONS:
            raise PreconditionFailed(f'Unknown payout status: {new_status}', reason='invalid_status')

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    payout = await session.get(Payout, payout_id, with_for_update=True)
                    if payout is None:
                        raise NotFound(f'Payout {payout_id} not found')

                    if new_status not in TRANSITIONS[payout.status]:
                        raise PreconditionFailed(
                            f'Cannot change payout from {payout.status} to {new_status}',
                            reason='invalid_transition'
                        )

                    old_status = payout.status
                    payout.status = new_status
                    if admin_note is not None:
                        payout.admin_note = admin_note.strip()
                    if new_status in ('COMPLETED', 'REJECTED'):
                        payout.processed_at = self.clock()

                    if new_status == 'REJECTED':
                        await session.execute(
                            update(User).where(User.id == payout.user_id).values(balance=User.balance + payout.amount)
                        )

                payload = payout_to_dict(payout)
        except LinkEarnError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Payout {payout_id} status change rolled back: {e}")
            raise TransactionFailure('Could not update payout, please retry') from e

        logger.info(f"Payout {payout_id} moved from {old_status} to {new_status} by admin {admin_id}")
        return payload
