import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from linkearn.database import AsyncSessionLocal, dialect_insert
from linkearn.errors import PreconditionFailed
from linkearn.models import SETTINGS_ID, SystemSettings
from linkearn.modules.helpers import quantize_money, utcnow
from linkearn.server.interfaces import Clock

logger = logging.getLogger('linkearn.settings')

@dataclass(frozen=True)
class ReferralSettings:
    referral_commission_rate: Decimal
    referral_bonus_duration_days: Optional[int]
    min_referral_payout: Decimal
    referral_system_active: bool

    def to_dict(self) -> dict:
        return {
            'referral_commission_rate': str(self.referral_commission_rate),
            'referral_bonus_duration_days': self.referral_bonus_duration_days,
            'min_referral_payout': str(self.min_referral_payout),
            'referral_system_active': self.referral_system_active,
        }

DEFAULT_SETTINGS = ReferralSettings(
    referral_commission_rate=Decimal('0.05'),
    referral_bonus_duration_days=None,
    min_referral_payout=Decimal('5.00'),
    referral_system_active=True,
)

def _snapshot(row: SystemSettings) -> ReferralSettings:
    return ReferralSettings(
        referral_commission_rate=Decimal(row.referral_commission_rate),
        referral_bonus_duration_days=row.referral_bonus_duration_days,
        min_referral_payout=Decimal(row.min_referral_payout),
        referral_system_active=bool(row.referral_system_active),
    )

class SettingsService:
    """Reads and updates the system settings singleton (id = 1)"""

    def __init__(self, session_factory=AsyncSessionLocal, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def get_settings(self) -> ReferralSettings:
        async with self.session_factory() as session:
            row = await session.get(SystemSettings, SETTINGS_ID)
            if row is None:
                # Created lazily the first time anything asks; a concurrent creator wins silently
                insert = dialect_insert(session.get_bind().dialect.name)
                result = await session.execute(
                    insert(SystemSettings).values(
                        id=SETTINGS_ID,
                        referral_commission_rate=DEFAULT_SETTINGS.referral_commission_rate,
                        referral_bonus_duration_days=DEFAULT_SETTINGS.referral_bonus_duration_days,
                        min_referral_payout=DEFAULT_SETTINGS.min_referral_payout,
                        referral_system_active=DEFAULT_SETTINGS.referral_system_active,
                        updated_at=self.clock(),
                    ).on_conflict_do_nothing(index_elements=['id'])
                )
                await session.commit()
                if result.rowcount == 1:
                    logger.info("Default system settings record created")
                row = await session.get(SystemSettings, SETTINGS_ID)
            return _snapshot(row)

    async def update_settings(self, data: dict, admin_id: Optional[int] = None) -> ReferralSettings:
        """
        Partial update; unknown keys are ignored

        Raises:
            PreconditionFailed: a value is out of range or malformed
        """
        changes = {}

        if 'referral_commission_rate' in data:
            try:
                rate = Decimal(str(data['referral_commission_rate']))
            except (InvalidOperation, ValueError, TypeError):
                raise PreconditionFailed('Commission rate must be a number', reason='invalid_setting')
            if not rate.is_finite() or rate < 0 or rate > 1:
                raise PreconditionFailed('Commission rate must be between 0 and 1', reason='invalid_setting')
            changes['referral_commission_rate'] = rate.quantize(Decimal('0.0001'))

        if 'referral_bonus_duration_days' in data:
            duration = data['referral_bonus_duration_days']
            if duration in (None, '', 0, '0'):
                changes['referral_bonus_duration_days'] = None
            else:
                try:
                    duration = int(duration)
                except (TypeError, ValueError):
                    raise PreconditionFailed('Bonus duration must be a whole number of days', reason='invalid_setting')
                if duration < 0:
                    raise PreconditionFailed('Bonus duration cannot be negative', reason='invalid_setting')
                changes['referral_bonus_duration_days'] = duration

        if 'min_referral_payout' in data:
            try:
                min_payout = Decimal(str(data['min_referral_payout']))
            except (InvalidOperation, ValueError, TypeError):
                raise PreconditionFailed('Minimum referral payout must be a number', reason='invalid_setting')
            if not min_payout.is_finite() or min_payout < 0:
                raise PreconditionFailed('Minimum referral payout cannot be negative', reason='invalid_setting')
            changes['min_referral_payout'] = quantize_money(min_payout)

        if 'referral_system_active' in data:
            value = data['referral_system_active']
            if isinstance(value, str):
                value = value.strip().lower() in ('1', 'true', 'on', 'yes')
            changes['referral_system_active'] = bool(value)

        await self.get_settings()

        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(SystemSettings, SETTINGS_ID, with_for_update=True)
                for key, value in changes.items():
                    setattr(row, key, value)
                row.updated_at = self.clock()

            snapshot = _snapshot(row)

        logger.info(f"System settings updated by admin {admin_id}: {', '.join(sorted(changes)) or 'no changes'}")
        return snapshot
