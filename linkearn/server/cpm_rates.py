"""
CPM rate resolution

A country code resolves to a rate through an ordered list of strategies:
the admin-editable store, the built-in static table, then per-tier defaults.
"""
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

from sqlalchemy import select

from linkearn.config import Earnings
from linkearn.database import AsyncSessionLocal
from linkearn.errors import NotFound, PreconditionFailed
from linkearn.models import CpmRate, CpmRateHistory
from linkearn.modules.cache import TTLCache
from linkearn.modules.helpers import quantize_money, utcnow
from linkearn.server.interfaces import Clock, RateInfo, RateResolver

logger = logging.getLogger('linkearn.cpm_rates')

UNKNOWN_COUNTRY = 'XX'

_COUNTRY_CODE = re.compile(r'^[A-Z]{2}$')

# Editorial tiers: 1 = premium markets, 2 = mid-value markets, 3 = everyone else
STATIC_CPM_RATES = {
    # Tier 1
    'US': ('United States', 1, Decimal('3.00')),
    'GB': ('United Kingdom', 1, Decimal('2.80')),
    'CA': ('Canada', 1, Decimal('2.50')),
    'AU': ('Australia', 1, Decimal('2.60')),
    'DE': ('Germany', 1, Decimal('2.40')),
    'FR': ('France', 1, Decimal('2.20')),
    'NL': ('Netherlands', 1, Decimal('2.30')),
    'SE': ('Sweden', 1, Decimal('2.40')),
    'NO': ('Norway', 1, Decimal('2.50')),
    'DK': ('Denmark', 1, Decimal('2.30')),
    'CH': ('Switzerland', 1, Decimal('2.80')),
    'AT': ('Austria', 1, Decimal('2.20')),
    'BE': ('Belgium', 1, Decimal('2.10')),
    'NZ': ('New Zealand', 1, Decimal('2.20')),
    'IE': ('Ireland', 1, Decimal('2.30')),
    'FI': ('Finland', 1, Decimal('2.10')),
    'LU': ('Luxembourg', 1, Decimal('2.40')),
    'SG': ('Singapore', 1, Decimal('2.00')),
    'JP': ('Japan', 1, Decimal('1.80')),
    # Tier 2
    'PL': ('Poland', 2, Decimal('0.80')),
    'ES': ('Spain', 2, Decimal('1.20')),
    'IT': ('Italy', 2, Decimal('1.10')),
    'PT': ('Portugal', 2, Decimal('0.90')),
    'CZ': ('Czech Republic', 2, Decimal('0.70')),
    'SK': ('Slovakia', 2, Decimal('0.60')),
    'HU': ('Hungary', 2, Decimal('0.55')),
    'RO': ('Romania', 2, Decimal('0.50')),
    'GR': ('Greece', 2, Decimal('0.70')),
    'HR': ('Croatia', 2, Decimal('0.55')),
    'SI': ('Slovenia', 2, Decimal('0.65')),
    'BG': ('Bulgaria', 2, Decimal('0.45')),
    'LT': ('Lithuania', 2, Decimal('0.55')),
    'LV': ('Latvia', 2, Decimal('0.50')),
    'EE': ('Estonia', 2, Decimal('0.55')),
    'RU': ('Russia', 2, Decimal('0.40')),
    'UA': ('Ukraine', 2, Decimal('0.30')),
    'TR': ('Turkey', 2, Decimal('0.50')),
    'BR': ('Brazil', 2, Decimal('0.60')),
    'MX': ('Mexico', 2, Decimal('0.55')),
    'AR': ('Argentina', 2, Decimal('0.45')),
    'CL': ('Chile', 2, Decimal('0.50')),
    'CO': ('Colombia', 2, Decimal('0.40')),
    'MY': ('Malaysia', 2, Decimal('0.70')),
    'TH': ('Thailand', 2, Decimal('0.55')),
    'ZA': ('South Africa', 2, Decimal('0.60')),
    'AE': ('UAE', 2, Decimal('1.00')),
    'SA': ('Saudi Arabia', 2, Decimal('0.90')),
    'IL': ('Israel', 2, Decimal('1.20')),
    'KR': ('South Korea', 2, Decimal('1.00')),
    'TW': ('Taiwan', 2, Decimal('0.80')),
    'HK': ('Hong Kong', 2, Decimal('1.00')),
    # Tier 3
    'IN': ('India', 3, Decimal('0.15')),
    'PK': ('Pakistan', 3, Decimal('0.10')),
    'BD': ('Bangladesh', 3, Decimal('0.08')),
    'ID': ('Indonesia', 3, Decimal('0.20')),
    'PH': ('Philippines', 3, Decimal('0.25')),
    'VN': ('Vietnam', 3, Decimal('0.18')),
    'EG': ('Egypt', 3, Decimal('0.15')),
    'NG': ('Nigeria', 3, Decimal('0.12')),
    'KE': ('Kenya', 3, Decimal('0.15')),
    'GH': ('Ghana', 3, Decimal('0.12')),
    'MA': ('Morocco', 3, Decimal('0.20')),
    'DZ': ('Algeria', 3, Decimal('0.15')),
    'TN': ('Tunisia', 3, Decimal('0.18')),
    'CN': ('China', 3, Decimal('0.25')),
    'PE': ('Peru', 3, Decimal('0.30')),
    'VE': ('Venezuela', 3, Decimal('0.10')),
    'EC': ('Ecuador', 3, Decimal('0.25')),
    'BY': ('Belarus', 3, Decimal('0.20')),
    'KZ': ('Kazakhstan', 3, Decimal('0.25')),
    'UZ': ('Uzbekistan', 3, Decimal('0.10')),
    'MM': ('Myanmar', 3, Decimal('0.08')),
    'NP': ('Nepal', 3, Decimal('0.08')),
    'LK': ('Sri Lanka', 3, Decimal('0.12')),
    # Sentinel for missing or malformed codes
    UNKNOWN_COUNTRY: ('Unknown', 3, Decimal('0.10')),
}

DEFAULT_TIER_RATES = {
    1: Decimal('2.00'),
    2: Decimal('0.60'),
    3: Decimal('0.15'),
}

def normalize_country_code(country_code: Optional[str]) -> str:
    """Uppercase two-letter code, or 'XX' for anything missing or malformed"""
    if not country_code or not isinstance(country_code, str):
        return UNKNOWN_COUNTRY
    code = country_code.strip().upper()
    if not _COUNTRY_CODE.match(code):
        return UNKNOWN_COUNTRY
    return code

def build_rate_info(country_code: str, country_name: str, tier: int, base_cpm: Decimal,
                    source: str, user_cpm: Optional[Decimal] = None,
                    user_share: Decimal = Earnings.USER_SHARE) -> RateInfo:
    base_cpm = Decimal(base_cpm)
    if user_cpm is None:
        user_cpm = base_cpm * user_share
    else:
        user_cpm = Decimal(user_cpm)

    return RateInfo(
        country_code=country_code,
        country_name=country_name,
        tier=tier,
        base_cpm=quantize_money(base_cpm),
        user_cpm=quantize_money(user_cpm),
        per_visit=quantize_money(user_cpm / 1000),
        source=source,
    )

class StoreRateStrategy:
    """Active admin override row"""

    def __init__(self, user_share: Decimal = Earnings.USER_SHARE):
        self.user_share = user_share

    def resolve(self, country_code: str, row: Optional[CpmRate]) -> Optional[RateInfo]:
        if row is None or not row.is_active:
            return None
        return build_rate_info(
            country_code, row.country_name, row.tier, row.base_cpm, 'store',
            user_cpm=row.user_cpm, user_share=self.user_share
        )

class StaticRateStrategy:
    """Built-in country table"""

    def __init__(self, table: dict = STATIC_CPM_RATES, user_share: Decimal = Earnings.USER_SHARE):
        self.table = table
        self.user_share = user_share

    def resolve(self, country_code: str, row: Optional[CpmRate]) -> Optional[RateInfo]:
        entry = self.table.get(country_code)
        if entry is None:
            return None
        country_name, tier, base_cpm = entry
        return build_rate_info(country_code, country_name, tier, base_cpm, 'static', user_share=self.user_share)

class TierDefaultStrategy:
    """Per-tier default; always answers"""

    def __init__(self, tier_rates: dict = DEFAULT_TIER_RATES, user_share: Decimal = Earnings.USER_SHARE):
        self.tier_rates = tier_rates
        self.user_share = user_share

    def resolve(self, country_code: str, row: Optional[CpmRate]) -> Optional[RateInfo]:
        # An inactive override still carries the editorial tier of the country
        tier = row.tier if row is not None and row.tier in self.tier_rates else 3
        country_name = row.country_name if row is not None else 'Unknown'
        return build_rate_info(country_code, country_name, tier, self.tier_rates[tier], 'tier_default', user_share=self.user_share)

class CpmRateResolver:
    """Resolves a country code through the configured strategies, first hit wins"""

    def __init__(self, session_factory=AsyncSessionLocal, strategies: Optional[Sequence] = None,
                 user_share: Decimal = Earnings.USER_SHARE):
        self.session_factory = session_factory
        self.strategies = list(strategies) if strategies is not None else [
            StoreRateStrategy(user_share),
            StaticRateStrategy(user_share=user_share),
            TierDefaultStrategy(user_share=user_share),
        ]

    async def _load_row(self, country_code: str) -> Optional[CpmRate]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CpmRate).where(CpmRate.country_code == country_code)
            )
            return result.scalar_one_or_none()

    async def resolve_rate(self, country_code: Optional[str]) -> RateInfo:
        code = normalize_country_code(country_code)
        row = await self._load_row(code)

        for strategy in self.strategies:
            info = strategy.resolve(code, row)
            if info is not None:
                return info

        raise LookupError(f"No rate strategy answered for {code}")

class CachedRateResolver:
    """Wraps a resolver with a TTL + size bounded cache keyed by normalized country code"""

    def __init__(self, resolver: RateResolver, cache: Optional[TTLCache] = None):
        self.resolver = resolver
        self.cache = cache or TTLCache(maxsize=Earnings.RATE_CACHE_SIZE, ttl=Earnings.RATE_CACHE_TTL)

    async def resolve_rate(self, country_code: Optional[str]) -> RateInfo:
        code = normalize_country_code(country_code)
        info = self.cache.get(code)
        if info is None:
            info = await self.resolver.resolve_rate(code)
            self.cache.set(code, info)
        return info

    def invalidate(self, country_code: Optional[str] = None) -> None:
        if country_code is None:
            self.cache.clear()
        else:
            self.cache.invalidate(normalize_country_code(country_code))

def parse_rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise PreconditionFailed('Invalid CPM rate', reason='invalid_rate')
    if not rate.is_finite() or rate < 0:
        raise PreconditionFailed('CPM rate must be a non-negative number', reason='invalid_rate')
    return quantize_money(rate)

def parse_country_code(value) -> str:
    code = (value or '').strip().upper() if isinstance(value, str) else ''
    if not _COUNTRY_CODE.match(code):
        raise PreconditionFailed('Country code must be two letters', reason='invalid_country')
    return code

def rate_to_dict(row: CpmRate, user_share: Decimal = Earnings.USER_SHARE) -> dict:
    info = build_rate_info(row.country_code, row.country_name, row.tier, row.base_cpm, 'store',
                           user_cpm=row.user_cpm, user_share=user_share)
    return {
        'country_code': row.country_code,
        'country_name': row.country_name,
        'tier': row.tier,
        'base_cpm': str(info.base_cpm),
        'user_cpm': str(info.user_cpm),
        'per_visit': str(info.per_visit),
        'is_active': row.is_active,
        'last_verified_at': row.last_verified_at.isoformat() if row.last_verified_at else None,
        'updated_at': row.updated_at.isoformat() if row.updated_at else None,
    }

class CpmRateAdmin:
    """Admin mutations of the rate store; every rate change writes a history row"""

    def __init__(self, session_factory=AsyncSessionLocal, rate_cache: Optional[CachedRateResolver] = None,
                 clock: Clock = utcnow, user_share: Decimal = Earnings.USER_SHARE):
        self.session_factory = session_factory
        self.rate_cache = rate_cache
        self.clock = clock
        self.user_share = user_share

    def _invalidate(self, country_code: Optional[str] = None) -> None:
        if self.rate_cache is not None:
            self.rate_cache.invalidate(country_code)

    async def update_rate(self, country_code: str, new_rate, actor_id: Optional[int],
                          user_cpm=None) -> dict:
        """
        Change the base CPM of an existing override

        A user_cpm passed here stores an explicit user split; otherwise the
        split is derived from USER_SHARE again.

        Raises:
            NotFound: no override row for the country
            PreconditionFailed: malformed country or negative rate
        """
        code = parse_country_code(country_code)
        rate = parse_rate(new_rate)
        explicit_user_cpm = parse_rate(user_cpm) if user_cpm is not None else None
        if explicit_user_cpm is not None and explicit_user_cpm > rate:
            raise PreconditionFailed('User CPM cannot exceed base CPM', reason='invalid_rate')

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(CpmRate).where(CpmRate.country_code == code).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFound(f'No CPM rate configured for {code}')

                old_rate = row.base_cpm
                now = self.clock()
                row.base_cpm = rate
                row.user_cpm = explicit_user_cpm
                row.last_verified_at = now
                row.updated_at = now
                row.updated_by_id = actor_id

                session.add(CpmRateHistory(
                    country_code=code,
                    old_rate=old_rate,
                    new_rate=rate,
                    changed_by_id=actor_id,
                    created_at=now,
                ))

            payload = rate_to_dict(row, self.user_share)

        self._invalidate(code)
        logger.info(f"CPM rate for {code} changed from {old_rate} to {rate} by admin {actor_id}")
        return payload

    async def add_country(self, country_code: str, country_name: str, tier: int, rate,
                          actor_id: Optional[int]) -> dict:
        code = parse_country_code(country_code)
        base_cpm = parse_rate(rate)
        try:
            tier = int(tier or 3)
        except (TypeError, ValueError):
            raise PreconditionFailed('Tier must be 1, 2 or 3', reason='invalid_tier')
        if tier not in (1, 2, 3):
            raise PreconditionFailed('Tier must be 1, 2 or 3', reason='invalid_tier')
        if not country_name or not country_name.strip():
            raise PreconditionFailed('Country name is required', reason='invalid_country')

        async with self.session_factory() as session:
            async with session.begin():
                existing = await session.execute(
                    select(CpmRate.id).where(CpmRate.country_code == code)
                )
                if existing.scalar_one_or_none() is not None:
                    raise PreconditionFailed(f'CPM rate for {code} already exists', reason='duplicate_country')

                now = self.clock()
                row = CpmRate(
                    country_code=code,
                    country_name=country_name.strip()[:100],
                    tier=tier,
                    base_cpm=base_cpm,
                    is_active=True,
                    last_verified_at=now,
                    updated_by_id=actor_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.add(CpmRateHistory(
                    country_code=code,
                    old_rate=None,
                    new_rate=base_cpm,
                    changed_by_id=actor_id,
                    created_at=now,
                ))

            payload = rate_to_dict(row, self.user_share)

        self._invalidate(code)
        logger.info(f"CPM rate for {code} ({country_name}) added at {base_cpm} by admin {actor_id}")
        return payload

    async def toggle_rate(self, country_code: str, actor_id: Optional[int]) -> dict:
        code = parse_country_code(country_code)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(CpmRate).where(CpmRate.country_code == code).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFound(f'No CPM rate configured for {code}')

                row.is_active = not row.is_active
                row.updated_at = self.clock()
                row.updated_by_id = actor_id

            payload = rate_to_dict(row, self.user_share)

        self._invalidate(code)
        logger.info(f"CPM rate for {code} {'activated' if payload['is_active'] else 'deactivated'} by admin {actor_id}")
        return payload

    async def bulk_update(self, rates: list, actor_id: Optional[int]) -> list:
        """Apply several rate changes; each item succeeds or fails on its own"""
        results = []
        for item in rates:
            code = item.get('country_code') if isinstance(item, dict) else None
            try:
                if code is None:
                    raise PreconditionFailed('Missing country_code', reason='invalid_country')
                updated = await self.update_rate(code, item.get('rate'), actor_id)
                results.append({'country_code': updated['country_code'], 'success': True, 'data': updated})
            except (NotFound, PreconditionFailed) as e:
                results.append({'country_code': code, 'success': False, 'error': e.message})
        return results

    async def get_history(self, country_code: Optional[str] = None, limit: int = 50) -> list:
        limit = max(1, min(int(limit), 500))
        query = select(CpmRateHistory).order_by(CpmRateHistory.created_at.desc(), CpmRateHistory.id.desc()).limit(limit)
        if country_code:
            query = query.where(CpmRateHistory.country_code == parse_country_code(country_code))

        async with self.session_factory() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        return [
            {
                'id': row.id,
                'country_code': row.country_code,
                'old_rate': str(row.old_rate) if row.old_rate is not None else None,
                'new_rate': str(row.new_rate),
                'changed_by_id': row.changed_by_id,
                'created_at': row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]

    async def list_rates(self) -> dict:
        """Store rows merged over the static table, grouped by tier"""
        async with self.session_factory() as session:
            result = await session.execute(select(CpmRate))
            rows = {row.country_code: row for row in result.scalars().all()}

        merged = {}
        for code, (country_name, tier, base_cpm) in STATIC_CPM_RATES.items():
            info = build_rate_info(code, country_name, tier, base_cpm, 'static', user_share=self.user_share)
            merged[code] = {
                'country_code': code,
                'country_name': country_name,
                'tier': tier,
                'base_cpm': str(info.base_cpm),
                'user_cpm': str(info.user_cpm),
                'per_visit': str(info.per_visit),
                'is_active': True,
                'source': 'static',
            }

        for code, row in rows.items():
            if row.is_active:
                entry = rate_to_dict(row, self.user_share)
                entry['source'] = 'store'
                merged[code] = entry
            elif code in merged:
                merged[code]['override_inactive'] = True

        grouped = {1: [], 2: [], 3: []}
        for entry in merged.values():
            grouped.setdefault(entry['tier'], []).append(entry)
        for entries in grouped.values():
            entries.sort(key=lambda e: (-Decimal(e['base_cpm']), e['country_code']))

        return grouped
