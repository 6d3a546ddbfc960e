"""Wiring of the earning pipeline; one container per Quart app"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple

from quart import current_app

from linkearn.database import AsyncSessionLocal
from linkearn.modules.geoip import get_country_from_ip
from linkearn.modules.helpers import utcnow
from linkearn.server.account_service import AccountService
from linkearn.server.cpm_rates import CachedRateResolver, CpmRateAdmin, CpmRateResolver
from linkearn.server.earning_service import EarningService
from linkearn.server.forensics_service import ForensicsService
from linkearn.server.fraud_gate import VisitFraudGate
from linkearn.server.interfaces import Clock
from linkearn.server.link_service import LinkService
from linkearn.server.payout_service import PayoutService
from linkearn.server.referral_service import ReferralService
from linkearn.server.settings_service import SettingsService
from linkearn.server.stats_service import PublisherStatsService
from linkearn.server.visit_ledger import VisitLedger

EXTENSION_KEY = 'linkearn'

@dataclass
class Services:
    rates: CachedRateResolver
    rate_admin: CpmRateAdmin
    gate: VisitFraudGate
    calculator: EarningService
    settings: SettingsService
    referrals: ReferralService
    ledger: VisitLedger
    payouts: PayoutService
    accounts: AccountService
    links: LinkService
    stats: PublisherStatsService
    forensics: ForensicsService
    geo_lookup: Callable[[str], Awaitable[Tuple[str, str]]]

def build_services(session_factory=AsyncSessionLocal, clock: Clock = utcnow,
                   geo_lookup=get_country_from_ip) -> Services:
    rates = CachedRateResolver(CpmRateResolver(session_factory))
    gate = VisitFraudGate(session_factory, clock)
    calculator = EarningService(gate, rates)
    settings = SettingsService(session_factory, clock)
    referrals = ReferralService(session_factory, settings, clock)
    ledger = VisitLedger(calculator, session_factory, clock, commission_handler=referrals, rates=rates)

    return Services(
        rates=rates,
        rate_admin=CpmRateAdmin(session_factory, rates, clock),
        gate=gate,
        calculator=calculator,
        settings=settings,
        referrals=referrals,
        ledger=ledger,
        payouts=PayoutService(session_factory, clock),
        accounts=AccountService(session_factory, clock, referrals),
        links=LinkService(session_factory, clock),
        stats=PublisherStatsService(session_factory, clock),
        forensics=ForensicsService(session_factory),
        geo_lookup=geo_lookup,
    )

def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
