"""
Value types and collaborator interfaces of the earning pipeline

Services depend on these protocols rather than on each other's classes, so any
component can be replaced with a fake in tests.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Protocol

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class RateInfo:
    country_code: str
    country_name: str
    tier: int
    base_cpm: Decimal
    user_cpm: Decimal
    per_visit: Decimal
    # 'store', 'static' or 'tier_default'
    source: str

    @property
    def platform_per_visit(self) -> Decimal:
        return self.base_cpm / 1000 - self.per_visit


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    # 'daily_limit' | 'rate_limit' when blocked
    reason: Optional[str]
    is_unique: bool


@dataclass(frozen=True)
class EarningResult:
    earned: Decimal
    platform_earned: Decimal
    is_unique: bool
    cpm_rate_used: Decimal
    tier: int
    blocked: bool
    block_reason: Optional[str]
    country_code: str


@dataclass(frozen=True)
class VisitResult:
    visit_id: int
    link_id: int
    earnings: EarningResult
    redirect_url: str
    event_id: Optional[int] = None


class RateResolver(Protocol):
    async def resolve_rate(self, country_code: Optional[str]) -> RateInfo: ...


class FraudGate(Protocol):
    async def evaluate(self, ip_fingerprint: str, link_id: int) -> GateDecision: ...


class EarningsCalculator(Protocol):
    async def calculate(self, ip_fingerprint: str, link_id: int, country_code: Optional[str]) -> EarningResult: ...


class VisitRecordedHandler(Protocol):
    async def handle_visit_recorded(self, event_id: int) -> None: ...
