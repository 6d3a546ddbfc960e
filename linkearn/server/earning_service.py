import logging
from decimal import Decimal
from typing import Optional

from linkearn.modules.helpers import ZERO, quantize_money
from linkearn.server.cpm_rates import normalize_country_code
from linkearn.server.interfaces import EarningResult, FraudGate, RateResolver

logger = logging.getLogger('linkearn.earning_service')

BLOCKED_TIER = 3

class EarningService:
    """
    Turns a gated, rated visit into the user and platform shares

    Rules:
    - The fraud gate runs first; a blocked visit earns nothing and skips rate resolution
    - A unique visit earns per_visit for the owner, the platform keeps base_cpm/1000 minus that
    - A repeat visit inside the uniqueness window earns exactly zero
    """

    def __init__(self, gate: FraudGate, rates: RateResolver):
        self.gate = gate
        self.rates = rates

    async def calculate(self, ip_fingerprint: str, link_id: int, country_code: Optional[str]) -> EarningResult:
        code = normalize_country_code(country_code)
        decision = await self.gate.evaluate(ip_fingerprint, link_id)

        if not decision.allowed:
            return EarningResult(
                earned=ZERO,
                platform_earned=ZERO,
                is_unique=False,
                cpm_rate_used=ZERO,
                tier=BLOCKED_TIER,
                blocked=True,
                block_reason=decision.reason,
                country_code=code,
            )

        rate = await self.rates.resolve_rate(code)

        if decision.is_unique:
            earned = quantize_money(rate.per_visit)
            platform_earned = quantize_money(rate.base_cpm / Decimal(1000) - earned)
        else:
            earned = ZERO
            platform_earned = ZERO

        logger.debug(f"Link {link_id} visit from {code}: unique={decision.is_unique}, earned={earned}, platform={platform_earned}")

        return EarningResult(
            earned=earned,
            platform_earned=platform_earned,
            is_unique=decision.is_unique,
            cpm_rate_used=rate.base_cpm,
            tier=rate.tier,
            blocked=False,
            block_reason=None,
            country_code=code,
        )
