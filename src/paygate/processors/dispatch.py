"""The fixed set of processor adapters, one per payment method."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from paygate.models.business import PaymentMethod
from paygate.processors.card import CardAdapter
from paygate.processors.cash import CashAdapter
from paygate.processors.mobile_money import MobileMoneyAdapter

if TYPE_CHECKING:
    import httpx

    from paygate.gateway_config import ProcessorConfig
    from paygate.processors.base import ProcessorAdapter


@dataclass(frozen=True)
class AdapterSet:
    """Closed dispatch over card, mobile money and cash.

    Built once and handed to the orchestrators; there is no registry to
    mutate at runtime.
    """

    card: ProcessorAdapter
    mobile_money: ProcessorAdapter
    cash: ProcessorAdapter

    @classmethod
    def create(cls, http: httpx.AsyncClient, config: ProcessorConfig) -> AdapterSet:
        return cls(
            card=CardAdapter(
                timeout=config.timeout_seconds,
                api_version=config.stripe_api_version,
            ),
            mobile_money=MobileMoneyAdapter(
                http,
                timeout=config.timeout_seconds,
                timezone=config.mpesa_timezone,
            ),
            cash=CashAdapter(),
        )

    def for_method(self, method: str) -> ProcessorAdapter:
        method = PaymentMethod(method)
        if method is PaymentMethod.CARD:
            return self.card
        if method is PaymentMethod.MOBILE_MONEY:
            return self.mobile_money
        return self.cash
