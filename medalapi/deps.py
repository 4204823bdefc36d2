from fastapi import Depends
from sqlalchemy.orm import Session

from medalapi.database.session import get_db
from medalapi.config import settings

# Providers
from medalapi.providers.payment_gateway import HttpPaymentGateway, PaymentGateway
from medalapi.providers.draw_logic import DrawLogic, WeightedDrawLogic

# Services
from medalapi.services.medal_service import MedalLedgerService
from medalapi.services.exchange_service import ExchangeService
from medalapi.services.draw_service import DrawSettlementService
from medalapi.services.reward_policy import MedalRewardPolicy, TieredMedalRewardPolicy


def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway(
        confirm_url=settings.PAYMENT_CONFIRM_URL,
        api_key=settings.PAYMENT_API_KEY,
        timeout=settings.PAYMENT_TIMEOUT_SECONDS,
    )


def get_draw_logic() -> DrawLogic:
    return WeightedDrawLogic(
        rarity_weights=settings.DRAW_RARITY_WEIGHTS,
        gacha_issuers=settings.GACHA_ISSUERS,
    )


def get_reward_policy() -> MedalRewardPolicy:
    return TieredMedalRewardPolicy(
        payment_unit=settings.MEDALS_PER_PAYMENT_UNIT,
        ten_draw_bonus=settings.TEN_DRAW_BONUS_MEDALS,
    )


def get_medal_service(db: Session = Depends(get_db)) -> MedalLedgerService:
    return MedalLedgerService(db=db)


def get_exchange_service(
    db: Session = Depends(get_db),
    ledger: MedalLedgerService = Depends(get_medal_service),
) -> ExchangeService:
    return ExchangeService(db=db, ledger=ledger)


def get_draw_service(
    db: Session = Depends(get_db),
    ledger: MedalLedgerService = Depends(get_medal_service),
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
    draw_logic: DrawLogic = Depends(get_draw_logic),
    reward_policy: MedalRewardPolicy = Depends(get_reward_policy),
) -> DrawSettlementService:
    return DrawSettlementService(
        db=db,
        ledger=ledger,
        payment_gateway=payment_gateway,
        draw_logic=draw_logic,
        reward_policy=reward_policy,
    )
