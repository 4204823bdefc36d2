"""
뽑기 보상 메달 정책

결제 금액과 뽑기 횟수로 지급할 메달 수를 계산합니다. 정산 서비스에
주입되므로 보상 곡선을 바꾸려면 다른 정책 구현을 주입하면 됩니다.
"""

from typing import Protocol

from medalapi.config import settings


class MedalRewardPolicy(Protocol):
    def calculate_medals(self, payment_amount: int, draw_count: int) -> int:
        ...


class TieredMedalRewardPolicy:
    """
    기본 정책: 결제 단위당 1메달 + 10연차 보너스

    예) 100원 1회 → 10메달, 1000원 10회 → 100 + 50 = 150메달
    """

    def __init__(
        self,
        payment_unit: int = settings.MEDALS_PER_PAYMENT_UNIT,
        ten_draw_bonus: int = settings.TEN_DRAW_BONUS_MEDALS,
    ):
        if payment_unit <= 0:
            raise ValueError("payment_unit must be positive")
        self.payment_unit = payment_unit
        self.ten_draw_bonus = ten_draw_bonus

    def calculate_medals(self, payment_amount: int, draw_count: int) -> int:
        medals = payment_amount // self.payment_unit
        if draw_count == 10:
            medals += self.ten_draw_bonus
        return medals
