"""
가챠 추첨 로직

정산 서비스는 DrawLogic 프로토콜에만 의존합니다. 기본 구현은 설정의
레어리티 가중치로 아이템을 뽑습니다.
"""

import random
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Protocol

from medalapi.config import settings


@dataclass(frozen=True)
class DrawnItem:
    item_id: str
    name: str
    rarity: str

    def to_dict(self) -> dict:
        return asdict(self)


class DrawLogic(Protocol):
    def execute_draw_logic(self, gacha_id: str, count: int) -> List[DrawnItem]:
        ...

    def issuer_for(self, gacha_id: str) -> Optional[str]:
        """보상 메달을 적립할 발행자 (None이면 풀)"""
        ...


class WeightedDrawLogic:
    """레어리티 가중치 기반 추첨"""

    def __init__(
        self,
        rarity_weights: Optional[Dict[str, int]] = None,
        gacha_issuers: Optional[Dict[str, str]] = None,
        rng: Optional[random.Random] = None,
    ):
        weights = rarity_weights or settings.DRAW_RARITY_WEIGHTS
        if not weights or any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
            raise ValueError("rarity weights must be non-negative with a positive total")
        self.rarities = list(weights.keys())
        self.weights = list(weights.values())
        self.gacha_issuers = gacha_issuers if gacha_issuers is not None else settings.GACHA_ISSUERS
        self.rng = rng or random.SystemRandom()

    def execute_draw_logic(self, gacha_id: str, count: int) -> List[DrawnItem]:
        rarities = self.rng.choices(self.rarities, weights=self.weights, k=count)
        return [
            DrawnItem(
                item_id=f"{gacha_id}-{rarity}-{self.rng.randrange(1, 1000):03d}",
                name=f"{gacha_id} {rarity} item",
                rarity=rarity,
            )
            for rarity in rarities
        ]

    def issuer_for(self, gacha_id: str) -> Optional[str]:
        return self.gacha_issuers.get(gacha_id)
