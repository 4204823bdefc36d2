# Repository layer - Data access with Pydantic responses

from .base import BaseRepository
from .medal_repository import MedalRepository
from .exchange_repository import ExchangeRepository
from .draw_repository import DrawRepository

__all__ = [
    "BaseRepository",
    "MedalRepository",
    "ExchangeRepository",
    "DrawRepository",
]
