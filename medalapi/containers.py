from dependency_injector import containers, providers

from medalapi.database.session import get_db
from medalapi.config import Settings
from medalapi.providers.payment_gateway import HttpPaymentGateway
from medalapi.providers.draw_logic import WeightedDrawLogic
from medalapi.repositories.medal_repository import MedalRepository
from medalapi.repositories.exchange_repository import ExchangeRepository
from medalapi.repositories.draw_repository import DrawRepository
from medalapi.services.medal_service import MedalLedgerService
from medalapi.services.exchange_service import ExchangeService
from medalapi.services.draw_service import DrawSettlementService
from medalapi.services.reward_policy import TieredMedalRewardPolicy


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Singleton(Settings)


class RepositoryModule(containers.DeclarativeContainer):
    """Database repositories."""

    get_db = providers.Resource(get_db)
    medal_repository = providers.Factory(MedalRepository, db=get_db)
    exchange_repository = providers.Factory(ExchangeRepository, db=get_db)
    draw_repository = providers.Factory(DrawRepository, db=get_db)


class ProviderModule(containers.DeclarativeContainer):
    """External collaborators (payment confirmation, draw randomization)."""

    config = providers.DependenciesContainer()

    payment_gateway = providers.Singleton(
        HttpPaymentGateway,
        confirm_url=config.config.provided.PAYMENT_CONFIRM_URL,
        api_key=config.config.provided.PAYMENT_API_KEY,
        timeout=config.config.provided.PAYMENT_TIMEOUT_SECONDS,
    )
    draw_logic = providers.Singleton(
        WeightedDrawLogic,
        rarity_weights=config.config.provided.DRAW_RARITY_WEIGHTS,
        gacha_issuers=config.config.provided.GACHA_ISSUERS,
    )
    reward_policy = providers.Singleton(
        TieredMedalRewardPolicy,
        payment_unit=config.config.provided.MEDALS_PER_PAYMENT_UNIT,
        ten_draw_bonus=config.config.provided.TEN_DRAW_BONUS_MEDALS,
    )


class ServiceModule(containers.DeclarativeContainer):
    """Service layer dependencies."""

    repositories = providers.DependenciesContainer()
    external = providers.DependenciesContainer()

    medal_service = providers.Factory(
        MedalLedgerService,
        db=repositories.get_db,
        repository=repositories.medal_repository,
    )
    exchange_service = providers.Factory(
        ExchangeService,
        db=repositories.get_db,
        ledger=medal_service,
        repository=repositories.exchange_repository,
    )
    draw_service = providers.Factory(
        DrawSettlementService,
        db=repositories.get_db,
        ledger=medal_service,
        payment_gateway=external.payment_gateway,
        draw_logic=external.draw_logic,
        reward_policy=external.reward_policy,
        repository=repositories.draw_repository,
    )


class Container(containers.DeclarativeContainer):
    """Application container (배치/스크립트 진입점용)."""

    config = providers.Container(ConfigModule)
    repositories = providers.Container(RepositoryModule)
    external = providers.Container(ProviderModule, config=config)
    services = providers.Container(
        ServiceModule, repositories=repositories, external=external
    )
