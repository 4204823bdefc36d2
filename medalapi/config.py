from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional
from urllib.parse import quote_plus


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="medalapi/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "Push Medal API"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USERNAME: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DATABASE: str = "postgres"
    POSTGRES_SCHEMA: str = "medal"

    # 전체 URL을 직접 지정하면 POSTGRES_* 값보다 우선 (sqlite 로컬 실행 포함)
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def database_url(self) -> str:
        """Construct database URL from individual components"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # URL encode the password to handle special characters
        encoded_password = quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+psycopg2://{self.POSTGRES_USERNAME}:{encoded_password}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DATABASE}"

    # Security
    SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Payment confirmation gateway
    PAYMENT_CONFIRM_URL: str = "http://localhost:8081/payments/{payment_reference}/confirm"
    PAYMENT_API_KEY: str = ""
    PAYMENT_TIMEOUT_SECONDS: float = 5.0

    # Gacha / medal reward
    GACHA_PRICE_PER_DRAW: int = 100  # 1회 뽑기 결제 금액
    MEDALS_PER_PAYMENT_UNIT: int = 10  # 결제 금액 N당 메달 1개
    TEN_DRAW_BONUS_MEDALS: int = 50  # 10연차 보너스 메달
    ALLOWED_DRAW_COUNTS: List[int] = [1, 10]
    DRAW_RARITY_WEIGHTS: Dict[str, int] = {
        "N": 6000,
        "R": 2500,
        "SR": 1200,
        "SSR": 270,
        "UR": 30,
    }
    # 가챠 ID → 보상 메달을 적립할 발행자 ID (없으면 풀)
    GACHA_ISSUERS: Dict[str, str] = {}

    # Exchange
    # 일일 교환 제한의 "하루" 기준 타임존 (JST = UTC+9)
    BUSINESS_TIMEZONE_OFFSET_HOURS: int = 9
    EXCHANGE_PAGE_LIMIT_MAX: int = 100
    LEDGER_PAGE_LIMIT_MAX: int = 100


settings = Settings()
