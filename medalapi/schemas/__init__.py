from .medals import (
    MedalBalanceResponse,
    MedalOperationResult,
    MedalTransactionEntry,
    IntegrityReport,
)
from .exchange import ExchangeItemResponse, ExchangeResult, ExchangeTransactionResponse
from .draws import DrawResultResponse, DrawSettlementResult
from .pagination import PageMeta
