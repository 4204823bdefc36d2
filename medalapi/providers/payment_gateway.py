import httpx
from typing import Optional, Protocol
from medalapi.config import settings
from medalapi.core.exceptions import PaymentGatewayUnavailableError
import logging

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """외부 결제 시스템 - 결제 참조의 결제 완료 여부 확인

    확정적으로 미확인이면 False, 결제 시스템에 닿지 못하면
    PaymentGatewayUnavailableError를 발생시킵니다.
    """

    def confirm_payment(self, payment_reference: str) -> bool:
        ...


class HttpPaymentGateway:
    """
    HTTP 결제 확인 클라이언트

    PAYMENT_CONFIRM_URL의 {payment_reference} 자리에 결제 참조를 넣어 호출하고
    응답 JSON의 confirmed 값으로 확인 여부를 판단합니다. 404는 존재하지 않는
    결제로 보고 False를 반환하며, 그 밖의 통신 오류나 비정상 응답은
    PaymentGatewayUnavailableError로 전파합니다.
    """

    def __init__(
        self,
        confirm_url: str = settings.PAYMENT_CONFIRM_URL,
        api_key: str = settings.PAYMENT_API_KEY,
        timeout: float = settings.PAYMENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.confirm_url = confirm_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def confirm_payment(self, payment_reference: str) -> bool:
        url = self.confirm_url.format(payment_reference=payment_reference)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(url, headers=self._headers())
        except httpx.TimeoutException:
            logger.error(f"Payment confirmation timeout for {payment_reference}")
            raise PaymentGatewayUnavailableError(payment_reference, "timeout")
        except httpx.HTTPError as e:
            logger.error(f"Payment confirmation failed for {payment_reference}: {str(e)}")
            raise PaymentGatewayUnavailableError(payment_reference, "transport error")

        if response.status_code == 404:
            logger.warning(f"Payment {payment_reference} is unknown to the gateway")
            return False

        if response.status_code != 200:
            logger.error(
                f"Payment confirmation returned {response.status_code} "
                f"for {payment_reference}"
            )
            raise PaymentGatewayUnavailableError(
                payment_reference, f"status {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Payment confirmation returned invalid JSON for {payment_reference}")
            raise PaymentGatewayUnavailableError(payment_reference, "invalid response")

        return isinstance(data, dict) and data.get("confirmed") is True
