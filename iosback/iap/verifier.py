"""
Apple App Store receipt verification.

Talks to Apple's verifyReceipt endpoint with bounded retry on transient
statuses and the production-first sandbox fallback Apple recommends.
"""
import json
from typing import Optional, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from iosback.iap.exceptions import (
    AppStoreStatus,
    ReceiptDecodeError,
    ReceiptTransportError
)
from iosback.iap.models import Environment, ReceiptRequest, ReceiptResponse


logger = structlog.get_logger()


# Apple App Store Server URLs
APPLE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

DEFAULT_TIMEOUT = 30.0

REQUEST_HEADERS = {"Content-Type": "application/json; charset=utf-8"}


async def verify_receipt(
    request: ReceiptRequest,
    url: str,
    max_retries: int = 0,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT,
    environment: Optional[Environment] = None
) -> ReceiptResponse:
    """
    Send a receipt to Apple and decode the answer.

    The request is repeated against the same URL while Apple reports a
    retryable non-zero status and the retry budget lasts, so at most
    ``1 + max_retries`` requests are made. A non-zero status is returned
    as-is, it is up to the caller to turn it into an error.

    Args:
        request: Receipt request
        url: verifyReceipt endpoint
        max_retries: Number of retries on retryable statuses
        client: HTTP client to use, a short-lived one is opened if omitted
        timeout: Request timeout in seconds for the short-lived client
        environment: Environment the URL belongs to, guessed from the URL if omitted

    Returns:
        Decoded ReceiptResponse

    Raises:
        ReceiptTransportError: If the round trip fails or is not HTTP 200
        ReceiptDecodeError: If the body is not a valid response
    """
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            return await verify_receipt(request, url, max_retries, own_client, environment=environment)

    if environment is None:
        environment = environment_for_url(url)

    body = json.dumps(request.to_payload())
    retries_left = max_retries

    while True:
        response = await _post(client, url, body, environment)

        if response.status != AppStoreStatus.OK and response.is_retryable and retries_left > 0:
            retries_left -= 1
            logger.info(
                "apple_receipt_retrying",
                status=response.status,
                retries_left=retries_left
            )
            continue

        return response


async def _post(
    client: httpx.AsyncClient,
    url: str,
    body: str,
    environment: Environment
) -> ReceiptResponse:
    try:
        http_response = await client.post(url, content=body, headers=REQUEST_HEADERS)
    except httpx.HTTPError as e:
        raise ReceiptTransportError(f"apple receipt request failed: {e}") from e

    if http_response.status_code != httpx.codes.OK:
        raise ReceiptTransportError(
            f"unexpected http response code from apple server: {http_response.status_code}",
            http_status=http_response.status_code
        )

    try:
        response = ReceiptResponse.model_validate(http_response.json())
    except (ValueError, ValidationError) as e:
        raise ReceiptDecodeError(f"unable to decode apple response: {e}") from e

    if response.environment is None:
        response = response.model_copy(update={"environment": environment})

    return response


def environment_for_url(url: str) -> Environment:
    """Environment implied by the endpoint that answered."""
    if "sandbox" in url:
        return Environment.SANDBOX
    return Environment.PRODUCTION


class VerifierConfig(BaseModel):
    """Immutable per-verifier settings."""
    model_config = ConfigDict(frozen=True)

    shared_secret: str = ""
    sandbox: bool = False
    max_retries: int = 0
    timeout: float = DEFAULT_TIMEOUT
    exclude_old_transactions: bool = True
    production_url: str = APPLE_PRODUCTION_URL
    sandbox_url: str = APPLE_SANDBOX_URL


class AppleReceiptVerifier:
    """
    Verifies Apple App Store receipts.

    Production is asked first and a receipt reported as coming from the test
    environment (21007) is sent once to the sandbox. The two environments are
    never queried in parallel.
    """

    def __init__(
        self,
        config: VerifierConfig,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Apple receipt verifier.

        Args:
            config: Verifier settings
            client: Shared HTTP client, a short-lived one is used per call if omitted
        """
        self.config = config
        self.client = client

    def build_request(self, receipt: Union[bytes, str]) -> ReceiptRequest:
        """
        Wrap raw receipt data in a request carrying the configured secret.

        Raises:
            ReceiptDecodeError: If the receipt bytes are not ASCII base64 text
        """
        if isinstance(receipt, bytes):
            try:
                receipt = receipt.decode("ascii")
            except UnicodeDecodeError as e:
                raise ReceiptDecodeError("receipt data is not base64 text") from e

        return ReceiptRequest(
            receipt_data=receipt,
            password=self.config.shared_secret,
            exclude_old_transactions=self.config.exclude_old_transactions
        )

    async def verify(self, request: ReceiptRequest) -> ReceiptResponse:
        """
        Verify a receipt in the configured environment.

        Args:
            request: Receipt request

        Returns:
            ReceiptResponse from the environment that owns the receipt
        """
        if self.config.sandbox:
            return await self._verify_with_apple(request, Environment.SANDBOX)

        response = await self._verify_with_apple(request, Environment.PRODUCTION)

        if response.status == AppStoreStatus.SANDBOX_RECEIPT_ON_PRODUCTION:
            logger.info("apple_receipt_is_sandbox_retrying")
            response = await self._verify_with_apple(request, Environment.SANDBOX)

        return response

    async def _verify_with_apple(
        self,
        request: ReceiptRequest,
        environment: Environment
    ) -> ReceiptResponse:
        if environment == Environment.SANDBOX:
            verify_url = self.config.sandbox_url
        else:
            verify_url = self.config.production_url

        return await verify_receipt(
            request,
            verify_url,
            max_retries=self.config.max_retries,
            client=self.client,
            timeout=self.config.timeout,
            environment=environment
        )
