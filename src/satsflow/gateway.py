"""Blockchain gateway client.

Fetches ground-truth transaction data from a Blockbook-compatible REST API
and broadcasts raw transactions. Failures are raised as ExternalServiceError
with ``retryable`` set for connection errors, timeouts and 5xx responses.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import httpx

from src.config import config
from src.errors import ExternalServiceError
from src.logging_utils import get_correlation_id, get_logger
from src.models import GatewayTransaction, TxInput, TxOutput

logger = get_logger(__name__)

SERVICE_NAME = "Blockchain gateway"
OP_RETURN_PREFIX = "6a"

T = TypeVar("T")


class BlockchainGateway(Protocol):
    """Ground-truth source for on-chain transactions."""

    async def get_transaction(self, txid: str) -> Optional[GatewayTransaction]:
        ...

    async def broadcast_transaction(self, raw_hex: str) -> str:
        ...


def decode_op_return(script_hex: str) -> Optional[Dict[str, Any]]:
    """Decode an OP_RETURN output script into a payload dict.

    The opcode and push-length byte are stripped and the remainder read as
    UTF-8. JSON objects are returned as-is; anything else is wrapped as
    ``{"raw": text}``.

    Args:
        script_hex: Hex-encoded output script.

    Returns:
        Decoded payload, or None if the script is not an OP_RETURN or is not valid hex.
    """
    if not script_hex or not script_hex.startswith(OP_RETURN_PREFIX):
        return None

    try:
        text = bytes.fromhex(script_hex[4:]).decode("utf-8", errors="replace")
    except ValueError:
        logger.warning(f"Malformed OP_RETURN script: {script_hex[:32]}")
        return None

    try:
        decoded = json.loads(text)
    except ValueError:
        return {"raw": text}
    if isinstance(decoded, dict):
        return decoded
    return {"raw": text}


def calculate_backoff_seconds(retry_count: int, base_seconds: float = 0.5, max_seconds: float = 8.0) -> float:
    """Exponential backoff ``base * 2**retry_count`` capped at ``max_seconds``."""
    if retry_count < 0:
        retry_count = 0
    if base_seconds <= 0 or max_seconds <= 0:
        return 0.0
    if retry_count >= 32:
        return max_seconds
    return min(base_seconds * (1 << retry_count), max_seconds)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    base_seconds: float = 0.5,
    max_seconds: float = 8.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying retryable ExternalServiceErrors.

    Fatal errors (``retryable=False``) and every other exception propagate
    immediately.

    Args:
        operation: Zero-argument coroutine factory.
        max_retries: Retries after the first attempt. Defaults to config.gateway_max_retries.
        base_seconds: First backoff delay.
        max_seconds: Backoff cap.
        sleep: Awaitable sleep function (injectable for tests).
    """
    retries = config.gateway_max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return await operation()
        except ExternalServiceError as e:
            if not e.retryable or attempt >= retries:
                raise
            delay = calculate_backoff_seconds(attempt, base_seconds, max_seconds)
            logger.warning(
                f"Retryable gateway error (attempt {attempt + 1}/{retries + 1}), "
                f"retrying in {delay:.2f}s: {e.message}"
            )
            attempt += 1
            await sleep(delay)


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


def _output_from_blockbook(output: Dict[str, Any]) -> TxOutput:
    script = output.get("scriptPubKey") or {}
    addresses = list(output.get("addresses") or script.get("addresses") or [])
    if output.get("cashAddr") and output["cashAddr"] not in addresses:
        addresses.append(output["cashAddr"])
    return TxOutput(
        value_sats=_as_int(output.get("valueSat", output.get("value"))),
        addresses=addresses,
        script_hex=output.get("hex") or script.get("hex"),
    )


def _input_from_blockbook(entry: Dict[str, Any]) -> TxInput:
    addresses = entry.get("addresses") or []
    if not addresses and entry.get("cashAddr"):
        addresses = [entry["cashAddr"]]
    return TxInput(
        addresses=list(addresses),
        value_sats=_as_int(entry.get("valueSat", entry.get("value"))),
    )


def parse_gateway_transaction(data: Dict[str, Any]) -> GatewayTransaction:
    """Normalize a Blockbook transaction document."""
    block_height = data.get("blockHeight", data.get("blockheight"))
    if block_height is not None and block_height < 0:
        # Blockbook reports -1 for mempool transactions
        block_height = None
    return GatewayTransaction(
        txid=data["txid"],
        vin=[_input_from_blockbook(entry) for entry in data.get("vin") or []],
        vout=[_output_from_blockbook(output) for output in data.get("vout") or []],
        confirmations=_as_int(data.get("confirmations")),
        block_height=block_height,
    )


class RestBlockchainGateway:
    """Blockbook REST client built on httpx."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the gateway client.

        Args:
            base_url: API root. Defaults to config.gateway_url.
            api_token: Optional bearer token. Defaults to config.gateway_api_token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = (base_url or config.gateway_url).rstrip("/")
        token = config.gateway_api_token if api_token is None else api_token
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or config.gateway_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(SERVICE_NAME, f"Timeout calling {path}: {e}", retryable=True)
        except httpx.TransportError as e:
            raise ExternalServiceError(SERVICE_NAME, f"Connection error calling {path}: {e}", retryable=True)

        if response.status_code >= 500:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"{path} returned {response.status_code}",
                retryable=True,
                details={"status_code": response.status_code},
            )
        return response

    async def get_transaction(self, txid: str) -> Optional[GatewayTransaction]:
        """Fetch a transaction by id.

        Returns:
            The normalized transaction, or None if the gateway does not know it.

        Raises:
            ExternalServiceError: On transport errors (retryable) or rejections (fatal).
        """
        response = await self._request("GET", f"/tx/{txid}")
        if response.status_code == 404:
            logger.info(f"Transaction not found on gateway: {txid}")
            return None
        if response.status_code >= 400:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"Rejected lookup of {txid}: {response.status_code}",
                retryable=False,
                details={"status_code": response.status_code},
            )
        try:
            return parse_gateway_transaction(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalServiceError(
                SERVICE_NAME, f"Malformed transaction document for {txid}: {e}", retryable=False
            )

    async def broadcast_transaction(self, raw_hex: str) -> str:
        """Broadcast a raw transaction.

        Returns:
            The txid reported by the gateway.

        Raises:
            ExternalServiceError: retryable on transport errors, fatal when the
                transaction is rejected or the returned txid is malformed.
        """
        response = await self._request("POST", "/sendtx/", content=raw_hex)
        if response.status_code >= 400:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"Broadcast rejected: {response.text}",
                retryable=False,
                details={"status_code": response.status_code},
            )
        txid = response.json().get("result")
        if not isinstance(txid, str) or len(txid) != 64:
            raise ExternalServiceError(SERVICE_NAME, "Invalid transaction ID returned", retryable=False)
        logger.info(f"Broadcast transaction {txid}")
        return txid
