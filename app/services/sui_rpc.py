# app/services/sui_rpc.py
"""
Sui JSON-RPC client used by the access gate, receipt listing and the
sponsorship coordinator.

Every failure is raised as a ``LedgerRpcError`` (a ``RequestException``),
so callers can treat "the ledger could not answer" uniformly. Conditions
the coordinator must tell apart get their own subclasses:

- ``LedgerTransientError``: HTTP 429/5xx, retried with backoff
- ``ResourceVersionConflict``: an input object (the sponsor gas coin) was
  referenced at a version that is no longer current or is locked by another
  transaction
- ``TransactionNotFound``: the digest is not known to the node yet
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError, RequestException, Timeout

from app.core.config import settings
from app.services.retry import with_rpc_retry

logger = logging.getLogger(__name__)

PAGE_SIZE = 50

# Substrings of Sui RPC errors that mean an owned input object was stale or locked
VERSION_CONFLICT_MARKERS = (
    "objectversionunavailableforconsumption",
    "not available for consumption",
    "already locked by a different transaction",
    "objectlockconflict",
    "equivocated",
)

NOT_FOUND_MARKERS = (
    "could not find the referenced transaction",
    "transaction not found",
)


class LedgerRpcError(RequestException):
    """The ledger rejected or could not serve an RPC call."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class LedgerTransientError(LedgerRpcError):
    """Retryable condition (rate limiting, node overload)."""


class ResourceVersionConflict(LedgerRpcError):
    """An owned input object was referenced at a stale or locked version."""


class TransactionNotFound(LedgerRpcError):
    """The node does not know the transaction digest (yet)."""


TRANSIENT_ERRORS = (RequestsConnectionError, Timeout, LedgerTransientError)


@dataclass(frozen=True)
class SponsorResource:
    """Reference to the sponsor's gas coin at a specific version."""
    object_id: str
    version: int
    digest: str
    balance: int


@dataclass(frozen=True)
class TransactionOutcome:
    """Transaction status as reported by the ledger."""
    digest: Optional[str]
    status: str  # "success", "failure" or "pending"
    error: Optional[str] = None
    gas_version: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("success", "failure")

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def version_conflict(self) -> bool:
        return is_version_conflict(self.error)


def is_version_conflict(message: Optional[str]) -> bool:
    """Check whether a ledger error message describes an object version conflict."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in VERSION_CONFLICT_MARKERS)


def classify_rpc_error(method: str, error: Dict[str, Any]) -> LedgerRpcError:
    """Map a JSON-RPC error object to the matching exception type."""
    message = str(error.get("message", error))
    code = error.get("code")
    text = f"{method}: {message}"

    if is_version_conflict(message):
        return ResourceVersionConflict(text, code)

    lowered = message.lower()
    if any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return TransactionNotFound(text, code)

    return LedgerRpcError(text, code)


def _expect_dict(method: str, result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict):
        raise LedgerRpcError(f"{method}: unexpected result type {type(result).__name__}")
    return result


def parse_transaction_outcome(result: Dict[str, Any]) -> TransactionOutcome:
    """
    Build a TransactionOutcome from a SuiTransactionBlockResponse.

    A response without effects has not reached a terminal state yet.
    """
    digest = result.get("digest")
    effects = result.get("effects")
    if not effects:
        return TransactionOutcome(digest=digest, status="pending")

    status_info = effects.get("status") or {}
    status = status_info.get("status", "failure")

    gas_version = None
    gas_ref = (effects.get("gasObject") or {}).get("reference") or {}
    if gas_ref.get("version") is not None:
        gas_version = int(gas_ref["version"])

    return TransactionOutcome(
        digest=digest or effects.get("transactionDigest"),
        status="success" if status == "success" else "failure",
        error=status_info.get("error"),
        gas_version=gas_version,
    )


class SuiRpcClient:
    """Thin synchronous client for the Sui fullnode JSON-RPC API."""

    def __init__(self, rpc_url: Optional[str] = None, timeout: Optional[float] = None):
        self._rpc_url = rpc_url
        self._timeout = timeout

    @property
    def rpc_url(self) -> str:
        if self._rpc_url is not None:
            return self._rpc_url
        return str(settings.SUI_RPC_URL)

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return settings.X402_RPC_TIMEOUT_SECONDS

    @with_rpc_retry(retry_on=TRANSIENT_ERRORS)
    def call(self, method: str, params: List[Any], deadline: Optional[float] = None) -> Any:
        """
        Perform one JSON-RPC call, retrying transient failures.

        Args:
            method: JSON-RPC method name
            params: Positional parameters
            deadline: time.monotonic() value bounding this call, retries included

        Raises:
            LedgerRpcError: If the node returns an error or a malformed response
            RequestException: If the HTTP request fails after all retries
            Timeout: If the deadline passes
        """
        timeout = self.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise Timeout(f"{method}: deadline passed before the request was sent")
            timeout = min(timeout, remaining)

        response = requests.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": method,
                "params": params,
            },
            timeout=timeout
        )

        if response.status_code == 429 or response.status_code >= 500:
            raise LedgerTransientError(
                f"{method}: RPC node returned HTTP {response.status_code}",
                response.status_code
            )
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError as e:
            raise LedgerRpcError(f"{method}: invalid JSON in RPC response: {e}") from e

        if "error" in body:
            raise classify_rpc_error(method, body["error"])

        if "result" not in body:
            raise LedgerRpcError(f"{method}: invalid RPC response, missing 'result' field")

        return body["result"]

    def query_owned_objects_by_shape(self, address: str, struct_type: str) -> List[Dict[str, Any]]:
        """
        Fetch every object of ``struct_type`` owned by ``address``.

        Follows pagination cursors until the node reports no further pages.

        Returns:
            Object data dicts (objectId, version, type, content) in ledger order
        """
        objects: List[Dict[str, Any]] = []
        cursor = None

        while True:
            page = self.call(
                "suix_getOwnedObjects",
                [
                    address,
                    {
                        "filter": {"StructType": struct_type},
                        "options": {"showType": True, "showContent": True},
                    },
                    cursor,
                    PAGE_SIZE,
                ],
            )

            page = _expect_dict("suix_getOwnedObjects", page)
            items = page.get("data") or []
            if not isinstance(items, list):
                raise LedgerRpcError(f"suix_getOwnedObjects: 'data' is {type(items).__name__}, expected a list")

            for item in items:
                if not isinstance(item, dict):
                    raise LedgerRpcError(f"suix_getOwnedObjects: unexpected object entry {item!r}")
                if item.get("error"):
                    logger.warning(f"Skipping unreadable object owned by {address}: {item['error']}")
                    continue
                if isinstance(item.get("data"), dict):
                    objects.append(item["data"])

            if not page.get("hasNextPage") or not page.get("nextCursor"):
                break
            cursor = page["nextCursor"]

        return objects

    def get_sponsor_gas(self, owner: str, coin_type: Optional[str] = None) -> SponsorResource:
        """
        Read the current reference of the sponsor's largest gas coin.

        Raises:
            LedgerRpcError: If the owner holds no coins of the gas type
        """
        coin_type = coin_type or settings.X402_COIN_TYPE
        result = _expect_dict("suix_getCoins", self.call("suix_getCoins", [owner, coin_type, None, PAGE_SIZE]))
        coins = result.get("data") or []
        if not coins:
            raise LedgerRpcError(f"No {coin_type} gas coins owned by sponsor {owner}")

        try:
            coin = max(coins, key=lambda c: int(c.get("balance", 0)))
            return SponsorResource(
                object_id=coin["coinObjectId"],
                version=int(coin["version"]),
                digest=coin["digest"],
                balance=int(coin.get("balance", 0)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise LedgerRpcError(f"suix_getCoins: malformed coin entry: {e}") from e

    def get_balance(self, owner: str, coin_type: Optional[str] = None) -> int:
        """Total balance of ``coin_type`` owned by ``owner``, in MIST."""
        coin_type = coin_type or settings.X402_COIN_TYPE
        result = _expect_dict("suix_getBalance", self.call("suix_getBalance", [owner, coin_type]))
        try:
            return int(result.get("totalBalance", 0))
        except (TypeError, ValueError) as e:
            raise LedgerRpcError(f"suix_getBalance: malformed totalBalance: {e}") from e

    def submit_sponsored_transaction(
        self,
        transaction_bytes: str,
        requester_signature: str,
        sponsor_signature: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> TransactionOutcome:
        """
        Submit signed transaction bytes for execution.

        The bytes are forwarded untouched; the sponsor signature, when given,
        is appended after the requester's. With a ``deadline`` neither the
        HTTP timeout nor the retries run past it.

        Returns:
            The outcome, which may still be "pending" if the node answered
            before local execution finished
        """
        signatures = [requester_signature]
        if sponsor_signature:
            signatures.append(sponsor_signature)

        result = self.call(
            "sui_executeTransactionBlock",
            [
                transaction_bytes,
                signatures,
                {"showEffects": True},
                "WaitForLocalExecution",
            ],
            deadline=deadline,
        )
        return parse_transaction_outcome(_expect_dict("sui_executeTransactionBlock", result))

    def get_transaction_outcome(self, digest: str) -> Optional[TransactionOutcome]:
        """
        Look up a transaction by digest.

        Returns:
            The outcome, or None if the node does not know the digest yet
        """
        try:
            result = self.call("sui_getTransactionBlock", [digest, {"showEffects": True}])
        except TransactionNotFound:
            return None
        return parse_transaction_outcome(_expect_dict("sui_getTransactionBlock", result))


# Global client instance
_sui_client: Optional[SuiRpcClient] = None
_sui_client_lock = threading.Lock()


def get_sui_client() -> SuiRpcClient:
    """
    Get the global Sui RPC client.

    Returns:
        The singleton SuiRpcClient instance
    """
    global _sui_client

    if _sui_client is None:
        with _sui_client_lock:
            if _sui_client is None:
                _sui_client = SuiRpcClient()

    return _sui_client
