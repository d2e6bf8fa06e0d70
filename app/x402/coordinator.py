# app/x402/coordinator.py
"""
Sponsored transaction execution.

The sponsor pays gas from a single owned coin. Every transaction consumes
that coin and bumps its version, and the ledger rejects any transaction that
references a version which is already consumed or locked. Two submissions
built against the same version therefore race, and one of them always loses.

The coordinator removes the race by construction:

1. Requests are validated before anything touches the ledger. The
   transaction bytes are decoded to find the sender and the gas payment.
2. Per sponsor address, submissions pass one at a time through a FIFO
   queue lock (SponsorQueue), in arrival order.
3. Inside the lock the sponsor gas coin is re-read and compared with the
   gas reference the requester signed over. Only a transaction paying with
   the current version is co-signed and submitted; anything older fails
   fast with cause "stale_gas_reference" and the current reference, so the
   requester can rebuild. The lock is held until the ledger reports a
   terminal outcome, so the next submission always sees the new version.
4. The outcome is classified. A version conflict means the invariant above
   was broken somewhere and is logged at CRITICAL and audited separately,
   although the caller just sees a failure.

The requester's signature covers the whole transaction, gas payment
included, so the coordinator cannot substitute a fresh gas reference
itself; it can only refuse to submit a stale one.

Transient network failures are retried with bounded backoff by the RPC
client. A submission that does not finalize within
X402_FINALITY_TIMEOUT_SECONDS raises ExecutionFailed(cause="timeout"); the
lock is released and the same bytes are never resubmitted automatically.

When no sponsor key is configured requesters pay their own gas. There is no
shared resource then, so the queue is skipped.
"""
import base64
import binascii
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Deque, Dict, List, Optional

from requests.exceptions import RequestException, Timeout

from app.core.config import settings
from app.services.sui_bcs import BcsError, ObjectRef, TransactionData, same_address
from app.services.sui_rpc import (
    LedgerRpcError,
    LedgerTransientError,
    ResourceVersionConflict,
    SponsorResource,
    SuiRpcClient,
    TransactionOutcome,
)
from app.x402.audit import (
    log_transaction_failed,
    log_transaction_settled,
    log_transaction_submitted,
    log_version_conflict,
)
from app.x402.errors import ExecutionFailed, InvalidInput
from app.x402.sponsor import (
    ED25519_FLAG,
    ED25519_PUBLIC_KEY_LENGTH,
    SponsorSigner,
    derive_sui_address,
    parse_serialized_signature,
)

logger = logging.getLogger(__name__)


class SponsorQueue:
    """
    FIFO mutual exclusion for one sponsor identity.

    Waiters are admitted strictly in the order they called acquire().
    A waiter that times out leaves the line without blocking those behind it.

    ``min_gas_version`` is the lowest gas coin version the next submission
    may use. Only the current holder reads or writes it.
    """

    def __init__(self, name: str):
        self.name = name
        self.min_gas_version: Optional[int] = None
        self._cond = threading.Condition()
        self._waiters: Deque[object] = deque()
        self._held = False
        self._admitted = 0

    @property
    def held(self) -> bool:
        with self._cond:
            return self._held

    @property
    def pending(self) -> int:
        """Number of callers waiting for the lock."""
        with self._cond:
            return len(self._waiters)

    @property
    def admitted(self) -> int:
        """Total number of successful acquisitions."""
        with self._cond:
            return self._admitted

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for this caller's turn.

        Args:
            timeout: Maximum seconds to wait, or None to wait forever

        Returns:
            True if the lock was acquired, False on timeout
        """
        ticket = object()
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            self._waiters.append(ticket)
            try:
                while self._held or self._waiters[0] is not ticket:
                    if deadline is None:
                        self._cond.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._cond.wait(remaining)

                self._waiters.popleft()
                self._held = True
                self._admitted += 1
                return True
            finally:
                if ticket in self._waiters:
                    # Gave up while waiting; let the next in line re-check
                    self._waiters.remove(ticket)
                    self._cond.notify_all()

    def release(self) -> None:
        with self._cond:
            if not self._held:
                raise RuntimeError(f"Sponsor queue {self.name} released while not held")
            self._held = False
            self._cond.notify_all()


# One queue per sponsor address
_sponsor_queues: Dict[str, SponsorQueue] = {}
_sponsor_queues_lock = threading.Lock()


def get_sponsor_queue(sponsor_address: str) -> SponsorQueue:
    """
    Get the queue guarding a sponsor's gas coin.

    Returns:
        The SponsorQueue for this sponsor, created on first use
    """
    with _sponsor_queues_lock:
        queue = _sponsor_queues.get(sponsor_address)
        if queue is None:
            queue = SponsorQueue(sponsor_address)
            _sponsor_queues[sponsor_address] = queue
        return queue


def reset_sponsor_queues() -> None:
    """Drop all sponsor queues (useful for testing)."""
    with _sponsor_queues_lock:
        _sponsor_queues.clear()


@dataclass
class SponsoredExecutionResult:
    """Outcome of one submission. Not persisted; the ledger is the record."""
    status: str  # "success" or "failure"
    digest: Optional[str]
    cause: Optional[str] = None
    version_conflict: bool = False
    sponsored: bool = True
    sponsor: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ValidatedRequest:
    requester: str
    transaction: TransactionData


def _decode_b64(value: str, field_name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput(f"{field_name} is not valid base64: {e}") from e


def _gas_ref_dict(ref: Optional[Any]) -> Optional[Dict[str, Any]]:
    if ref is None:
        return None
    entry = {"objectId": ref.object_id, "version": ref.version}
    # Node-reported digests are base58 text; decoded ones are raw bytes
    if isinstance(ref, SponsorResource):
        entry["digest"] = ref.digest
    return entry


def validate_signed_request(transaction_bytes: Any, signature: Any, public_key: Any) -> ValidatedRequest:
    """
    Check the shape of a signed transaction request.

    Cryptographic verification is left to the ledger; this only rejects
    requests that can never succeed.

    Returns:
        ValidatedRequest with the requester's Sui address (derived from the
        public key) and the decoded transaction

    Raises:
        InvalidInput: If a field is missing, empty, not base64, the public
            key does not match the one embedded in an Ed25519 signature,
            the bytes are not a Sui programmable transaction, or its sender
            is not the signer
    """
    fields = {
        "transactionBytes": transaction_bytes,
        "signature": signature,
        "publicKey": public_key,
    }
    missing = [name for name, value in fields.items() if not isinstance(value, str) or not value.strip()]
    if missing:
        raise InvalidInput(f"Missing required fields: {', '.join(missing)}")

    raw = _decode_b64(transaction_bytes, "transactionBytes")
    if not raw:
        raise InvalidInput("transactionBytes is empty")

    try:
        flag, _, embedded_key = parse_serialized_signature(signature)
    except ValueError as e:
        raise InvalidInput(f"Malformed signature: {e}") from e

    key = _decode_b64(public_key, "publicKey")
    if len(key) == len(embedded_key) + 1 and key[0] == flag:
        key = key[1:]

    if flag == ED25519_FLAG:
        if len(embedded_key) != ED25519_PUBLIC_KEY_LENGTH:
            raise InvalidInput("Malformed Ed25519 signature")
        if key != embedded_key:
            raise InvalidInput("Public key does not match signature")

    requester = derive_sui_address(key, flag)

    try:
        transaction = TransactionData.from_bytes(raw)
    except BcsError as e:
        raise InvalidInput(f"transactionBytes is not a Sui programmable transaction: {e}") from e

    if not same_address(transaction.sender, requester):
        raise InvalidInput(
            f"Transaction sender {transaction.sender} is not the signer {requester}"
        )

    return ValidatedRequest(requester=requester, transaction=transaction)


class SponsorshipCoordinator:
    """
    Co-signs and executes requester transactions.

    Args:
        client: Ledger client
        signer: Sponsor keypair, or None when requesters pay their own gas
        finality_timeout: Seconds to wait for a terminal outcome
        queue_timeout: Seconds to wait for the sponsor queue
        poll_interval: Seconds between finality polls
    """

    def __init__(
        self,
        client: SuiRpcClient,
        signer: Optional[SponsorSigner],
        finality_timeout: Optional[float] = None,
        queue_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.client = client
        self.signer = signer
        self._finality_timeout = finality_timeout
        self._queue_timeout = queue_timeout
        self._poll_interval = poll_interval

    @property
    def finality_timeout(self) -> float:
        if self._finality_timeout is not None:
            return self._finality_timeout
        return settings.X402_FINALITY_TIMEOUT_SECONDS

    @property
    def queue_timeout(self) -> float:
        if self._queue_timeout is not None:
            return self._queue_timeout
        return settings.X402_SPONSOR_QUEUE_TIMEOUT_SECONDS

    @property
    def poll_interval(self) -> float:
        if self._poll_interval is not None:
            return self._poll_interval
        return settings.X402_FINALITY_POLL_INTERVAL_SECONDS

    @property
    def sponsored(self) -> bool:
        return self.signer is not None

    def sponsor_and_execute(
        self,
        transaction_bytes: str,
        signature: str,
        public_key: str,
        content_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> SponsoredExecutionResult:
        """
        Validate, co-sign, submit and await a requester's transaction.

        Returns:
            SponsoredExecutionResult with status "success" or "failure"

        Raises:
            InvalidInput: Malformed request; no ledger call was made
            ExecutionFailed: Timeout, ledger unreachable, no fresh gas coin,
                or the transaction pays with an outdated gas reference
        """
        request = validate_signed_request(transaction_bytes, signature, public_key)
        requester = request.requester
        gas_owner = request.transaction.gas_data.owner

        if self.signer is None:
            if not same_address(gas_owner, requester):
                raise InvalidInput(
                    f"Gas owner {gas_owner} must be the sender when gas is not sponsored"
                )
            return self._execute(
                transaction_bytes, signature, None, None, None,
                content_id=content_id, requester=requester, request_id=request_id,
            )

        if not same_address(gas_owner, self.signer.address):
            raise InvalidInput(
                f"Gas must be paid by sponsor {self.signer.address}, not {gas_owner}"
            )

        queue = get_sponsor_queue(self.signer.address)
        logger.info(
            f"x402: Queued sponsored submission content={content_id} requester={requester} "
            f"({queue.pending} waiting, held={queue.held})"
        )

        if not queue.acquire(timeout=self.queue_timeout):
            self._fail(
                "Timed out waiting for the sponsor queue",
                cause="timeout", stage="queued",
                content_id=content_id, requester=requester, request_id=request_id,
            )

        try:
            payment = request.transaction.gas_data
            gas = self._fresh_gas(queue, content_id, requester, request_id)
            referenced = payment.find(gas.object_id)
            if referenced is not None and referenced.version > gas.version:
                # The wallet saw a newer coin than our node; wait for it to catch up
                gas = self._fresh_gas(
                    queue, content_id, requester, request_id, at_least=referenced.version
                )
                referenced = payment.find(gas.object_id)

            if referenced is None or referenced.version != gas.version:
                self._fail(
                    f"Transaction pays with {self._describe_payment(payment.payment)}, "
                    f"but the sponsor gas coin is now {gas.object_id}@{gas.version}; "
                    f"rebuild the transaction against the current reference",
                    cause="stale_gas_reference", stage="refresh_gas",
                    content_id=content_id, requester=requester, request_id=request_id,
                    details={
                        "currentGas": _gas_ref_dict(gas),
                        "referencedGas": _gas_ref_dict(referenced),
                    },
                )

            sponsor_signature = self.signer.sign_transaction(transaction_bytes)
            result = self._execute(
                transaction_bytes, signature, sponsor_signature, gas, queue,
                content_id=content_id, requester=requester, request_id=request_id,
            )
            return result
        finally:
            queue.release()

    @staticmethod
    def _describe_payment(payment: List[ObjectRef]) -> str:
        if not payment:
            return "no gas coin"
        return ", ".join(f"{ref.object_id}@{ref.version}" for ref in payment)

    def _fresh_gas(
        self,
        queue: SponsorQueue,
        content_id: Optional[str],
        requester: str,
        request_id: Optional[str],
        at_least: Optional[int] = None,
    ) -> SponsorResource:
        """
        Read the sponsor gas coin, insisting on a version at least as new as
        the one left behind by the previous finalized submission (and
        ``at_least``, when given).

        Fullnodes can lag behind; a stale read is retried with backoff.
        """
        attempts = settings.X402_RPC_MAX_RETRIES + 1
        backoff = settings.X402_RPC_BACKOFF_SECONDS
        floors = [v for v in (queue.min_gas_version, at_least) if v is not None]
        floor = max(floors) if floors else None
        gas = None

        for attempt in range(attempts):
            try:
                gas = self.client.get_sponsor_gas(self.signer.address)
            except RequestException as e:
                self._fail(
                    f"Could not read sponsor gas coin: {e}",
                    cause="upstream_unavailable", stage="refresh_gas",
                    content_id=content_id, requester=requester, request_id=request_id,
                )

            if floor is None or gas.version >= floor:
                return gas

            logger.warning(
                f"x402: Sponsor gas coin {gas.object_id} read at version {gas.version}, "
                f"expected >= {floor} (attempt {attempt + 1}/{attempts})"
            )
            time.sleep(backoff * (2 ** attempt))

        self._fail(
            f"Sponsor gas coin {gas.object_id} did not reach version {floor}",
            cause="stale_sponsor_resource", stage="refresh_gas",
            content_id=content_id, requester=requester, request_id=request_id,
        )

    def _execute(
        self,
        transaction_bytes: str,
        signature: str,
        sponsor_signature: Optional[str],
        gas: Optional[SponsorResource],
        queue: Optional[SponsorQueue],
        content_id: Optional[str],
        requester: str,
        request_id: Optional[str],
    ) -> SponsoredExecutionResult:
        sponsor = self.signer.address if self.signer else None
        deadline = time.monotonic() + self.finality_timeout

        log_transaction_submitted(
            sponsor=sponsor,
            gas_object_id=gas.object_id if gas else None,
            gas_version=gas.version if gas else None,
            content_id=content_id,
            requester=requester,
            request_id=request_id
        )

        try:
            outcome = self.client.submit_sponsored_transaction(
                transaction_bytes, signature, sponsor_signature, deadline=deadline
            )
        except ResourceVersionConflict as e:
            return self._version_conflict(
                str(e), None, gas, content_id=content_id, requester=requester, request_id=request_id
            )
        except LedgerTransientError as e:
            self._fail(
                f"Ledger unavailable: {e}", cause="upstream_unavailable", stage="submit",
                content_id=content_id, requester=requester, request_id=request_id,
            )
        except LedgerRpcError as e:
            # Rejected before execution (bad signature, insufficient gas, ...)
            logger.warning(f"x402: Ledger rejected transaction requester={requester}: {e}")
            log_transaction_failed(
                cause=str(e), stage="submit", content_id=content_id,
                requester=requester, request_id=request_id
            )
            return SponsoredExecutionResult(
                status="failure", digest=None, cause=str(e),
                sponsored=self.sponsored, sponsor=sponsor,
            )
        except Timeout as e:
            self._fail(
                f"Ledger did not answer the submission: {e}", cause="timeout", stage="submit",
                content_id=content_id, requester=requester, request_id=request_id,
            )
        except RequestException as e:
            self._fail(
                f"Ledger unavailable: {e}", cause="upstream_unavailable", stage="submit",
                content_id=content_id, requester=requester, request_id=request_id,
            )

        outcome = self._await_finality(outcome, deadline, content_id, requester, request_id)

        if queue is not None and gas is not None:
            # The coin is consumed whether execution succeeded or aborted
            queue.min_gas_version = outcome.gas_version if outcome.gas_version is not None else gas.version + 1

        return self._classify(outcome, gas, content_id, requester, request_id)

    def _await_finality(
        self,
        outcome: TransactionOutcome,
        deadline: float,
        content_id: Optional[str],
        requester: str,
        request_id: Optional[str],
    ) -> TransactionOutcome:
        """Poll until the ledger reports success or failure, or the deadline passes."""
        digest = outcome.digest

        while not outcome.is_terminal:
            if digest is None:
                self._fail(
                    "Ledger accepted the transaction without returning a digest",
                    cause="no_digest", stage="finality",
                    content_id=content_id, requester=requester, request_id=request_id,
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._fail(
                    f"Transaction {digest} did not finalize within {self.finality_timeout}s",
                    cause="timeout", stage="finality", digest=digest,
                    content_id=content_id, requester=requester, request_id=request_id,
                )

            time.sleep(min(self.poll_interval, remaining))

            try:
                polled = self.client.get_transaction_outcome(digest)
            except RequestException as e:
                logger.warning(f"x402: Finality poll for {digest} failed, will retry: {e}")
                continue

            if polled is not None:
                outcome = polled

        return outcome

    def _classify(
        self,
        outcome: TransactionOutcome,
        gas: Optional[SponsorResource],
        content_id: Optional[str],
        requester: str,
        request_id: Optional[str],
    ) -> SponsoredExecutionResult:
        sponsor = self.signer.address if self.signer else None

        if outcome.succeeded:
            logger.info(f"x402: Transaction {outcome.digest} settled for requester={requester} content={content_id}")
            log_transaction_settled(
                digest=outcome.digest, sponsor=sponsor, content_id=content_id,
                requester=requester, request_id=request_id
            )
            return SponsoredExecutionResult(
                status="success", digest=outcome.digest,
                sponsored=self.sponsored, sponsor=sponsor,
            )

        if outcome.version_conflict:
            return self._version_conflict(
                outcome.error or "version conflict", outcome.digest, gas,
                content_id=content_id, requester=requester, request_id=request_id,
            )

        cause = outcome.error or "Transaction execution failed"
        logger.warning(f"x402: Transaction {outcome.digest} failed for requester={requester}: {cause}")
        log_transaction_failed(
            cause=cause, stage="finality", digest=outcome.digest,
            content_id=content_id, requester=requester, request_id=request_id
        )
        return SponsoredExecutionResult(
            status="failure", digest=outcome.digest, cause=cause,
            sponsored=self.sponsored, sponsor=sponsor,
        )

    def _version_conflict(
        self,
        message: str,
        digest: Optional[str],
        gas: Optional[SponsorResource],
        content_id: Optional[str],
        requester: str,
        request_id: Optional[str],
    ) -> SponsoredExecutionResult:
        sponsor = self.signer.address if self.signer else None

        if self.sponsored:
            logger.critical(
                f"x402: SPONSOR VERSION CONFLICT sponsor={sponsor} "
                f"gas={gas.object_id if gas else None}@{gas.version if gas else None} "
                f"digest={digest} requester={requester} content={content_id}: {message}"
            )
            log_version_conflict(
                sponsor=sponsor,
                gas_object_id=gas.object_id if gas else None,
                gas_version=gas.version if gas else None,
                error_message=message,
                digest=digest,
                request_id=request_id
            )
        else:
            # The requester's own gas coin; nothing shared is at stake
            logger.warning(f"x402: Requester {requester} gas coin conflict: {message}")
            log_transaction_failed(
                cause=message, stage="submit", digest=digest, content_id=content_id,
                requester=requester, request_id=request_id
            )

        return SponsoredExecutionResult(
            status="failure", digest=digest, cause="version_conflict",
            version_conflict=True, sponsored=self.sponsored, sponsor=sponsor,
        )

    def _fail(
        self,
        message: str,
        cause: str,
        stage: str,
        content_id: Optional[str],
        requester: str,
        request_id: Optional[str],
        digest: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.error(
            f"x402: Execution failed at {stage} ({cause}) content={content_id} "
            f"requester={requester} digest={digest}: {message}"
        )
        log_transaction_failed(
            cause=cause, stage=stage, digest=digest, content_id=content_id,
            requester=requester, request_id=request_id
        )
        raise ExecutionFailed(message, cause=cause, digest=digest, stage=stage, details=details)
