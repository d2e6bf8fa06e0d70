# app/api/endpoints/content.py
from fastapi import APIRouter, HTTPException, Path, Query, Request, Response, status, Body, Header
from typing import Any, Optional
import logging

from app.api.models.content import (
    ContentSummary,
    ContentListResponse,
    ContentAccessResponse,
    ContentRegisterRequest,
    ContentRegisterResponse,
    SignedTransactionRequest,
    ExecutionResponse,
)
from app.services.content_store import (
    ContentRecord,
    DuplicateContentError,
    get_content_store,
)
from app.services.sui_rpc import get_sui_client
from app.x402.access import check_access
from app.x402.audit import (
    generate_request_id,
    log_access_granted,
    log_challenge_issued,
    log_content_registered,
    log_error,
)
from app.x402.challenge import generate_challenge
from app.x402.chain import explorer_tx_url, is_valid_sui_address, require_package_id
from app.x402.coordinator import SponsorshipCoordinator
from app.x402.errors import ExecutionFailed, InvalidInput, NotFound, Unavailable
from app.x402.preflight import check_sponsor_balance
from app.x402.protocol import (
    X_PAYMENT_RESPONSE_HEADER,
    create_402_response,
    decode_payment_header,
    encode_payment_response,
    get_client_ip,
)
from app.x402.sponsor import get_sponsor_signer

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(record: ContentRecord) -> ContentSummary:
    return ContentSummary(
        contentId=record.id,
        title=record.title,
        description=record.description,
        price=record.price,
        creator=record.creator,
        contentUrl=record.content_url,
    )


def _get_record_or_404(content_id: str) -> ContentRecord:
    try:
        return get_content_store().require(content_id)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get(
    "/",
    response_model=ContentListResponse,
    summary="List Content Catalog"
)
async def list_content() -> Any:
    """
    Lists every content item with its price and creator.

    Gated payloads are never included.
    """
    records = get_content_store().list()
    return ContentListResponse(
        contents=[_summary(record) for record in records],
        total_count=len(records)
    )


@router.post(
    "/register",
    response_model=ContentRegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register New Content"
)
async def register_content(
    request: Request,
    register_request: ContentRegisterRequest
) -> Any:
    """
    Adds a content item to the catalog.

    Records are immutable once registered.

    Raises:
        HTTPException: 400 if creator or price is invalid, 409 if the id is taken
    """
    if not is_valid_sui_address(register_request.creator):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid creator address: {register_request.creator!r}"
        )

    try:
        record = ContentRecord(
            id=register_request.contentId,
            title=register_request.title,
            description=register_request.description,
            price=register_request.price,
            creator=register_request.creator,
            content_url=register_request.contentUrl or "",
            payload=register_request.contentData,
        )
        get_content_store().add(record)
    except DuplicateContentError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log_content_registered(
        content_id=record.id,
        creator=record.creator,
        price=record.price,
        client_ip=get_client_ip(request)
    )

    return ContentRegisterResponse(
        contentId=record.id,
        message="Content registered successfully"
    )


@router.get(
    "/{content_id}",
    response_model=ContentAccessResponse,
    summary="Get Gated Content",
    responses={
        402: {"description": "Payment required; body carries the x402 challenge."},
        503: {"description": "No package deployed yet."},
    }
)
def get_content(
    request: Request,
    content_id: str = Path(..., description="Content identifier.", example="content_1"),
    address: Optional[str] = Query(None, description="Sui address of the requester.")
) -> Any:
    """
    Serves the content if ``address`` owns an access receipt for it,
    otherwise answers 402 with a payment challenge.

    Ledger failures while checking receipts deny access (the requester is
    asked to pay) rather than serving the content.

    Raises:
        HTTPException: 400 for a missing or invalid address, 404 for unknown
            content, 503 when no package is deployed
    """
    request_id = generate_request_id()
    client_ip = get_client_ip(request)
    record = _get_record_or_404(content_id)

    if not address:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The 'address' query parameter is required."
        )
    if not is_valid_sui_address(address):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid Sui address: {address!r}"
        )

    try:
        has_access = check_access(content_id, address, request_id=request_id)

        if not has_access:
            signer = get_sponsor_signer()
            challenge = generate_challenge(
                record, address, sponsor_address=signer.address if signer else None
            )
    except Unavailable as e:
        logger.warning(f"x402: Content {content_id} requested but gateway unavailable: {e.message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    if has_access:
        log_access_granted(
            content_id=content_id,
            requester=address,
            client_ip=client_ip,
            request_id=request_id
        )
        return ContentAccessResponse(
            contentId=record.id,
            title=record.title,
            description=record.description,
            price=record.price,
            creator=record.creator,
            contentUrl=record.content_url,
            payload=record.payload,
            requester=address,
        )

    log_challenge_issued(
        content_id=content_id,
        requester=address,
        price=challenge.price,
        recipient=challenge.recipient,
        target=challenge.target,
        client_ip=client_ip,
        request_id=request_id
    )
    return create_402_response(challenge, resource=str(request.url))


@router.post(
    "/{content_id}/execute",
    response_model=ExecutionResponse,
    summary="Execute a Signed Purchase Transaction",
    responses={
        409: {"description": "Transaction pays with an outdated sponsor gas reference; rebuild and resend."},
        502: {"description": "Ledger unreachable."},
        503: {"description": "No package deployed, or sponsor unavailable."},
        504: {"description": "Transaction did not finalize in time."},
    }
)
def execute_purchase(
    request: Request,
    response: Response,
    content_id: str = Path(..., description="Content being purchased.", example="content_1"),
    transaction_request: Optional[SignedTransactionRequest] = Body(None),
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT")
) -> Any:
    """
    Co-signs the requester's purchase transaction as gas sponsor, submits it,
    and waits for finality.

    The signed transaction is accepted either as a JSON body or as a base64
    JSON ``X-PAYMENT`` header. A terminal on-chain failure is still a 200
    with ``status: "failure"``; the result is mirrored in the
    ``X-PAYMENT-RESPONSE`` header.

    Raises:
        HTTPException: 400 for malformed input, 404 for unknown content,
            409 when the gas reference is outdated, 503 when not deployed
            or the sponsor is unavailable, 504 on finality timeout, 502 when
            the ledger is unreachable
    """
    request_id = generate_request_id()
    client_ip = get_client_ip(request)
    _get_record_or_404(content_id)

    if transaction_request is None and x_payment:
        decoded = decode_payment_header(x_payment)
        if decoded is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid X-PAYMENT header"
            )
        transaction_request = SignedTransactionRequest(**decoded)

    if transaction_request is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A signed transaction is required (JSON body or X-PAYMENT header)."
        )

    try:
        require_package_id()
        signer = get_sponsor_signer()

        if signer is not None:
            preflight = check_sponsor_balance()
            if preflight["is_critical"]:
                raise Unavailable(preflight["warning"] or "Sponsor balance critically low")

        coordinator = SponsorshipCoordinator(get_sui_client(), signer)
        result = coordinator.sponsor_and_execute(
            transaction_request.transactionBytes,
            transaction_request.signature,
            transaction_request.publicKey,
            content_id=content_id,
            request_id=request_id,
        )

    except InvalidInput as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Unavailable as e:
        logger.warning(f"x402: Execution for {content_id} refused: {e.message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except ExecutionFailed as e:
        if e.cause == "timeout":
            status_code = status.HTTP_504_GATEWAY_TIMEOUT
        elif e.cause == "stale_gas_reference":
            # Nothing was submitted; the client rebuilds against currentGas
            status_code = status.HTTP_409_CONFLICT
        else:
            status_code = status.HTTP_502_BAD_GATEWAY
        raise HTTPException(
            status_code=status_code,
            detail={
                "message": e.message,
                "cause": e.cause,
                "stage": e.stage,
                "digest": e.digest,
                **e.details,
            }
        )
    except Exception as e:
        logger.error(f"Unexpected error executing purchase of {content_id}: {e}", exc_info=True)
        log_error(
            error_type=type(e).__name__,
            error_message=str(e),
            context={"content_id": content_id, "stage": "execute"},
            client_ip=client_ip,
            request_id=request_id
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred while executing the transaction."
        )

    execution = ExecutionResponse(
        contentId=content_id,
        status=result.status,
        digest=result.digest,
        cause=result.cause,
        versionConflict=result.version_conflict,
        sponsored=result.sponsored,
        explorerUrl=explorer_tx_url(result.digest) if result.digest else None,
    )
    response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(execution.model_dump())
    return execution
