# app/x402/preflight.py
"""
Pre-flight balance check for the gas sponsor.

Every sponsored submission is paid from the sponsor's SUI balance. This
module compares that balance against the warning and critical thresholds
configured in app/core/config.py:
- X402_SPONSOR_GAS_WARN_THRESHOLD: below this, keep serving but warn
- X402_SPONSOR_GAS_CRITICAL_THRESHOLD: below this, refuse sponsored submissions

Results are cached for 60 seconds to avoid hammering the fullnode.
"""
import logging
import time
from typing import Any, Dict, Optional

from requests.exceptions import RequestException

from app.core.config import settings
from app.services.sui_rpc import SuiRpcClient, get_sui_client
from app.x402.errors import Unavailable
from app.x402.sponsor import get_sponsor_signer

logger = logging.getLogger(__name__)

# 1 SUI = 10^9 MIST
MIST_PER_SUI = 10 ** 9

_balance_cache: Dict[str, Any] = {
    "address": None,
    "balance_mist": None,
    "timestamp": 0,
}
CACHE_TTL_SECONDS = 60


def mist_to_sui(mist: int) -> float:
    """Convert MIST to SUI."""
    return mist / MIST_PER_SUI


def _get_cached_balance(address: str) -> Optional[int]:
    if _balance_cache["balance_mist"] is None or _balance_cache["address"] != address:
        return None

    age = time.time() - _balance_cache["timestamp"]
    if age > CACHE_TTL_SECONDS:
        return None

    return _balance_cache["balance_mist"]


def _update_cache(address: str, balance_mist: int) -> None:
    _balance_cache["address"] = address
    _balance_cache["balance_mist"] = balance_mist
    _balance_cache["timestamp"] = time.time()


def clear_balance_cache() -> None:
    """Clear the balance cache (useful for testing)."""
    _balance_cache["address"] = None
    _balance_cache["balance_mist"] = None
    _balance_cache["timestamp"] = 0


def check_sponsor_balance(
    client: Optional[SuiRpcClient] = None,
    fetch_balance: bool = True
) -> Dict[str, Any]:
    """
    Check the sponsor's SUI balance against configured thresholds.

    Args:
        client: Ledger client (defaults to the global one)
        fetch_balance: When False, report the sponsor configuration only and
            make no ledger call; balance fields and ``ok`` are None

    Returns:
        Dict containing:
        - enabled: bool - whether a sponsor key is configured
        - ok: bool - whether balance is above warning threshold
        - is_critical: bool - whether balance is below critical threshold
        - balance_mist: int - raw balance in MIST
        - balance_sui: float - balance in SUI
        - threshold_sui: float - warning threshold in SUI
        - critical_sui: float - critical threshold in SUI
        - address: str or None - sponsor address being monitored
        - warning: str or None - warning message if below threshold
    """
    warn_threshold = settings.X402_SPONSOR_GAS_WARN_THRESHOLD
    critical_threshold = settings.X402_SPONSOR_GAS_CRITICAL_THRESHOLD

    try:
        signer = get_sponsor_signer()
    except Unavailable as e:
        logger.error(f"Pre-flight check: sponsor key unusable: {e.message}")
        return {
            "enabled": True,
            "ok": False,
            "is_critical": True,
            "balance_mist": 0,
            "balance_sui": 0.0,
            "threshold_sui": warn_threshold,
            "critical_sui": critical_threshold,
            "address": None,
            "warning": e.message
        }

    # Requester-paid mode: nothing of ours to run out of
    if signer is None:
        return {
            "enabled": False,
            "ok": True,
            "is_critical": False,
            "balance_mist": 0,
            "balance_sui": 0.0,
            "threshold_sui": warn_threshold,
            "critical_sui": critical_threshold,
            "address": None,
            "warning": None
        }

    address = signer.address
    if not fetch_balance:
        return {
            "enabled": True,
            "ok": None,
            "is_critical": False,
            "balance_mist": None,
            "balance_sui": None,
            "threshold_sui": warn_threshold,
            "critical_sui": critical_threshold,
            "address": address,
            "warning": None
        }

    try:
        balance_mist = _get_cached_balance(address)
        if balance_mist is None:
            balance_mist = (client or get_sui_client()).get_balance(address)
            _update_cache(address, balance_mist)
            logger.debug(f"Fetched sponsor balance: {mist_to_sui(balance_mist):.6f} SUI")

        balance_sui = mist_to_sui(balance_mist)
        is_critical = balance_sui < critical_threshold
        ok = balance_sui >= warn_threshold

        warning = None
        if is_critical:
            warning = (
                f"Sponsor SUI balance critically low ({balance_sui:.6f} SUI). "
                f"Below critical threshold ({critical_threshold} SUI). "
                f"Sponsored transactions are paused until {address} is topped up."
            )
            logger.error(f"Pre-flight check: {warning}")
        elif not ok:
            warning = (
                f"Sponsor SUI balance ({balance_sui:.6f} SUI) is below warning threshold "
                f"({warn_threshold} SUI). Top up {address} soon."
            )
            logger.warning(f"Pre-flight check: {warning}")

        return {
            "enabled": True,
            "ok": ok,
            "is_critical": is_critical,
            "balance_mist": balance_mist,
            "balance_sui": balance_sui,
            "threshold_sui": warn_threshold,
            "critical_sui": critical_threshold,
            "address": address,
            "warning": warning
        }

    except (RequestException, ValueError) as e:
        logger.error(f"Failed to check sponsor balance: {e}")
        return {
            "enabled": True,
            "ok": False,
            "is_critical": True,  # Can't verify, so don't spend
            "balance_mist": 0,
            "balance_sui": 0.0,
            "threshold_sui": warn_threshold,
            "critical_sui": critical_threshold,
            "address": address,
            "warning": f"Failed to fetch sponsor balance: {str(e)}"
        }
