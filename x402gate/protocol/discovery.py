# x402gate/protocol/discovery.py
"""
Facilitator fee-payer discovery.

When no X402_FEE_PAYER is configured the merchant asks the facilitator which
account it co-signs with (GET /supported). The call is best-effort with a
short timeout; results are cached for five minutes to avoid hammering the
facilitator on every 402.
"""
import logging
import time
from typing import Any, Dict, Optional, Tuple

import requests
from requests.exceptions import RequestException

from x402gate.core.config import settings
from x402gate.protocol.types import normalize_network

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300

# (facilitator url, network) -> (fee payer, fetched at)
_fee_payer_cache: Dict[Tuple[str, str], Tuple[Optional[str], float]] = {}


def _fetch_supported(base_url: str, timeout: float) -> Dict[str, Any]:
    response = requests.get(f"{base_url.rstrip('/')}/supported", timeout=timeout)
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected /supported response: {type(data)}")
    return data


def discover_fee_payer(
    network: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[str]:
    """
    Look up the facilitator's fee payer for ``network``.

    Returns:
        The fee payer address, or None if the facilitator does not advertise
        one or cannot be reached
    """
    network = normalize_network(network or settings.X402_NETWORK)
    base_url = base_url or settings.X402_FACILITATOR_URL
    key = (base_url, network)

    cached = _fee_payer_cache.get(key)
    if cached and time.time() - cached[1] <= CACHE_TTL_SECONDS:
        return cached[0]

    try:
        data = _fetch_supported(base_url, timeout or settings.X402_DISCOVERY_TIMEOUT)
    except (RequestException, ValueError) as e:
        logger.warning(f"x402: Fee payer discovery against {base_url} failed: {e}")
        return None

    fee_payer = None
    kinds = data.get("kinds")
    for kind in kinds if isinstance(kinds, list) else []:
        if not isinstance(kind, dict) or not isinstance(kind.get("network"), str):
            continue
        try:
            kind_network = normalize_network(kind["network"])
        except ValueError:
            continue
        extra = kind.get("extra")
        if kind_network == network and kind.get("scheme", "exact") == "exact" and isinstance(extra, dict):
            candidate = extra.get("feePayer")
            if isinstance(candidate, str) and candidate:
                fee_payer = candidate
                break

    if fee_payer:
        logger.info(f"x402: Discovered facilitator fee payer {fee_payer} for {network}")
    else:
        logger.warning(f"x402: Facilitator {base_url} advertises no fee payer for {network}")
    _fee_payer_cache[key] = (fee_payer, time.time())
    return fee_payer
