from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request

from web3 import Web3

from .metrics import WATCHED_CONTRACTS
from .watch_registry import WatchRegistry, normalize_address

LOGGER = logging.getLogger('gasmon.ingester.bootstrap')


def http_get(url: str, timeout: float) -> dict:
    req = urllib.request.Request(url=url, method='GET', headers={'Accept': 'application/json'})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode('utf-8'))


def watches_url(api_base: str, tenant_id: str) -> str:
    query = urllib.parse.urlencode({'tenantId': tenant_id})
    return f"{api_base.rstrip('/')}/internal/onchain/watches?{query}"


def load_initial_watches(registry: WatchRegistry, api_base: str, timeout: float = 10) -> int:
    """Seed the registry from the API's watch list.

    Any failure leaves the registry empty and returns 0; watches can still
    arrive later through the watch-change subscription.
    """
    url = watches_url(api_base, registry.tenant_id)
    try:
        payload = http_get(url, timeout=timeout)
    except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError, ValueError) as exc:
        LOGGER.warning('bootstrap watches failed url=%s error=%s', url, exc)
        return 0

    items = payload.get('items', []) if isinstance(payload, dict) else []
    if not isinstance(items, list):
        LOGGER.warning('bootstrap watches returned unexpected payload url=%s', url)
        return 0

    loaded = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        contract = normalize_address(item.get('contract') or '')
        if not Web3.is_address(contract):
            LOGGER.warning('bootstrap skipping invalid contract=%r', item.get('contract'))
            continue
        if registry.add(contract):
            loaded += 1

    WATCHED_CONTRACTS.set(len(registry))
    LOGGER.info('loaded %s watches tenant=%s', loaded, registry.tenant_id)
    return loaded
