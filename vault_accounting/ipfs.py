"""IPFS fetching and gateway utilities."""

import base64
import sys
from collections.abc import Iterable

import requests

from vault_accounting.storage import cache_key, get_cached, set_cached


def build_gateway_url(gateway: str, cid: str) -> str:
    """Build IPFS gateway URL from base gateway and CID."""
    gw = gateway.rstrip("/")
    # Accept:
    # - https://ipfs.io/ipfs/
    # - https://ipfs.io/ipfs
    # - https://ipfs.io
    if gw.endswith("/ipfs"):
        return f"{gw}/{cid}"
    return f"{gw}/ipfs/{cid}"


def is_valid_cid(cid: str) -> bool:
    # CIDv0 is 46 characters, base32 CIDv1 at least 52
    return len(cid) == 46 or len(cid) >= 52


def fetch_ipfs_bytes(cid: str, gateways: Iterable[str], *, timeout_s: int, use_cache: bool = True) -> bytes:
    """Fetch IPFS content by CID from the first gateway that serves it, with optional caching."""
    cid = cid.strip()
    if not is_valid_cid(cid):
        raise ValueError(f"Invalid IPFS CID: {cid!r}")

    key = cache_key("ipfs", cid)
    if use_cache:
        cached = get_cached(key)
        if cached is not None:
            # Cache stores base64-encoded bytes
            try:
                return base64.b64decode(cached["content"])
            except (KeyError, TypeError, ValueError):
                # If cache is corrupted, continue to fetch
                pass

    last_err: Exception | None = None
    for gw in gateways:
        url = build_gateway_url(gw, cid)
        try:
            resp = requests.get(url, timeout=timeout_s)
            resp.raise_for_status()
        except requests.RequestException as ex:
            print(f"⚠️  IPFS gateway {gw} failed for {cid}: {ex}", file=sys.stderr)
            last_err = ex
            continue
        content = resp.content
        if use_cache:
            set_cached(key, {"content": base64.b64encode(content).decode("ascii")})
        return content
    raise RuntimeError(f"Failed to fetch CID {cid} from all configured gateways") from last_err
