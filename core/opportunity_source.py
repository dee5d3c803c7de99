"""
Opportunity Sources

Supply normalized opportunity snapshots to the engine on demand.

Contract: list() returns the current listing (possibly empty) or raises
SourceUnavailable. Lookup by id goes through the same listing.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from core.exceptions import SourceUnavailable
from core.models import Opportunity

logger = logging.getLogger(__name__)


DEFAULT_POOL_CACHE = "data/high_apy_pools.json"
DEFAULT_USER_AGENT = "yield-lifecycle-engine/1.0"


class OpportunitySource(ABC):
    """Pull-based opportunity feed."""

    name = "source"

    @abstractmethod
    def list(self) -> List[Opportunity]:
        """Return the current opportunity listing."""

    def find(self, opportunity_id: str) -> Optional[Opportunity]:
        return find_opportunity(self.list(), opportunity_id)


def find_opportunity(listing: Iterable[Opportunity], opportunity_id: str) -> Optional[Opportunity]:
    for opportunity in listing:
        if opportunity.id == opportunity_id:
            return opportunity
    return None


def _parse_records(records: Iterable[Any], origin: str) -> List[Opportunity]:
    """Convert raw dicts to Opportunities, skipping malformed rows."""
    out: List[Opportunity] = []
    skipped = 0
    for raw in records:
        if not isinstance(raw, Mapping):
            skipped += 1
            continue
        try:
            out.append(Opportunity.from_mapping(raw))
        except (TypeError, ValueError) as e:
            skipped += 1
            logger.debug(f"Skipping malformed record from {origin}: {e}")
    if skipped:
        logger.warning(f"{origin}: skipped {skipped} malformed opportunity record(s)")
    return out


def normalize_pool_record(pool: Mapping[str, Any], *, protocol: str = "Orca", fetched_at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """
    Normalize one raw pool record from the pools API.

    APY prefers the 30d figure, then 7d, then 24h (all decimals, 0.3 == 30%).
    Records without an account id are dropped (returns None).
    """
    pool_id = pool.get("account") or pool.get("mint_account") or pool.get("id")
    if not pool_id:
        return None

    apy = pool.get("apy_30d") or pool.get("apy_7d") or pool.get("apy_24h") or pool.get("apy") or 0
    try:
        apy_value = float(apy)
    except (TypeError, ValueError):
        apy_value = 0.0

    ts = (fetched_at or datetime.now(timezone.utc)).isoformat()
    return {
        "id": pool_id,
        "name": pool.get("name") or pool.get("name2") or "Unknown Pool",
        "protocol": protocol,
        "apy": apy_value,
        "liquidity": pool.get("liquidity") or 0,
        "price": pool.get("price") or 0,
        "volume_24h": pool.get("volume_24h") or 0,
        "created_at": pool.get("created_at") or pool.get("createdAt"),
        "lastFetched": ts,
    }


class StaticOpportunitySource(OpportunitySource):
    """In-memory listing (tests, replays, scripted scenarios)."""

    name = "static"

    def __init__(self, opportunities: Optional[Iterable[Opportunity]] = None):
        self._opportunities: List[Opportunity] = list(opportunities or [])

    def set(self, opportunities: Iterable[Opportunity]) -> None:
        self._opportunities = list(opportunities)

    def list(self) -> List[Opportunity]:
        return list(self._opportunities)


class CachedPoolFileSource(OpportunitySource):
    """
    Reads the pool cache file written by the pool fetcher.

    Accepts either a bare list of pool dicts or {"pools": [...]}.
    A missing file is an empty listing; an unreadable one is SourceUnavailable.
    """

    name = "pool_cache"

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or DEFAULT_POOL_CACHE)

    def list(self) -> List[Opportunity]:
        if not self.path.exists():
            logger.debug(f"No pool cache at {self.path}, empty listing")
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SourceUnavailable(f"pool cache {self.path}", e) from e

        records = data.get("pools", []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise SourceUnavailable(f"pool cache {self.path} has unexpected format")
        return _parse_records(records, str(self.path))


class HttpPoolSource(OpportunitySource):
    """
    Fetches raw pools from a JSON HTTP endpoint and normalizes them.

    Network errors, HTTP errors, timeouts and bad payloads all surface as
    SourceUnavailable so the engine can skip entries for that tick.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        protocol: str = "Orca",
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = float(timeout)
        self.protocol = protocol
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", DEFAULT_USER_AGENT)

    def list(self) -> List[Opportunity]:
        logger.debug(f"Fetching pools from {self.url}")
        try:
            r = self._session.get(self.url, timeout=self.timeout)
            r.raise_for_status()
            payload = r.json()
        except requests.exceptions.Timeout as e:
            raise SourceUnavailable(f"{self.url} timed out after {self.timeout:g}s", e) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise SourceUnavailable(f"{self.url} returned HTTP {status}", e) from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceUnavailable(f"{self.url} request failed", e) from e

        records = payload.get("pools", []) if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise SourceUnavailable(f"{self.url} returned an unexpected payload")

        fetched_at = datetime.now(timezone.utc)
        normalized = []
        for pool in records:
            if not isinstance(pool, Mapping):
                continue
            record = normalize_pool_record(pool, protocol=self.protocol, fetched_at=fetched_at)
            if record is not None:
                normalized.append(record)

        logger.info(f"Fetched {len(normalized)} pools from {self.url}")
        return _parse_records(normalized, self.url)


def create_source_from_config(source_cfg: Optional[Dict[str, Any]]) -> OpportunitySource:
    """Build the opportunity source from the `source:` block of app.yaml."""
    cfg = source_cfg or {}
    kind = str(cfg.get("kind", "pool_cache")).lower()
    if kind == "pool_cache":
        return CachedPoolFileSource(cfg.get("path"))
    if kind == "http":
        url = cfg.get("url")
        if not url:
            raise ValueError("source.url is required for kind=http")
        return HttpPoolSource(
            url,
            timeout=float(cfg.get("timeout_seconds", 30.0)),
            protocol=cfg.get("protocol", "Orca"),
        )
    raise ValueError(f"Unsupported opportunity source: {kind}")
