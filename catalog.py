"""
Model catalog: ranked OpenRouter slugs cross-referenced with provider model lists.

On-disk layout under DATA_PATH (produced by CatalogRefresher):

    {DATA_PATH}/{intent}/{policy}.json   {"data": {"models": [{"slug": ...}, ...]}}
    {DATA_PATH}/models.json              {provider: {"models": {model_id: {...}}}}
    {DATA_PATH}/.last-fetch              epoch milliseconds of the last refresh

CatalogStore reads these files and builds a ModelCatalog that maps each slug to
the concrete (provider, model) pairs serving it, preserving upstream ranking.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from config import AppConfig
from errors import DataFetchError
from logger import LOGGER_NAME
from model_id_parser import parse_model_id
from model_matcher import models_match

log = logging.getLogger(LOGGER_NAME)

# Concrete intents and ranking policies ("auto" is resolved by classification)
CATEGORIES = (
    "academia",
    "finance",
    "health",
    "legal",
    "marketing",
    "programming",
    "roleplay",
    "science",
    "seo",
    "technology",
    "translation",
    "trivia",
)

ORDERS = (
    "most-popular",
    "pricing-low-to-high",
    "pricing-high-to-low",
    "context-high-to-low",
    "latency-low-to-high",
    "throughput-high-to-low",
)

# Providers whose model lists are kept from models.dev
SUPPORTED_PROVIDERS = ("openai", "anthropic", "amazon-bedrock")

MODELS_FILE = "models.json"
LAST_FETCH_FILE = ".last-fetch"


@dataclass(frozen=True)
class ResolvedTarget:
    """A concrete (provider, model) dispatch pair."""

    provider: str
    model: str

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.model}"

    def to_dict(self) -> Dict[str, str]:
        return {"provider": self.provider, "model": self.model}


def build_model_catalog(
    slugs: Iterable[str],
    provider_models: Dict[str, Sequence[str]],
) -> Dict[str, List[ResolvedTarget]]:
    """
    Match every slug against every provider model.

    Candidates keep provider iteration order, then model order within a
    provider. Slugs without any match are left out.
    """
    parsed_entries = []
    for provider, models in provider_models.items():
        for model in models:
            parsed_entries.append((provider, model, parse_model_id(model, provider)))

    out: Dict[str, List[ResolvedTarget]] = {}
    for slug in slugs:
        if slug in out:
            continue
        parsed_slug = parse_model_id(slug, "openrouter")
        matches = [
            ResolvedTarget(provider=provider, model=model)
            for provider, model, parsed in parsed_entries
            if models_match(parsed_slug, parsed)
        ]
        if matches:
            out[slug] = matches
    return out


class ModelCatalog:
    """Read-only view over ranked slugs and their resolved targets."""

    def __init__(
        self,
        entries: Dict[str, List[ResolvedTarget]],
        ranked: Dict[Tuple[str, str], List[str]],
    ) -> None:
        self._entries = entries
        self._ranked = ranked

    @classmethod
    def from_data(
        cls,
        ranked: Dict[Tuple[str, str], List[str]],
        provider_models: Dict[str, Sequence[str]],
    ) -> ModelCatalog:
        """Build the catalog from ranked slug lists and provider model lists."""
        all_slugs: List[str] = []
        seen = set()
        for slugs in ranked.values():
            for slug in slugs:
                if slug not in seen:
                    seen.add(slug)
                    all_slugs.append(slug)
        return cls(build_model_catalog(all_slugs, provider_models), dict(ranked))

    def get_catalog(self) -> Dict[str, List[ResolvedTarget]]:
        return {slug: list(targets) for slug, targets in self._entries.items()}

    def get_ranked_slugs(self, intent: str, policy: str) -> List[str]:
        slugs = self._ranked.get((intent, policy))
        if slugs is None:
            raise DataFetchError(
                "DataParseFailed",
                f"No ranked model data for {intent}/{policy}",
            )
        return list(slugs)

    def candidates(self, slug: str) -> List[ResolvedTarget]:
        return list(self._entries.get(slug, ()))

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode_ranked_slugs(obj: Any) -> List[str]:
    """Decode an OpenRouter frontend `find` body into its ordered slug list."""
    if isinstance(obj, list) and all(isinstance(x, str) for x in obj):
        return list(obj)
    data = obj.get("data") if isinstance(obj, dict) else None
    models = data.get("models") if isinstance(data, dict) else None
    if isinstance(models, dict):
        models = [models]
    if not isinstance(models, list):
        raise DataFetchError("DataParseFailed", "Expected data.models to be a list")

    out: List[str] = []
    for m in models:
        slug = m.get("slug") if isinstance(m, dict) else None
        if not isinstance(slug, str):
            raise DataFetchError("DataParseFailed", "Model entry without a string slug")
        out.append(slug)
    return out


def decode_provider_models(obj: Any) -> Dict[str, List[str]]:
    """Decode a models.dev body into provider -> [model_id] (key order kept)."""
    if not isinstance(obj, dict):
        raise DataFetchError("DataParseFailed", "Expected a provider object")
    out: Dict[str, List[str]] = {}
    for provider, entry in obj.items():
        if entry is None:
            continue
        if not isinstance(entry, dict):
            raise DataFetchError("DataParseFailed", f"Provider {provider!r} is not an object")
        models = entry.get("models") or {}
        if not isinstance(models, dict):
            raise DataFetchError("DataParseFailed", f"Provider {provider!r} models is not an object")
        out[str(provider)] = list(models.keys())
    return out


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise DataFetchError("DataParseFailed", f"Malformed JSON in {path}", cause=e) from e


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class CatalogStore:
    """Load the catalog from DATA_PATH, rebuilding it when the files change."""

    def __init__(self, data_path: str) -> None:
        self._root = Path(data_path)
        self._lock = asyncio.Lock()
        self._catalog: Optional[ModelCatalog] = None
        self._signature: Optional[Tuple[Tuple[str, int], ...]] = None

    @property
    def root(self) -> Path:
        return self._root

    def slug_path(self, intent: str, policy: str) -> Path:
        return self._root / intent / f"{policy}.json"

    def _data_files(self) -> List[Path]:
        files = [self._root / MODELS_FILE]
        for intent in CATEGORIES:
            for policy in ORDERS:
                files.append(self.slug_path(intent, policy))
        return files

    def _signature_now(self) -> Tuple[Tuple[str, int], ...]:
        sig = []
        for p in self._data_files():
            try:
                sig.append((str(p), p.stat().st_mtime_ns))
            except FileNotFoundError:
                continue
        return tuple(sig)

    def load(self) -> ModelCatalog:
        """Read all data files and build a fresh catalog."""
        models_path = self._root / MODELS_FILE
        if not models_path.exists():
            raise DataFetchError("DataParseFailed", f"Provider model list not found: {models_path}")
        provider_models = decode_provider_models(_read_json(models_path))

        ranked: Dict[Tuple[str, str], List[str]] = {}
        for intent in CATEGORIES:
            for policy in ORDERS:
                path = self.slug_path(intent, policy)
                if not path.exists():
                    continue
                ranked[(intent, policy)] = decode_ranked_slugs(_read_json(path))

        t0 = time.time()
        catalog = ModelCatalog.from_data(ranked, provider_models)
        dt = (time.time() - t0) * 1000
        log.info(
            "Catalog built slugs=%d ranked_lists=%d providers=%d ms=%.1f",
            len(catalog),
            len(ranked),
            len(provider_models),
            dt,
        )
        return catalog

    async def get_catalog(self) -> ModelCatalog:
        """Cached catalog; rebuilt when any data file is added, removed or modified."""
        sig = self._signature_now()
        if self._catalog is not None and sig == self._signature:
            return self._catalog

        async with self._lock:
            sig = self._signature_now()
            if self._catalog is not None and sig == self._signature:
                return self._catalog
            self._catalog = await asyncio.to_thread(self.load)
            self._signature = sig
            return self._catalog


# ---------------------------------------------------------------------------
# Refresh job
# ---------------------------------------------------------------------------

def openrouter_category_url(base_url: str, category: str, order: str) -> str:
    cat = "marketing/seo" if category == "seo" else category
    return f"{base_url}/find?categories={cat}&order={order}"


class CatalogRefresher:
    """Fetch ranked slug lists and provider model lists when the data is stale."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._root = Path(config.data_path)

    @property
    def last_fetch_path(self) -> Path:
        return self._root / LAST_FETCH_FILE

    def make_paths(self) -> None:
        if not self._root.exists():
            log.info("Creating data directory structure path=%s", self._root)
        self._root.mkdir(parents=True, exist_ok=True)
        for category in CATEGORIES:
            (self._root / category).mkdir(exist_ok=True)

    def is_stale(self, now_ms: int) -> bool:
        path = self.last_fetch_path
        if not path.exists():
            log.info("No data cache found, performing initial fetch")
            return True
        try:
            last_fetch = int(float(path.read_text(encoding="utf-8").strip()))
        except ValueError:
            log.warning("Unreadable %s; treating data cache as stale", path)
            return True
        age_ms = now_ms - last_fetch
        if age_ms >= self._config.catalog_ttl_s * 1000:
            log.info("Data cache is stale, refreshing age_h=%.1f", age_ms / 3_600_000)
            return True
        log.debug("Data cache is fresh, skipping fetch age_h=%.1f", age_ms / 3_600_000)
        return False

    async def fetch_json(self, client: httpx.AsyncClient, url: str) -> Any:
        """GET `url` and decode JSON, retrying up to DATA_FETCH_RETRIES times."""
        attempts = self._config.data_fetch_retries + 1
        last_err = DataFetchError("APICallFailed", f"No fetch attempted for {url}")
        for attempt in range(1, attempts + 1):
            try:
                r = await client.get(url, headers={"User-Agent": self._config.user_agent})
            except httpx.HTTPError as e:
                last_err = DataFetchError("APICallFailed", f"API call to {url} failed", cause=e)
            else:
                if r.status_code != 200:
                    last_err = DataFetchError(
                        "APICallFailed", f"API call to {url} failed status={r.status_code}"
                    )
                else:
                    try:
                        return r.json()
                    except ValueError as e:
                        last_err = DataFetchError(
                            "JSONParseFailed", f"JSON parsing failed for response from {url}", cause=e
                        )
            log.warning(
                "Data fetch failed url=%s attempt=%d/%d reason=%s",
                url,
                attempt,
                attempts,
                last_err.reason,
            )
        raise last_err

    async def _fetch_ranked(self, client: httpx.AsyncClient, category: str, order: str) -> int:
        url = openrouter_category_url(self._config.openrouter_frontend_url, category, order)
        slugs = decode_ranked_slugs(await self.fetch_json(client, url))
        path = self._root / category / f"{order}.json"
        body = {"data": {"models": [{"slug": s} for s in slugs]}}
        path.write_text(json.dumps(body, indent=2), encoding="utf-8")
        return len(slugs)

    async def _fetch_provider_models(self, client: httpx.AsyncClient) -> int:
        raw = await self.fetch_json(client, self._config.models_dev_url)
        decode_provider_models(raw)
        supported = {p: raw[p] for p in SUPPORTED_PROVIDERS if isinstance(raw.get(p), dict)}
        path = self._root / MODELS_FILE
        path.write_text(json.dumps(supported, indent=2), encoding="utf-8")
        return sum(len(v.get("models") or {}) for v in supported.values())

    async def populate(self, client: httpx.AsyncClient) -> None:
        log.info("Populating data cache fetches=%d", 1 + len(CATEGORIES) * len(ORDERS))
        results = await asyncio.gather(
            self._fetch_provider_models(client),
            *(self._fetch_ranked(client, c, o) for c in CATEGORIES for o in ORDERS),
        )
        log.info(
            "All data fetches completed provider_models=%d slugs=%d",
            results[0],
            sum(results[1:]),
        )

    async def refresh_if_stale(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        now_ms: Optional[int] = None,
    ) -> bool:
        """Refresh the data files when older than CATALOG_TTL_S. Returns True if refreshed."""
        self.make_paths()
        now = int(time.time() * 1000) if now_ms is None else now_ms
        if not self.is_stale(now):
            return False

        if client is None:
            async with httpx.AsyncClient(timeout=self._config.request_timeout_s) as c:
                await self.populate(c)
        else:
            await self.populate(client)

        self.last_fetch_path.write_text(str(now), encoding="utf-8")
        log.info("Data cache refreshed path=%s", self._root)
        return True
