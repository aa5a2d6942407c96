"""Client for a daemon's local admin API (``http://<api-addr>/api/v1``)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import requests

from .constants import DEFAULT_API_TIMEOUT
from .errors import AlreadyExists, ApiUnavailable, InvalidAddress, PeerNotFound

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

INFINITE = "infinite"


@dataclass(frozen=True)
class Route:
    subnet: str
    next_hop: str
    # None means the route is retracted (infinite metric)
    metric: Optional[int]
    seqno: int

    @property
    def is_infinite(self) -> bool:
        return self.metric is None

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "Route":
        metric: Union[str, int, None] = raw.get("metric")
        return cls(
            subnet=str(raw.get("subnet", "")),
            next_hop=str(raw.get("nextHop", "")),
            metric=None if metric == INFINITE or metric is None else int(metric),
            seqno=int(raw.get("seqno") or 0),
        )


class DaemonApiClient:
    def __init__(self, api_address: str, timeout: float = DEFAULT_API_TIMEOUT, session: Optional[requests.Session] = None):
        self.base = f"http://{api_address}{API_PREFIX}"
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:  # pragma: no cover
        return f"<DaemonApiClient {self.base}>"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise ApiUnavailable(f"{method} {url} failed: {exc}") from exc
        logger.debug("[api] %s %s -> %s", method, url, resp.status_code)
        return resp

    def _json(self, path: str) -> Any:
        resp = self._request("GET", path)
        if resp.status_code != 200:
            raise ApiUnavailable(f"GET {path} returned {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiUnavailable(f"GET {path} returned invalid JSON") from exc

    def info(self) -> Dict[str, Any]:
        """General node info, e.g. ``{"nodeSubnet": "5f4:..."}``."""
        return dict(self._json("/admin") or {})

    def node_subnet(self) -> str:
        return str(self.info().get("nodeSubnet", ""))

    def peers(self) -> List[Dict[str, Any]]:
        return list(self._json("/admin/peers") or [])

    def selected_routes(self) -> List[Route]:
        return [Route.from_json(r) for r in self._json("/admin/routes/selected") or []]

    def fallback_routes(self) -> List[Route]:
        return [Route.from_json(r) for r in self._json("/admin/routes/fallback") or []]

    def add_peer(self, endpoint: str) -> None:
        resp = self._request("POST", "/admin/peers", json={"endpoint": endpoint})
        self._raise_for_peer(resp, endpoint)

    def remove_peer(self, endpoint: str) -> None:
        resp = self._request("DELETE", f"/admin/peers/{quote(endpoint, safe='')}")
        self._raise_for_peer(resp, endpoint)

    @staticmethod
    def _raise_for_peer(resp: requests.Response, endpoint: str) -> None:
        if resp.status_code in (200, 204):
            return
        message = (resp.text or "").strip() or f"HTTP {resp.status_code}"
        errors: Dict[int, type] = {400: InvalidAddress, 404: PeerNotFound, 409: AlreadyExists}
        cls = errors.get(resp.status_code, ApiUnavailable)
        raise cls(f"peer {endpoint}: {message}")


__all__ = ["DaemonApiClient", "Route", "API_PREFIX"]
