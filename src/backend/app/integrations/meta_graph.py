import hashlib
import hmac
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from .. import quota
from ..metrics_counters import GRAPH_REQUESTS

logger = logging.getLogger(__name__)

LONG_LIVED_EXPIRES = 5184000  # ~60 days
GRAPH_MAX_ATTEMPTS = 3


class GraphAPIError(Exception):
    def __init__(self, status_code: int, message: str, code: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.payload = payload or {}

    def __str__(self) -> str:
        return f"graph_error status={self.status_code} code={self.code}: {self.message}"


def _api_version() -> str:
    version = os.getenv("FB_GRAPH_API_VERSION", "").strip()
    if not version:
        return "v22.0"
    if not version.startswith("v"):
        version = f"v{version}"
    return version


def _api_base() -> str:
    base = "https://graph.facebook.com"
    return f"{base.rstrip('/')}/{_api_version().lstrip('/')}"


def _full_url(path: str) -> str:
    if path.startswith("http://") or path.startswith("https://"):
        return path
    path = path.lstrip("/")
    return f"{_api_base()}/{path}"


def _http() -> httpx.Client:
    return httpx.Client(timeout=float(os.getenv("GRAPH_HTTP_TIMEOUT", "20")), headers={"Accept": "application/json"})


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _edge(url: str) -> str:
    segment = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
    if not segment or (segment.startswith("v") and segment[1:].replace(".", "").isdigit()):
        return "root"
    if segment.isdigit() or segment.startswith("act_"):
        return "node"
    return segment


def generate_app_secret_proof(access_token: str) -> Optional[str]:
    app_secret = os.getenv("FACEBOOK_APP_SECRET")
    if not app_secret:
        return None
    return hmac.new(app_secret.encode("utf-8"), access_token.encode("utf-8"), hashlib.sha256).hexdigest()


def _auth_params(token: Optional[str], params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(params or {})
    if token:
        out["access_token"] = token
        proof = generate_app_secret_proof(token)
        if proof:
            out["appsecret_proof"] = proof
    return out


def _error_from(resp: httpx.Response, payload: Dict[str, Any]) -> GraphAPIError:
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict):
        msg = str(err.get("error_user_msg") or err.get("message") or "Unknown")
        code = err.get("code")
        return GraphAPIError(resp.status_code, msg, int(code) if isinstance(code, int) else None, payload)
    return GraphAPIError(resp.status_code, (resp.text or f"status {resp.status_code}")[:400], None, payload)


def _send(url: str, params: Optional[Dict[str, Any]]) -> Tuple[httpx.Response, Dict[str, Any]]:
    with _http() as client:
        resp = client.get(url, params=params)
    try:
        payload = resp.json()
    except ValueError:
        payload = {}
    GRAPH_REQUESTS.labels(edge=_edge(url), status=str(resp.status_code)).inc()
    return resp, payload if isinstance(payload, dict) else {"data": payload}


def graph_get(path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None, *, attempts: int = GRAPH_MAX_ATTEMPTS) -> Dict[str, Any]:
    """GET a Graph node or edge. 429 and 5xx are retried with backoff."""
    url = _full_url(path)
    query = _auth_params(token, params)
    delays = quota.retry_delays_ms(max(0, attempts - 1))
    for attempt in range(attempts):
        resp, payload = _send(url, query)
        if resp.status_code < 400 and "error" not in payload:
            return payload
        retryable = resp.status_code == 429 or resp.status_code >= 500
        if retryable and attempt < len(delays):
            logger.warning("graph_retry", extra={"path": path, "status": resp.status_code, "attempt": attempt + 1})
            _sleep(delays[attempt] / 1000.0)
            continue
        err = _error_from(resp, payload)
        logger.warning("graph_error", extra={"path": path, "status": resp.status_code, "code": err.code})
        raise err
    raise GraphAPIError(0, "graph_retries_exhausted")


def _with_token(next_url: str, token: Optional[str]) -> str:
    if not token or "access_token=" in next_url:
        return next_url
    sep = "&" if "?" in next_url else "?"
    return f"{next_url}{sep}access_token={token}"


def fetch_paginated_with_error(path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Collect ``data`` across ``paging.next`` links.

    Stops on the first failed page and returns what was gathered together
    with that page's ``error`` object (None when every page succeeded).
    """
    out: List[Dict[str, Any]] = []
    url: Optional[str] = _full_url(path)
    query: Optional[Dict[str, Any]] = _auth_params(token, params)
    while url:
        try:
            resp, payload = _send(url, query)
        except httpx.HTTPError as exc:
            logger.warning("graph_page_network_error", extra={"path": path, "error": str(exc)[:200]})
            return out, {"message": str(exc)[:200], "kind": "network"}
        if resp.status_code >= 400 or "error" in payload:
            err = payload.get("error")
            logger.warning("graph_page_failed", extra={"path": path, "status": resp.status_code})
            return out, err if isinstance(err, dict) else {"message": f"status {resp.status_code}", "status_code": resp.status_code}
        out.extend(payload.get("data") or [])
        nxt = (payload.get("paging") or {}).get("next")
        url = _with_token(nxt, token) if isinstance(nxt, str) and nxt else None
        query = None
    return out, None


def fetch_paginated(path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Lenient pagination: a failed page ends the walk quietly."""
    out, _ = fetch_paginated_with_error(path, token, params)
    return out


def fetch_all_pages_strict(path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Like fetch_paginated, but any failed page raises GraphAPIError."""
    out: List[Dict[str, Any]] = []
    url: Optional[str] = _full_url(path)
    query: Optional[Dict[str, Any]] = _auth_params(token, params)
    while url:
        resp, payload = _send(url, query)
        if resp.status_code >= 400 or "error" in payload:
            raise _error_from(resp, payload)
        out.extend(payload.get("data") or [])
        nxt = (payload.get("paging") or {}).get("next")
        url = _with_token(nxt, token) if isinstance(nxt, str) and nxt else None
        query = None
    return out


def fetch_page_with_retries(url: str, params: Optional[Dict[str, Any]] = None, attempts: int = 3, delay_ms: int = 800) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """One page of an edge; 429/5xx (including error bodies) retried at a fixed delay."""
    for attempt in range(1, attempts + 1):
        resp, payload = _send(url, params)
        failed = resp.status_code >= 400 or "error" in payload
        if not failed:
            nxt = (payload.get("paging") or {}).get("next")
            return list(payload.get("data") or []), nxt if isinstance(nxt, str) and nxt else None
        if attempt < attempts and (resp.status_code >= 500 or resp.status_code == 429):
            _sleep(delay_ms / 1000.0)
            continue
        raise _error_from(resp, payload)
    raise GraphAPIError(0, "graph_retries_exhausted")


def fetch_all_pages_retrying(path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None, attempts: int = 3, delay_ms: int = 800) -> List[Dict[str, Any]]:
    """Walk every page, retrying each one; a page that still fails ends the walk."""
    out: List[Dict[str, Any]] = []
    url: Optional[str] = _full_url(path)
    query: Optional[Dict[str, Any]] = _auth_params(token, params)
    while url:
        try:
            data, nxt = fetch_page_with_retries(url, query, attempts=attempts, delay_ms=delay_ms)
        except (GraphAPIError, httpx.HTTPError) as exc:
            logger.warning("graph_page_fetch_error", extra={"path": path, "error": str(exc)[:200]})
            break
        out.extend(data)
        url = _with_token(nxt, token) if nxt else None
        query = None
    return out


def probe(path: str, token: str, fields: str) -> bool:
    """Single cheap GET used to check that a token can see a node."""
    resp, payload = _send(_full_url(path), _auth_params(token, {"fields": fields}))
    return resp.status_code < 400 and "error" not in payload


def exchange_for_long_lived_token(short_lived_token: str) -> Tuple[str, int]:
    app_id = os.getenv("FACEBOOK_APP_ID")
    app_secret = os.getenv("FACEBOOK_APP_SECRET")
    if not app_id or not app_secret:
        raise GraphAPIError(0, "FACEBOOK_APP_ID and FACEBOOK_APP_SECRET are required for token exchange")
    params = {
        "grant_type": "fb_exchange_token",
        "client_id": app_id,
        "client_secret": app_secret,
        "fb_exchange_token": short_lived_token,
    }
    resp, payload = _send(_full_url("oauth/access_token"), params)
    if resp.status_code >= 400 or not payload.get("access_token"):
        err = payload.get("error") or {}
        raise GraphAPIError(resp.status_code, str(err.get("message") or f"Token exchange failed: {resp.status_code}"), payload=payload)
    expires = payload.get("expires_in")
    return str(payload["access_token"]), int(expires) if isinstance(expires, int) else LONG_LIVED_EXPIRES


def is_permission_error(err: Any) -> bool:
    if isinstance(err, GraphAPIError):
        code, message = err.code, err.message
    elif isinstance(err, dict):
        code, message = err.get("code"), str(err.get("message") or "")
    else:
        code, message = None, str(err or "")
    if code in (10, 200):
        return True
    lowered = message.lower()
    return "permission" in lowered or "business_management" in lowered
