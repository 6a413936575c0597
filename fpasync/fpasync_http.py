import asyncio
from typing import Optional, Dict, Any

import httpx

FHIR_JSON = "application/fhir+json"


def normalize_response_mode(cfg: dict) -> Optional[str]:
    """
    Returns 'lite' | 'none' | None based on cfg['response-mode'].
    """
    mode = cfg.get('response-mode')
    if mode is None:
        return None
    if isinstance(mode, str):
        s = mode.strip().strip('`').lower()
        return s if s in ('lite', 'none') else None
    return None


class HTTPStatusError(RuntimeError):
    """Non-2xx response in strict mode; keeps the decoded body for diagnostics."""

    def __init__(self, status: int, url: str, value: Any, preview: str):
        super().__init__(f"HTTP {status} for {url}: {preview}")
        self.status = status
        self.url = url
        self.value = value


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, data: Optional[str] = None) -> Any:
    """
    Core HTTP helper.

    response-mode:
      - `lite`  -> return (status: int, value: Any, headers: dict[str,str]) without raising on non-2xx
      - `none`/unset -> return the decoded body on 2xx; raise HTTPStatusError on non-2xx

    Transport errors are retried `retries` times with exponential backoff;
    HTTP status codes are never retried.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))
    headers.setdefault("Accept", FHIR_JSON)

    mode = normalize_response_mode(cfg)
    body = (data.encode('utf-8') if isinstance(data, str) else data) if data is not None else None
    if body is not None:
        headers.setdefault("Content-Type", f"{FHIR_JSON}; charset=utf-8")

    from fpasync.fpasync_serialize import deserialize

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for attempt in range(retries + 1):
            try:
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    params=params,
                    content=body,
                )
            except httpx.TransportError:
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise
            ct = resp.headers.get("Content-Type")
            value = deserialize(resp.content, content_type=ct) if resp.content else None
            if mode == 'lite':
                # Lower-case header keys for consistent lookups
                headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                return (int(resp.status_code), value, headers_map)
            if 200 <= resp.status_code < 300:
                return value
            preview = (resp.text or "")[:200]
            raise HTTPStatusError(int(resp.status_code), url, value, preview)


async def http_get(url: str, config: Optional[Dict] = None) -> Any:
    return await http_request('GET', url, config=config)


async def http_post(url: str, data: str, config: Optional[Dict] = None) -> Any:
    return await http_request('POST', url, config=config, data=data)
