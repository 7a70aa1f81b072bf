import logging
from typing import Any, Dict, Optional

import httpx

from .errors import TransientLookupError
from .poller import Found, NotFound, PollResult, detection_ratio
from .util import iso_utc


logger = logging.getLogger("dende.virustotal")

VT_API = "https://www.virustotal.com/api/v3"
GUI_URL = "https://www.virustotal.com/gui/file/{}"


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_report(file_hash: str, payload: Any) -> PollResult:
    """Map a v3 file report body to a PollResult.

    Fields of the wrong shape fall back to their defaults.
    """
    if not isinstance(payload, dict) or payload.get("error"):
        return NotFound()
    data = payload.get("data")
    if not isinstance(data, dict):
        return NotFound()
    attrs = _mapping(data.get("attributes"))

    names = attrs.get("names")
    names = names if isinstance(names, list) else []
    filename = attrs.get("meaningful_name") or (names[0] if names else None) or "unknown"
    description = (
        _mapping(attrs.get("signature_info")).get("description")
        or _mapping(attrs.get("popular_threat_classification")).get("suggested_threat_label")
        or "unknown"
    )
    first_seen = iso_utc(attrs.get("first_submission_date")) or iso_utc(attrs.get("creation_date")) or "unknown"
    malicious, _total, ratio = detection_ratio(_mapping(attrs.get("last_analysis_stats")))
    try:
        reputation = int(attrs.get("reputation") or 0)
    except (TypeError, ValueError):
        reputation = 0
    return Found(
        filename=str(filename),
        description=str(description),
        url=GUI_URL.format(file_hash),
        first_seen=first_seen,
        reputation=reputation,
        ratio=ratio,
        malicious=malicious,
    )


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("code")
    return None


class VirusTotalClient:
    """Reputation lookups against the VirusTotal v3 files endpoint.

    Not-published hashes come back as NotFound; service or transport trouble
    raises TransientLookupError.
    """

    def __init__(self, api_key: str, client: Optional[httpx.AsyncClient] = None, base_url: str = VT_API, timeout: float = 30.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def lookup(self, file_hash: str) -> PollResult:
        logger.debug("checking if hash %r is in the VirusTotal database", file_hash)
        try:
            resp = await self._client.get(
                f"{self.base_url}/files/{file_hash}",
                headers={"x-apikey": self.api_key, "accept": "application/json"},
            )
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
            raise TransientLookupError(f"{type(e).__name__}: {e}") from e

        if resp.status_code == 404 or _error_code(resp) == "NotFoundError":
            logger.info("%s: not found in VirusTotal database", file_hash)
            return NotFound()
        if not resp.is_success:
            raise TransientLookupError(f"HTTP {resp.status_code} ({_error_code(resp) or 'no error code'})")
        try:
            payload = resp.json()
        except ValueError as e:
            raise TransientLookupError(f"undecodable response body: {e}") from e
        try:
            return parse_report(file_hash, payload)
        except (TypeError, ValueError, AttributeError, KeyError, IndexError) as e:
            raise TransientLookupError(f"malformed report for {file_hash}: {type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
