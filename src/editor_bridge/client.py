import json
import logging
import time
from dataclasses import dataclass, field

import requests

logger = logging.getLogger(__name__)


class BridgeClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class ConvertedDocument:
    data: bytes
    filehash: str
    cache: str
    timing: dict[str, object] = field(default_factory=dict)


class BridgeClient:
    """Thin requests wrapper around the bridge's convert/save endpoints."""

    def __init__(self, base_url: str, *, session: requests.Session | None = None, timeout: float = 300) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout

    def _request(self, method: str, path: str, **kwargs: object) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise BridgeClientError(f"Failed to connect to {url}: {e}") from e
        if resp.status_code >= 400:
            raise BridgeClientError(
                f"{method} {path} failed: {resp.status_code}", status_code=resp.status_code, body=resp.text
            )
        return resp

    def healthcheck(self, *, attempts: int = 1, backoff: float = 0.5) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                return self._request("GET", "/healthcheck").text.strip() == "true"
            except BridgeClientError as e:
                if attempt == attempts:
                    logger.warning("Bridge not reachable at %s: %s", self.base_url, e)
                    return False
                time.sleep(backoff)
                backoff *= 1.5
        return False

    def convert(self, filepath: str) -> ConvertedDocument:
        resp = self._request("GET", "/api/convert", params={"filepath": filepath})
        filehash = resp.headers.get("X-File-Hash", "")
        if not filehash:
            raise BridgeClientError("convert response is missing X-File-Hash", resp.status_code)
        try:
            timing = json.loads(resp.headers.get("X-Timing", "{}"))
        except json.JSONDecodeError:
            timing = {}
        return ConvertedDocument(
            data=resp.content, filehash=filehash, cache=resp.headers.get("X-Cache", ""), timing=timing
        )

    def save(self, filepath: str, payload: bytes, filehash: str | None = None) -> dict[str, object]:
        params = {"filepath": filepath}
        if filehash:
            params["filehash"] = filehash
        resp = self._request(
            "POST",
            "/api/save",
            params=params,
            data=payload,
            headers={"Content-Type": "application/octet-stream"},
        )
        return resp.json()

    def media_list(self, filehash: str) -> list[str]:
        return list(self._request("GET", f"/api/media-list/{filehash}").json())

    def round_trip(self, source: str, destination: str) -> dict[str, object]:
        """Convert ``source`` and save the unchanged binary to ``destination``."""
        doc = self.convert(source)
        result = self.save(destination, doc.data, doc.filehash)
        if not result.get("success"):
            raise BridgeClientError(f"save reported failure: {result}")
        return result
