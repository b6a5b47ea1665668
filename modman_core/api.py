"""HTTP client for the remote mod registry."""

from dataclasses import dataclass
from typing import Any

import requests

from .errors import NetworkError, ParseError
from .state import DEFAULT_TIMEOUT

USER_AGENT = "modman-core/0.1.0"


@dataclass
class RegistryResponse:
    """Result of a registry fetch; ``document`` is None when not modified."""

    document: dict[str, Any] | None
    etag: str
    not_modified: bool = False


class RegistryClient:
    """Client for the registry document and mod downloads."""

    def __init__(
        self,
        registry_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        if not registry_url:
            raise NetworkError(
                "No registry URL configured. Set MODMAN_REGISTRY_URL or pass --registry-url."
            )
        self.registry_url = registry_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def _handle_response(self, response: requests.Response) -> dict[str, Any]:
        """Handle registry response and raise appropriate errors."""
        if response.status_code == 404:
            raise NetworkError(f"Registry not found: {response.url}")
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise NetworkError(f"Registry request failed: {e}")

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"Registry document is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise ParseError("Registry document must be a JSON object")
        return data

    def fetch_registry(self, etag: str = "") -> RegistryResponse:
        """
        Fetch the registry document.

        Sends If-None-Match when an ETag from a previous fetch is known, and
        reports not_modified on 304 so callers can keep their snapshot.
        """
        headers = {"If-None-Match": etag} if etag else {}
        try:
            response = self.session.get(self.registry_url, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkError(f"Timed out fetching registry after {self.timeout}s: {e}")
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch registry: {e}")

        if response.status_code == 304:
            return RegistryResponse(document=None, etag=etag, not_modified=True)

        data = self._handle_response(response)
        return RegistryResponse(document=data, etag=response.headers.get("ETag", ""))
