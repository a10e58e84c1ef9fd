import logging

import requests

from homies_errors import StorageError

logger = logging.getLogger(__name__)


class BlobStore:
    """Secondary object store reached over HTTP (PUT/GET on ``{base_url}/{key}``)."""

    def __init__(self, base_url="", token="", timeout=10):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout

    @property
    def enabled(self):
        return bool(self.base_url)

    def _url(self, key):
        return f"{self.base_url}/{key.lstrip('/')}"

    def _headers(self):
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def write_blob(self, key, data):
        if not self.enabled:
            raise StorageError("secondary store is not configured")
        headers = self._headers()
        headers["Content-Type"] = "application/octet-stream"
        try:
            r = requests.put(self._url(key), data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageError(f"write_blob({key}) failed: {e}") from e
        if r.status_code >= 300:
            raise StorageError(f"write_blob({key}) returned status {r.status_code}")
        logger.debug("Wrote %d bytes to secondary store key %s", len(data), key)

    def read_blob(self, key):
        if not self.enabled:
            raise StorageError("secondary store is not configured")
        try:
            r = requests.get(self._url(key), headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageError(f"read_blob({key}) failed: {e}") from e
        if r.status_code != 200:
            raise StorageError(f"read_blob({key}) returned status {r.status_code}")
        return r.content
