"""
Content-addressed blob stores.

- InMemoryBlobStore: SHA-256 addressed dict with pin set and garbage
  collection of unpinned blobs (thread-safe)
- IPFSBlobStore: Kubo HTTP RPC API (``/api/v0/add``, ``cat``, ``block/stat``,
  ``pin/add``, ``pin/rm``) via requests

Usage:
    store = IPFSBlobStore("http://127.0.0.1:5001", timeout=5.0)
    cid = store.put(b"ciphertext")
    store.pin(cid)
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

import requests

from ..errors import ContentNotFound, InternalError, TransientError

logger = logging.getLogger(__name__)

# Kubo answers 500 for missing content; these fragments identify that case
NOT_FOUND_MARKERS = ("not found", "could not find", "no link named")


class BlobStore(ABC):
    """Storage contract used by ContentStore."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store bytes and return their content address."""

    @abstractmethod
    def get(self, address: str) -> Optional[bytes]:
        """Fetch bytes, or None if the address is unknown."""

    @abstractmethod
    def exists(self, address: str) -> bool:
        pass

    @abstractmethod
    def pin(self, address: str) -> None:
        """Mark an address for retention."""

    @abstractmethod
    def unpin(self, address: str) -> None:
        """Release retention; the blob may be collected afterwards."""


class InMemoryBlobStore(BlobStore):

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._pinned: Set[str] = set()
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        address = hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[address] = bytes(data)
        return address

    def get(self, address: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(address)

    def exists(self, address: str) -> bool:
        with self._lock:
            return address in self._blobs

    def pin(self, address: str) -> None:
        with self._lock:
            if address not in self._blobs:
                raise ContentNotFound(f"Content {address} not found", details={"address": address})
            self._pinned.add(address)

    def unpin(self, address: str) -> None:
        with self._lock:
            self._pinned.discard(address)

    def is_pinned(self, address: str) -> bool:
        with self._lock:
            return address in self._pinned

    def collect_garbage(self) -> int:
        """Drop every unpinned blob. Returns the number removed."""
        with self._lock:
            unpinned = [a for a in self._blobs if a not in self._pinned]
            for address in unpinned:
                del self._blobs[address]
        if unpinned:
            logger.info(f"Collected {len(unpinned)} unpinned blobs")
        return len(unpinned)


class IPFSBlobStore(BlobStore):
    """
    Blob store backed by a Kubo node's HTTP RPC API.

    Args:
        api_url: Base URL, e.g. http://127.0.0.1:5001
        timeout: Per-request timeout in seconds
        session: Optional requests.Session (connection pooling, tests)
    """

    def __init__(self, api_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, command: str, params: Optional[dict] = None, files: Optional[dict] = None) -> requests.Response:
        url = f"{self.api_url}/api/v0/{command}"
        try:
            return self.session.post(url, params=params, files=files, timeout=self.timeout)
        except requests.Timeout:
            raise TransientError(f"IPFS {command} timed out after {self.timeout}s", details={"command": command})
        except requests.ConnectionError as e:
            raise TransientError(f"IPFS node unreachable: {e}", details={"command": command})

    @staticmethod
    def _is_not_found(response: requests.Response) -> bool:
        if response.status_code != 500:
            return False
        text = (response.text or "").lower()
        return any(marker in text for marker in NOT_FOUND_MARKERS)

    def _check(self, response: requests.Response, command: str) -> None:
        if response.status_code == 500:
            raise TransientError(
                f"IPFS {command} failed with 500: {response.text[:200]}",
                details={"command": command, "status": 500},
            )
        if response.status_code in (502, 503, 504):
            raise TransientError(f"IPFS {command} failed with {response.status_code}")
        if response.status_code != 200:
            raise InternalError(
                f"IPFS {command} failed with {response.status_code}: {response.text[:200]}",
                details={"command": command, "status": response.status_code},
            )

    def put(self, data: bytes) -> str:
        response = self._post("add", params={"pin": "false", "cid-version": "1"}, files={"file": data})
        self._check(response, "add")
        return response.json()["Hash"]

    def get(self, address: str) -> Optional[bytes]:
        response = self._post("cat", params={"arg": address, "offline": "true"})
        if response.status_code == 200:
            return response.content
        if self._is_not_found(response):
            logger.debug(f"IPFS cat {address} not found: {response.text[:200]}")
            return None
        self._check(response, "cat")
        return None

    def exists(self, address: str) -> bool:
        response = self._post("block/stat", params={"arg": address, "offline": "true"})
        return response.status_code == 200

    def pin(self, address: str) -> None:
        response = self._post("pin/add", params={"arg": address, "offline": "true"})
        if self._is_not_found(response):
            raise ContentNotFound(f"Content {address} not found", details={"address": address})
        self._check(response, "pin/add")

    def unpin(self, address: str) -> None:
        response = self._post("pin/rm", params={"arg": address})
        if response.status_code == 500 and "not pinned" in response.text:
            return
        self._check(response, "pin/rm")
