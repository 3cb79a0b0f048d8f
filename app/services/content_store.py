# app/services/content_store.py
"""
Byte blob storage for encrypted resources and previews.

SwarmContentStore keeps blobs on a Swarm Bee node (``/bzz``).
InMemoryContentStore is a sha256-addressed dict for local development
and tests.
"""
import hashlib
import logging
import threading
from typing import Dict, Optional, Protocol
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)

# Erasure coding level used for uploads
DEFAULT_REDUNDANCY_LEVEL = 2


class ContentStore(Protocol):

    def get(self, locator: str) -> bytes:
        ...

    def put(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        ...


class SwarmContentStore:

    def __init__(
        self,
        bee_api_url: str,
        postage_batch_id: Optional[str] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.bee_api_url = str(bee_api_url)
        self.postage_batch_id = postage_batch_id
        self.timeout = timeout
        self._session = session or requests.Session()

    def put(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Upload a blob to Swarm.

        Returns:
            The Swarm reference hash of the uploaded data

        Raises:
            RequestException: If the HTTP request to the Swarm API fails
            ValueError: If no postage batch is configured or the response lacks a reference
        """
        if not self.postage_batch_id:
            raise ValueError("SWARM_POSTAGE_BATCH_ID not configured")

        api_url = urljoin(self.bee_api_url, "bzz")
        headers = {
            "Swarm-Postage-Batch-Id": self.postage_batch_id.lower(),
            "Content-Type": content_type,
            "Swarm-Redundancy-Level": str(DEFAULT_REDUNDANCY_LEVEL)
        }

        try:
            response = self._session.post(api_url, data=data, headers=headers, timeout=self.timeout)
            response.raise_for_status()

            reference = response.json().get("reference")
            if not reference:
                raise ValueError("API Response missing 'reference' from upload")

            logger.info(f"Uploaded {len(data)} bytes to Swarm with reference: {reference}")
            return reference

        except requests.exceptions.RequestException as e:
            logger.error(f"Error uploading data to Swarm API ({api_url}): {e}")
            raise

    def get(self, locator: str) -> bytes:
        """
        Download a blob from Swarm.

        Raises:
            RequestException: If the HTTP request to the Swarm API fails
            FileNotFoundError: If the data is not found (404)
        """
        api_url = urljoin(self.bee_api_url, f"bzz/{locator.lower()}")

        try:
            response = self._session.get(api_url, timeout=self.timeout)

            if response.status_code == 404:
                raise FileNotFoundError(f"Data not found on Swarm at reference {locator}")

            response.raise_for_status()

            logger.info(f"Downloaded {len(response.content)} bytes from Swarm reference: {locator}")
            return response.content

        except requests.exceptions.RequestException as e:
            logger.error(f"Error downloading data from Swarm API ({api_url}): {e}")
            raise


class InMemoryContentStore:

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        locator = hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[locator] = bytes(data)
        return locator

    def get(self, locator: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[locator]
            except KeyError:
                raise FileNotFoundError(f"No blob stored at {locator}") from None
