"""Ingestion API client used to re-emit changes a consumer can no longer read."""

import abc
import logging
from typing import Optional

import requests

import config

logger = logging.getLogger(__name__)


class ResyncError(Exception):
    """Exception raised when the ingestion service cannot resync a partition."""
    pass


class AbstractResyncClient(abc.ABC):

    @abc.abstractmethod
    def resync(self, partition: str, after_position: str) -> int:
        """
        Ask the event store to re-emit change notifications for a partition.

        Covers every event emitted at or after ``after_position`` and any
        event never emitted.

        Returns:
            Number of notifications re-emitted

        Raises:
            ResyncError: If the request fails
        """
        raise NotImplementedError


class HTTPResyncClient(AbstractResyncClient):
    """Calls the ingestion API resync endpoint over HTTP."""

    def __init__(self, base_url: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url or config.get_api_url()
        self.timeout = timeout

    def resync(self, partition: str, after_position: str) -> int:
        url = f"{self.base_url}/api/v1/changes/{partition}/resync"

        logger.info(f"Requesting resync of {partition} after position {after_position}")

        try:
            response = requests.post(url, params={"after_position": after_position}, timeout=self.timeout)
            response.raise_for_status()
            emitted = response.json()["emitted"]
            logger.info(f"Ingestion service re-emitted {emitted} changes for {partition}")
            return emitted

        except requests.exceptions.RequestException as e:
            logger.error(f"Resync of {partition} failed: {e}")
            raise ResyncError(f"Resync of {partition} failed: {e}") from e
