"""Ingestion API Client - Adapter for fetching stored events."""

import abc
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from requests.utils import quote

import config
from shared.domain.errors import TerminalProcessingError, TransientProcessingError

logger = logging.getLogger(__name__)


def _parse_stored_event(data: Dict[str, Any]) -> Dict[str, Any]:
    stored = dict(data)
    stored["received_at"] = datetime.fromisoformat(data["received_at"])
    return stored


class AbstractEventClient(abc.ABC):
    """Abstract base class for event store client implementations."""

    @abc.abstractmethod
    def get_event(self, event_key: str) -> Dict[str, Any]:
        """
        Fetch a stored event by its key.

        Returns:
            Dict with event_key, partition, correlation_id, event_type,
            payload, received_at (datetime) and sequence_hint

        Raises:
            TransientProcessingError: The event store could not be reached
            TerminalProcessingError: The event does not exist
        """
        raise NotImplementedError

    @abc.abstractmethod
    def list_events_for_correlation(self, correlation_id: str) -> List[Dict[str, Any]]:
        """All stored events for a correlation id, oldest first."""
        raise NotImplementedError


class HTTPEventClient(AbstractEventClient):
    """HTTP-based client for the ingestion service API."""

    def __init__(self, base_url: Optional[str] = None, timeout: int = 10):
        self.base_url = base_url or config.get_api_url()
        self.timeout = timeout

    def get_event(self, event_key: str) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v1/events/{quote(event_key, safe='/')}"
        logger.debug(f"Fetching event {event_key} from {url}")
        return _parse_stored_event(self._get(url, f"event {event_key}"))

    def list_events_for_correlation(self, correlation_id: str) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/api/v1/correlations/{quote(correlation_id, safe='')}/events"
        data = self._get(url, f"correlation {correlation_id}")
        return [_parse_stored_event(e) for e in data["events"]]

    def _get(self, url: str, what: str) -> Dict[str, Any]:
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code
            # 429 and 5xx may succeed later; other client errors never will
            if 400 <= status < 500 and status != 429:
                logger.error(f"Ingestion service rejected request for {what}: {status}")
                raise TerminalProcessingError(f"Cannot fetch {what}: HTTP {status}") from e
            logger.warning(f"Ingestion service error for {what}: {status}")
            raise TransientProcessingError(f"Ingestion service error for {what}: HTTP {status}") from e

        except requests.exceptions.RequestException as e:
            logger.warning(f"Network error fetching {what}: {e}")
            raise TransientProcessingError(f"Network error fetching {what}: {e}") from e
