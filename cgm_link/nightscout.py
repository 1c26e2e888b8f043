"""
Nightscout upload of accepted glucose readings.

Implements the reading sink contract: readings are POSTed to the
Nightscout entries API. Timestamps already uploaded are skipped, so
overlapping batches are sent once; the record of uploaded timestamps
only spans the retention window. Failures are logged and counted;
they never propagate into the session.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

import requests

from .config import Settings
from .constants import (
    DEFAULT_NIGHTSCOUT_TIMEOUT,
    DEFAULT_RETENTION_MINUTES,
    MS_PER_MINUTE,
    NIGHTSCOUT_DEVICE_NAME,
    NIGHTSCOUT_ENTRIES_PATH,
)
from .exceptions import UploadError
from .models import GlucoseReading, SensorInfo
from .store import ReadingSink

logger = logging.getLogger(__name__)


@dataclass
class UploadStatistics:
    """Statistics for upload monitoring."""
    total_uploads: int = 0
    successful_uploads: int = 0
    failed_uploads: int = 0
    entries_uploaded: int = 0
    last_error: Optional[str] = None


def hash_api_secret(api_secret: str) -> str:
    """Nightscout expects the SHA-1 hex digest of the secret."""
    return hashlib.sha1(api_secret.encode("utf-8")).hexdigest()


def reading_to_entry(reading: GlucoseReading, device: str = NIGHTSCOUT_DEVICE_NAME) -> Dict[str, Any]:
    """Convert a reading to a Nightscout ``sgv`` entry."""
    date_string = datetime.fromtimestamp(reading.timestamp_ms / 1000, tz=timezone.utc).isoformat()
    return {
        "type": "sgv",
        "sgv": int(round(reading.glucose_mg_dl)),
        "direction": reading.trend.value,
        "date": reading.timestamp_ms,
        "dateString": date_string,
        "device": device,
    }


class NightscoutUploader(ReadingSink):
    """
    Uploads readings to a Nightscout site.

    Args:
        base_url: Site URL without trailing slash
        api_secret: Plain API secret; hashed before sending
        timeout: HTTP timeout in seconds
        session: Optional requests session (for connection reuse and tests)
        retention_ms: Uploaded timestamps older than this behind the newest
            reading are forgotten
    """

    def __init__(
        self,
        base_url: str,
        api_secret: str,
        timeout: int = DEFAULT_NIGHTSCOUT_TIMEOUT,
        session: Optional[requests.Session] = None,
        retention_ms: int = DEFAULT_RETENTION_MINUTES * MS_PER_MINUTE,
    ):
        self.base_url = base_url.rstrip("/")
        self.entries_url = f"{self.base_url}{NIGHTSCOUT_ENTRIES_PATH}"
        self.timeout = timeout
        self.stats = UploadStatistics()
        self._session = session or requests.Session()
        self._session.headers.update({
            "api-secret": hash_api_secret(api_secret),
            "Content-Type": "application/json",
        })
        self.retention_ms = retention_ms
        self._uploaded: Set[int] = set()

        logger.info("Nightscout uploader initialized", extra={"nightscout_url": self.base_url})

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["NightscoutUploader"]:
        """Build an uploader when Nightscout is configured, else None."""
        if not settings.nightscout_url or not settings.nightscout_api_secret:
            return None
        return cls(
            base_url=settings.nightscout_url,
            api_secret=settings.nightscout_api_secret,
            timeout=settings.nightscout_timeout_seconds,
            retention_ms=settings.retention_minutes * MS_PER_MINUTE,
        )

    def insert_readings(self, readings: Sequence[GlucoseReading], source: str) -> int:
        pending = [r for r in readings if r.timestamp_ms not in self._uploaded]
        if not pending:
            return 0

        try:
            self.upload(pending, source)
        except UploadError as e:
            logger.error(e.full_message)
            return 0

        self._uploaded.update(r.timestamp_ms for r in pending)
        self._prune_uploaded()
        return len(pending)

    def _prune_uploaded(self) -> None:
        horizon = max(self._uploaded) - self.retention_ms
        self._uploaded = {ts for ts in self._uploaded if ts >= horizon}

    def record_sensor_change(self, info: SensorInfo) -> None:
        # Treatments are not uploaded; a new sensor restarts the dedupe set
        self._uploaded.clear()

    def upload(self, readings: List[GlucoseReading], source: str = NIGHTSCOUT_DEVICE_NAME) -> None:
        """
        POST readings to the entries API.

        Args:
            readings: Readings to upload
            source: Recorded as the entry's device

        Raises:
            UploadError: If the request fails for any reason
        """
        self.stats.total_uploads += 1
        device = f"{NIGHTSCOUT_DEVICE_NAME}-{source}"
        entries = [reading_to_entry(r, device) for r in readings]

        try:
            response = self._session.post(self.entries_url, json=entries, timeout=self.timeout)
            response.raise_for_status()

        except requests.exceptions.Timeout as e:
            self._record_failure(f"Timeout uploading to {self.entries_url}")
            raise UploadError(self.base_url, "Nightscout upload timed out", original_error=e)

        except requests.exceptions.ConnectionError as e:
            self._record_failure(f"Cannot connect to Nightscout: {e}")
            raise UploadError(self.base_url, "Cannot connect to Nightscout", original_error=e)

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            self._record_failure(f"HTTP error uploading entries: {status}")
            raise UploadError(self.base_url, f"Nightscout rejected upload (HTTP {status})", original_error=e)

        except requests.exceptions.RequestException as e:
            self._record_failure(f"Failed to upload entries: {e}")
            raise UploadError(self.base_url, original_error=e)

        self.stats.successful_uploads += 1
        self.stats.entries_uploaded += len(entries)
        logger.info("Uploaded entries to Nightscout", extra={"count": len(entries)})

    def _record_failure(self, error_msg: str) -> None:
        self.stats.failed_uploads += 1
        self.stats.last_error = error_msg
