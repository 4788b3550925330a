"""
External Service Ports

Interfaces for the two collaborators the back-office consumes but does not
implement: an image/asset host for borrower photos and ID proofs, and a
spreadsheet service that receives the daily collection summary.

Each port has an httpx-backed client and an in-process implementation used
in development mode and tests.
"""

import base64
import binascii
import hashlib
import httpx
import logging
import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from .errors import InternalError, ValidationError

logger = logging.getLogger("microfinance.integrations")


def sheet_name_for(day: date) -> str:
    """Spreadsheet tab name for a day, e.g. Daily_2024_01_08"""
    return f"Daily_{day.strftime('%Y_%m_%d')}"


def decode_upload(data: str) -> bytes:
    """
    Decode a base64 upload, accepting data URLs (data:image/png;base64,...)

    Raises:
        ValidationError: If the payload is not valid base64
    """
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Upload is not valid base64 data")


class AssetStore(ABC):
    """Stores uploaded images and returns a public URL"""

    @abstractmethod
    def upload(self, data: bytes, folder: str) -> str:
        pass

    def close(self) -> None:
        pass


class HttpAssetStore(AssetStore):
    """Asset host reached over HTTP (multipart upload, JSON response with 'url')"""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout)

    def upload(self, data: bytes, folder: str) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.post(
                f"{self.base_url}/upload",
                files={"file": ("upload", data)},
                data={"folder": folder},
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Asset store connection failed: {e}")
            raise InternalError("Image upload failed")

        if response.status_code not in (200, 201):
            logger.warning(f"Asset store returned {response.status_code}: {response.text}")
            raise InternalError("Image upload failed")

        url = response.json().get("url")
        if not url:
            raise InternalError("Image upload failed")
        return url

    def close(self) -> None:
        self._client.close()


class InMemoryAssetStore(AssetStore):
    """Keeps uploads in memory, addressed by content hash"""

    def __init__(self, base_url: str = "memory://assets"):
        self.base_url = base_url
        self.assets: Dict[str, bytes] = {}

    def upload(self, data: bytes, folder: str) -> str:
        digest = hashlib.sha256(data).hexdigest()[:16]
        url = f"{self.base_url}/{folder}/{digest}"
        self.assets[url] = data
        return url


class BackupService(ABC):
    """Receives the daily collection summary"""

    @abstractmethod
    def backup_daily(self, summary: Dict[str, Any]) -> bool:
        """Push a summary; True on success"""
        pass

    @abstractmethod
    def backup_status(self, day: date) -> Dict[str, Any]:
        pass

    def close(self) -> None:
        pass


class WebhookBackupService(BackupService):
    """Posts summaries to a spreadsheet webhook"""

    def __init__(self, webhook_url: str, api_key: Optional[str] = None, timeout: float = 10.0):
        self.webhook_url = webhook_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def backup_daily(self, summary: Dict[str, Any]) -> bool:
        day = date.fromisoformat(summary["date"])
        payload = {"sheet": sheet_name_for(day), "summary": summary}
        try:
            response = self._client.post(self.webhook_url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Backup webhook connection failed: {e}")
            return False

        if response.status_code not in (200, 201, 202):
            logger.warning(f"Backup webhook returned {response.status_code}: {response.text}")
            return False

        logger.info(f"Daily backup pushed to sheet {payload['sheet']}")
        return True

    def backup_status(self, day: date) -> Dict[str, Any]:
        sheet = sheet_name_for(day)
        try:
            response = self._client.get(
                f"{self.webhook_url}/status",
                params={"sheet": sheet},
                headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Backup status check failed: {e}")
            return {"date": day.isoformat(), "sheet": sheet, "backed_up": False, "error": str(e)}

        if response.status_code != 200:
            return {"date": day.isoformat(), "sheet": sheet, "backed_up": False}

        data = response.json()
        return {
            "date": day.isoformat(),
            "sheet": sheet,
            "backed_up": bool(data.get("exists", data.get("backed_up", False))),
            "rows": data.get("rows"),
        }

    def close(self) -> None:
        self._client.close()


class LoggingBackupService(BackupService):
    """Development mode: logs the summary and remembers which days were pushed"""

    def __init__(self):
        self._lock = threading.Lock()
        self._backups: Dict[str, Dict[str, Any]] = {}

    def backup_daily(self, summary: Dict[str, Any]) -> bool:
        logger.info(
            f"Daily backup (development mode) for {summary['date']}: "
            f"{summary['total_payments']} payments, {summary['total_collected']} collected"
        )
        with self._lock:
            self._backups[summary["date"]] = {
                "summary": summary,
                "backed_up_at": datetime.now(timezone.utc).isoformat(),
            }
        return True

    def backup_status(self, day: date) -> Dict[str, Any]:
        with self._lock:
            entry = self._backups.get(day.isoformat())
        return {
            "date": day.isoformat(),
            "sheet": sheet_name_for(day),
            "backed_up": entry is not None,
            "rows": len(entry["summary"]["payments"]) if entry else None,
        }
