"""
Datasheet backend client — HTTP, retries, save and export.

Talks to the process-datasheet REST API: saves pump calculations, downloads
generated Excel/PDF datasheets and serves as the transport for the
recommendation endpoint. Connection failures and timeouts are retried with
exponential backoff (POSTs only when the connection was never made); HTTP
error responses are not.
"""
from __future__ import annotations

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from core import config
from core.errors import (
    DUPLICATE_DOCUMENT_REMEDIATION,
    ExportError,
    PersistenceError,
    is_duplicate_document,
)
from core.fields import to_api_payload
from core.reference_data import EXPORT_FORMATS, STATUS_ISSUED_FOR_REVIEW, SUBMISSION_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

# Safe to resend after a timeout
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})

_FILENAME = re.compile(r"filename=\"?([^\";]+)\"?", re.IGNORECASE)


@dataclass
class Datasheet:
    """A generated datasheet file."""

    filename: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


def filename_from_disposition(header: Optional[str], fmt: str, now: Optional[datetime] = None) -> str:
    """Filename from a Content-Disposition header, or a timestamped fallback."""
    if header:
        match = _FILENAME.search(header)
        if match:
            return match.group(1).strip()
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S")
    return f"Pump_Datasheet_{stamp}.{fmt}"


def generate_document_no() -> str:
    """Unique document number for an implicit save before export."""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"DOC-{int(time.time() * 1000)}-{suffix}"


def _response_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class BackendClient:
    """Session-backed client for the datasheet REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.API_TIMEOUT
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        token = token if token is not None else config.API_TOKEN
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request, retrying transport failures.

        Idempotent methods are retried on any connection error or timeout.
        Others only when the connection was never made: a read timeout on
        a POST may follow a committed write.
        """
        kwargs.setdefault("timeout", self.timeout)
        if method.upper() in IDEMPOTENT_METHODS:
            return self._send(method, self.url(path), **kwargs)
        return self._send_unsafe(method, self.url(path), **kwargs)

    @retry(
        stop=stop_after_attempt(config.HTTP_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True,
    )
    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        return self.session.request(method, url, **kwargs)

    # ConnectTimeout is a ConnectionError; ReadTimeout is not
    @retry(
        stop=stop_after_attempt(config.HTTP_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type(requests.ConnectionError),
        reraise=True,
    )
    def _send_unsafe(self, method: str, url: str, **kwargs) -> requests.Response:
        return self.session.request(method, url, **kwargs)

    def get_json(self, path: str, params: Optional[dict] = None) -> Any:
        response = self.request("GET", path, params=params)
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # Pump calculations
    # ------------------------------------------------------------------

    def save(self, record: dict[str, Any], status: str, overrides: Optional[dict] = None) -> Any:
        """Persist a record; returns the backend-generated id."""
        if status not in SUBMISSION_STATUSES:
            raise ValueError(f"status must be one of {SUBMISSION_STATUSES}, got '{status}'")

        payload = to_api_payload(record, status=status)
        if overrides:
            payload.update(overrides)

        try:
            response = self.request("POST", config.PUMP_CALCULATIONS_PATH, json=payload)
        except requests.RequestException as e:
            logger.error(f"[backend] Save failed: {e}")
            raise PersistenceError(str(e) or "An unexpected error occurred") from e

        body = _response_body(response)
        if response.status_code >= 400:
            error = PersistenceError.from_response(response.status_code, body)
            logger.warning(f"[backend] Save rejected ({response.status_code}): {error.message}")
            raise error

        calc_id = None
        if isinstance(body, dict):
            calc_id = body.get("id")
            if calc_id is None and isinstance(body.get("data"), dict):
                calc_id = body["data"].get("id")
        if calc_id is None:
            raise PersistenceError("Failed to get pump calculation ID from server response")

        logger.info(f"[backend] Pump calculation saved with ID {calc_id} ({status})")
        return calc_id

    def download_datasheet(self, calc_id: Any, fmt: str) -> Datasheet:
        """Download the generated Excel (`xlsx`) or PDF (`pdf`) datasheet."""
        spec = EXPORT_FORMATS.get(fmt)
        if spec is None:
            raise ValueError(f"Unsupported datasheet format '{fmt}'")

        path = f"{config.PUMP_CALCULATIONS_PATH}{calc_id}/{spec['action']}/"
        try:
            response = self.request("GET", path, headers={"Accept": "*/*"})
        except requests.RequestException as e:
            logger.error(f"[backend] {fmt} download failed: {e}")
            raise ExportError(fmt, str(e)) from e

        if response.status_code >= 400:
            body = _response_body(response)
            remediation = None
            if response.status_code == 400 and isinstance(body, dict) and body.get("document_no"):
                remediation = DUPLICATE_DOCUMENT_REMEDIATION.format(fmt=fmt.upper())
            logger.error(f"[backend] {fmt} generation failed ({response.status_code}): {body}")
            raise ExportError(fmt, f"Datasheet generation failed (HTTP {response.status_code})", remediation)

        filename = filename_from_disposition(response.headers.get("Content-Disposition"), fmt)
        content_type = response.headers.get("Content-Type") or spec["content_type"]
        logger.info(f"[backend] Downloaded {filename} ({len(response.content)} bytes)")
        return Datasheet(filename=filename, content=response.content, content_type=content_type)

    def export_datasheet(self, record: dict[str, Any], fmt: str, calc_id: Any = None) -> tuple[Any, Datasheet]:
        """Export a datasheet, saving the record first when it has no id yet.

        The implicit save is issued for review under a generated document
        number so it never collides with the user's own submission.
        """
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported datasheet format '{fmt}'")
        if not calc_id:
            try:
                calc_id = self.save(
                    record, STATUS_ISSUED_FOR_REVIEW,
                    overrides={"document_no": generate_document_no()},
                )
            except PersistenceError as e:
                remediation = None
                if is_duplicate_document(e.field_errors):
                    remediation = DUPLICATE_DOCUMENT_REMEDIATION.format(fmt=fmt.upper())
                raise ExportError(fmt, e.message, remediation) from e
        return calc_id, self.download_datasheet(calc_id, fmt)
