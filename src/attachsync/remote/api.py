"""HTTP client for the remote work-item-tracking service.

This module provides:
- WorkItemClient: attachment upload (single-shot and chunked), relation
  listing and patching, and attachment download
- ConnectivityReport: result of the organization URL / token check
- RemoteAttachment / RemoteRelation / DownloadedFile: parsed responses
- URL and header helpers (attachment id extraction, Content-Disposition)
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import partial
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import httpx

from attachsync.core.config import RemoteConfig
from attachsync.core.hashing import ByteRange
from attachsync.remote.transport import (
    RemoteStatusError,
    RetriesExhaustedError,
    Success,
    TransportExecutor,
)

logger = logging.getLogger(__name__)

ATTACHED_FILE_REL = "AttachedFile"
FALLBACK_API_VERSION = "5.0"
# Upload responses that suggest a wrong URL shape or API version
FALLBACK_STATUS_CODES = frozenset({400, 404})

_ATTACHMENT_ID_RE = re.compile(r"attachments/([a-f0-9-]+)(?:[/?#]|$)", re.IGNORECASE)
_FILENAME_STAR_RE = re.compile(r"filename\*\s*=\s*(?:UTF-8|utf-8)''([^;]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r'filename\s*=\s*"?([^";]+)"?', re.IGNORECASE)

# Shown when the connectivity check fails
CONNECTIVITY_CAUSES = (
    "Invalid organization URL",
    "Invalid or expired personal access token",
    "Token lacks the Work Items scope",
    "User account lacks the Basic access level",
    "Remote server unreachable",
)


def extract_attachment_id(url: str) -> str | None:
    """Extract the attachment id from an attachment URL.

    Args:
        url: URL like ".../_apis/wit/attachments/<guid>?fileName=x".

    Returns:
        The id segment, or None when the URL does not point at an attachment.
    """
    match = _ATTACHMENT_ID_RE.search(url)
    return match.group(1) if match else None


def file_name_from_url(url: str) -> str | None:
    """Return the ``fileName`` query parameter of a URL, if present."""
    values = parse_qs(urlparse(url).query).get("fileName")
    return values[0] if values else None


def parse_content_disposition(header: str | None) -> str | None:
    """Extract a file name from a Content-Disposition header.

    The RFC 5987 ``filename*=UTF-8''...`` form is preferred over ``filename=``.
    """
    if not header:
        return None
    match = _FILENAME_STAR_RE.search(header)
    if match:
        return unquote(match.group(1).strip())
    match = _FILENAME_RE.search(header)
    if match:
        return match.group(1).strip()
    return None


@dataclass
class RemoteRelation:
    """A relation entry on a remote work item."""

    rel: str
    url: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteRelation:
        """Create from a work item ``relations`` entry."""
        return cls(
            rel=data.get("rel", ""),
            url=data.get("url", ""),
            attributes=data.get("attributes") or {},
        )


@dataclass
class RemoteAttachment:
    """An attachment blob known to the remote service."""

    attachment_id: str
    url: str
    file_name: str | None = None
    size: int | None = None
    comment: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], file_name: str | None = None) -> RemoteAttachment:
        """Create from an upload response (``{"id": ..., "url": ...}``)."""
        return cls(
            attachment_id=data["id"],
            url=data["url"],
            file_name=file_name or file_name_from_url(data["url"]),
        )

    @classmethod
    def from_relation(cls, relation: RemoteRelation) -> RemoteAttachment | None:
        """Create from an AttachedFile relation, or None if the URL has no id."""
        attachment_id = extract_attachment_id(relation.url)
        if attachment_id is None:
            return None
        attrs = relation.attributes
        size = attrs.get("resourceSize")
        return cls(
            attachment_id=attachment_id,
            url=relation.url,
            file_name=attrs.get("name") or file_name_from_url(relation.url),
            size=int(size) if size is not None else None,
            comment=attrs.get("comment"),
        )


@dataclass
class DownloadedFile:
    """Bytes of a downloaded attachment."""

    content: bytes
    file_name: str | None
    content_type: str | None


@dataclass
class ConnectivityReport:
    """Outcome of checking the organization URL and token."""

    org_url: str
    project: str
    api_version: str
    ok: bool
    status_code: int | None = None
    message: str = ""
    guidance: str = ""
    possible_causes: list[str] = field(default_factory=list)


class WorkItemClient:
    """Async client for the remote attachment and work item endpoints."""

    def __init__(
        self,
        config: RemoteConfig,
        executor: TransportExecutor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Remote service credentials and URL.
            executor: Retry executor (default: 3 retries, 1s base delay).
            transport: Optional httpx transport (used by tests).
        """
        self._config = config
        self._executor = executor or TransportExecutor()
        self._client = httpx.AsyncClient(
            auth=config.auth,
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    @property
    def config(self) -> RemoteConfig:
        return self._config

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> WorkItemClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _wit_url(self, path: str, with_project: bool = True) -> str:
        base = self._config.project_url if with_project else self._config.org_url
        return f"{base}/_apis/wit/{path}"

    def _upload_candidates(self) -> list[tuple[str, str]]:
        """(url, api_version) pairs tried in order for a single-shot upload."""
        version = self._config.api_version
        candidates = [
            (self._wit_url("attachments"), version),
            (self._wit_url("attachments", with_project=False), version),
            (self._wit_url("attachments"), FALLBACK_API_VERSION),
            (self._wit_url("attachments", with_project=False), FALLBACK_API_VERSION),
        ]
        unique: list[tuple[str, str]] = []
        for candidate in candidates:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    # === Attachment operations ===

    async def upload_attachment(self, data: bytes, file_name: str) -> RemoteAttachment:
        """Upload a whole file as one request.

        On 400/404 the next URL shape / API version candidate is tried.

        Args:
            data: File content.
            file_name: Name to register on the remote side.

        Returns:
            The created remote attachment.

        Raises:
            RemoteStatusError: If every candidate failed or a fatal error occurred.
            RetriesExhaustedError: If transient failures persisted.
        """
        last_error: RemoteStatusError | None = None
        for url, api_version in self._upload_candidates():
            operation = partial(
                self._client.post,
                url,
                params={"fileName": file_name, "api-version": api_version},
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
            try:
                response = await self._executor.call(operation)
            except RemoteStatusError as e:
                if e.status_code not in FALLBACK_STATUS_CODES:
                    raise
                logger.info(f"Upload to {url} (api-version {api_version}) failed with {e.status_code}, trying next")
                last_error = e
                continue
            logger.debug(f"Uploaded {file_name} via {url} (api-version {api_version})")
            return RemoteAttachment.from_dict(response.json(), file_name=file_name)

        assert last_error is not None
        raise last_error

    async def upload_chunk(
        self,
        session_id: str,
        file_name: str,
        data: bytes,
        byte_range: ByteRange,
        total_size: int,
    ) -> None:
        """Send one chunk of a chunked upload session.

        Args:
            session_id: Local session identifier.
            file_name: File name of the upload.
            data: Chunk bytes (exactly ``byte_range.size`` long).
            byte_range: Position of the chunk in the file.
            total_size: Total file size.
        """
        operation = partial(
            self._client.put,
            self._wit_url("attachments/chunked"),
            params={
                "sessionId": session_id,
                "fileName": file_name,
                "api-version": self._config.api_version,
            },
            content=data,
            headers={
                "Content-Type": "application/octet-stream",
                "Content-Range": byte_range.content_range(total_size),
            },
        )
        await self._executor.call(operation)

    async def download_attachment(self, attachment_id: str) -> DownloadedFile:
        """Download attachment bytes.

        Returns:
            File content with the name from Content-Disposition, if any.
        """
        operation = partial(
            self._client.get,
            self._wit_url(f"attachments/{attachment_id}"),
            params={"download": "true", "api-version": self._config.api_version},
        )
        response = await self._executor.call(operation)
        return DownloadedFile(
            content=response.content,
            file_name=parse_content_disposition(response.headers.get("content-disposition")),
            content_type=response.headers.get("content-type"),
        )

    # === Work item operations ===

    async def get_relations(self, work_item_id: int) -> list[RemoteRelation]:
        """Fetch all relations of a work item."""
        operation = partial(
            self._client.get,
            self._wit_url(f"workitems/{work_item_id}"),
            params={"$expand": "relations", "api-version": self._config.api_version},
        )
        response = await self._executor.call(operation)
        relations = response.json().get("relations") or []
        return [RemoteRelation.from_dict(r) for r in relations]

    async def get_attachment_relations(self, work_item_id: int) -> list[RemoteAttachment]:
        """Fetch the AttachedFile relations of a work item as attachments."""
        attachments = []
        for relation in await self.get_relations(work_item_id):
            if relation.rel != ATTACHED_FILE_REL:
                continue
            attachment = RemoteAttachment.from_relation(relation)
            if attachment is None:
                logger.warning(f"Skipping attachment relation without id: {relation.url}")
                continue
            attachments.append(attachment)
        return attachments

    async def add_attachment_relation(
        self,
        work_item_id: int,
        url: str,
        file_name: str,
        comment: str,
    ) -> None:
        """Attach an uploaded blob to a work item with a JSON Patch."""
        patch = [
            {
                "op": "add",
                "path": "/relations/-",
                "value": {
                    "rel": ATTACHED_FILE_REL,
                    "url": url,
                    "attributes": {"name": file_name, "comment": comment},
                },
            }
        ]
        operation = partial(
            self._client.patch,
            self._wit_url(f"workitems/{work_item_id}"),
            params={"api-version": self._config.api_version},
            content=json.dumps(patch),
            headers={"Content-Type": "application/json-patch+json"},
        )
        await self._executor.call(operation)

    # === Diagnostics ===

    async def diagnose(self) -> ConnectivityReport:
        """Check the organization URL and token against the projects endpoint.

        Remote failures are reported in the result instead of raised.
        """
        operation = partial(
            self._client.get,
            f"{self._config.org_url}/_apis/projects",
            params={"api-version": self._config.api_version},
        )
        result = await self._executor.execute(operation)
        report = ConnectivityReport(
            org_url=self._config.org_url,
            project=self._config.project,
            api_version=self._config.api_version,
            ok=result.ok,
        )
        if isinstance(result, Success):
            report.status_code = result.response.status_code
            report.message = "Connection and authentication succeeded"
            return report

        error = result.error
        cause = error.last_error if isinstance(error, RetriesExhaustedError) else error
        logger.warning(f"Connectivity check against {self._config.org_url} failed: {error}")
        report.status_code = error.status_code
        report.message = str(error)
        report.guidance = cause.guidance if isinstance(cause, RemoteStatusError) else ""
        report.possible_causes = list(CONNECTIVITY_CAUSES)
        return report
