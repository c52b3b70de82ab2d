"""Remote module - Client and retrying transport for the work-item service."""

from attachsync.remote.api import (
    ConnectivityReport,
    DownloadedFile,
    RemoteAttachment,
    RemoteRelation,
    WorkItemClient,
    extract_attachment_id,
    parse_content_disposition,
)
from attachsync.remote.transport import (
    Failure,
    NetworkFailure,
    RemoteStatusError,
    RetriesExhaustedError,
    Success,
    TransportError,
    TransportExecutor,
)

__all__ = [
    # Client
    "ConnectivityReport",
    "DownloadedFile",
    "RemoteAttachment",
    "RemoteRelation",
    "WorkItemClient",
    "extract_attachment_id",
    "parse_content_disposition",
    # Transport
    "Failure",
    "NetworkFailure",
    "RemoteStatusError",
    "RetriesExhaustedError",
    "Success",
    "TransportError",
    "TransportExecutor",
]
