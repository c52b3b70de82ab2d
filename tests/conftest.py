"""Shared fixtures for attachsync tests."""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

import httpx
import pytest

from attachsync.core.config import RemoteConfig, SyncSettings
from attachsync.remote.api import WorkItemClient
from attachsync.remote.transport import TransportExecutor
from attachsync.server.database import Database
from attachsync.server.storage import LocalFSStorage
from attachsync.sync.engine import SyncEngine

ORG_URL = "https://tracker.test/DefaultCollection"
PROJECT = "Demo"
TEST_CHUNK_SIZE = 1024

_ATTACHMENT_RE = re.compile(r"/_apis/wit/attachments/([^/]+)$")
_WORK_ITEM_RE = re.compile(r"/_apis/wit/workitems/(\d+)$")


async def no_sleep(delay: float) -> None:
    """Replacement for asyncio.sleep in retry tests."""


@dataclass
class FakeTracker:
    """In-memory stand-in for the remote work item service.

    Serves attachment uploads (single-shot and chunked), downloads, work
    item relations and the project list through an httpx.MockTransport.
    """

    blobs: dict[str, tuple[str, bytes]] = field(default_factory=dict)
    relations: dict[int, list[dict]] = field(default_factory=dict)
    chunks: list[tuple[str, str]] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)
    failures: list[tuple[str, str, int]] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def attachment_url(self, attachment_id: str, file_name: str) -> str:
        return f"{ORG_URL}/_apis/wit/attachments/{attachment_id}?fileName={quote(file_name)}"

    def fail(self, method: str, fragment: str, status_code: int, times: int = 1) -> None:
        """Answer the next ``times`` matching requests with ``status_code``."""
        self.failures.extend([(method, fragment, status_code)] * times)

    def add_remote_attachment(self, work_item_id: int, content: bytes, file_name: str) -> str:
        """Create a blob and link it to a work item, as another client would."""
        attachment_id = str(uuid.uuid4())
        self.blobs[attachment_id] = (file_name, content)
        self.relations.setdefault(work_item_id, []).append(
            {
                "rel": "AttachedFile",
                "url": self.attachment_url(attachment_id, file_name),
                "attributes": {"name": file_name, "resourceSize": len(content)},
            }
        )
        return attachment_id

    def remove_relation(self, work_item_id: int, attachment_id: str) -> None:
        self.relations[work_item_id] = [
            r for r in self.relations.get(work_item_id, []) if attachment_id not in r["url"]
        ]

    def count(self, method: str, fragment: str) -> int:
        """Number of requests made with ``method`` whose path contains ``fragment``."""
        return sum(
            1 for r in self.requests if r.method == method and fragment in r.url.path
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        for failure in self.failures:
            if failure[0] == method and failure[1] in path:
                self.failures.remove(failure)
                return httpx.Response(failure[2], text="injected failure")

        if method == "PUT" and path.endswith("/_apis/wit/attachments/chunked"):
            self.chunks.append(
                (request.url.params["sessionId"], request.headers["Content-Range"])
            )
            return httpx.Response(202)

        if method == "POST" and path.endswith("/_apis/wit/attachments"):
            file_name = request.url.params["fileName"]
            attachment_id = str(uuid.uuid4())
            self.blobs[attachment_id] = (file_name, request.content)
            return httpx.Response(
                201,
                json={"id": attachment_id, "url": self.attachment_url(attachment_id, file_name)},
            )

        match = _ATTACHMENT_RE.search(path)
        if method == "GET" and match:
            blob = self.blobs.get(match.group(1))
            if blob is None:
                return httpx.Response(404, text="attachment not found")
            file_name, content = blob
            return httpx.Response(
                200,
                content=content,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Disposition": f"attachment; filename*=UTF-8''{quote(file_name)}",
                },
            )

        if method == "GET" and path.endswith("/_apis/projects"):
            return httpx.Response(200, json={"count": 1, "value": [{"name": PROJECT}]})

        match = _WORK_ITEM_RE.search(path)
        if match:
            work_item_id = int(match.group(1))
            if method == "GET":
                return httpx.Response(
                    200,
                    json={"id": work_item_id, "relations": self.relations.get(work_item_id, [])},
                )
            if method == "PATCH":
                for op in json.loads(request.content):
                    self.relations.setdefault(work_item_id, []).append(op["value"])
                return httpx.Response(200, json={"id": work_item_id})

        return httpx.Response(404, text="unknown route")


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def storage(tmp_path: Path) -> LocalFSStorage:
    """Create a test blob storage."""
    return LocalFSStorage(tmp_path / "attachments")


@pytest.fixture
def remote_config() -> RemoteConfig:
    return RemoteConfig(org_url=ORG_URL, project=PROJECT, pat="secret-pat")


@pytest.fixture
def settings() -> SyncSettings:
    """Small chunks so chunked uploads stay cheap."""
    return SyncSettings(
        chunk_size=TEST_CHUNK_SIZE,
        chunk_threshold=TEST_CHUNK_SIZE,
        max_file_size=64 * TEST_CHUNK_SIZE,
        max_retries=2,
        retry_backoff=0.0,
        webhook_secret="hook-secret",
    )


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def executor() -> TransportExecutor:
    """Retrying executor that never actually sleeps."""
    return TransportExecutor(max_retries=2, base_delay=0.0, sleep=no_sleep)


@pytest.fixture
def client(
    remote_config: RemoteConfig, executor: TransportExecutor, tracker: FakeTracker
) -> WorkItemClient:
    """Remote client wired to the fake tracker."""
    return WorkItemClient(remote_config, executor=executor, transport=tracker.transport)


@pytest.fixture
def engine(
    db: Database,
    storage: LocalFSStorage,
    client: WorkItemClient,
    settings: SyncSettings,
) -> SyncEngine:
    """Sync engine wired to the fake tracker."""
    return SyncEngine(db, storage, client, settings)
