"""Tests for the work item HTTP client."""

import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from attachsync.core.config import RemoteConfig
from attachsync.core.hashing import chunk_range
from attachsync.remote.api import (
    RemoteAttachment,
    RemoteRelation,
    WorkItemClient,
    extract_attachment_id,
    file_name_from_url,
    parse_content_disposition,
)
from attachsync.remote.transport import RemoteStatusError, TransportExecutor

ORG = "https://tracker.test/Coll"
PROJECT_API = f"{ORG}/Demo/_apis/wit"
ORG_API = f"{ORG}/_apis/wit"
ATTACHMENT_ID = "0f1e2d3c-4b5a-6978-8695-a4b3c2d1e0f9"


async def no_sleep(delay: float) -> None:
    pass


@pytest.fixture
def client() -> WorkItemClient:
    config = RemoteConfig(org_url=ORG, project="Demo", pat="pat")
    return WorkItemClient(config, executor=TransportExecutor(max_retries=0, sleep=no_sleep))


class TestUrlHelpers:
    """Tests for attachment URL and header parsing."""

    def test_extract_attachment_id(self) -> None:
        url = f"{ORG_API}/attachments/{ATTACHMENT_ID}?fileName=a.png"
        assert extract_attachment_id(url) == ATTACHMENT_ID

    def test_extract_attachment_id_uppercase(self) -> None:
        url = f"{ORG_API}/attachments/{ATTACHMENT_ID.upper()}"
        assert extract_attachment_id(url) == ATTACHMENT_ID.upper()

    def test_extract_attachment_id_not_attachment(self) -> None:
        assert extract_attachment_id(f"{ORG_API}/workitems/12") is None

    def test_file_name_from_url(self) -> None:
        assert file_name_from_url(f"{ORG_API}/attachments/x?fileName=r%C3%A9sum%C3%A9.pdf") == "résumé.pdf"
        assert file_name_from_url(f"{ORG_API}/attachments/x") is None

    def test_content_disposition_prefers_extended_form(self) -> None:
        header = "attachment; filename=\"fallback.txt\"; filename*=UTF-8''r%C3%A9sum%C3%A9.pdf"
        assert parse_content_disposition(header) == "résumé.pdf"

    def test_content_disposition_plain(self) -> None:
        assert parse_content_disposition('attachment; filename="report.txt"') == "report.txt"
        assert parse_content_disposition(None) is None

    def test_attachment_from_relation(self) -> None:
        relation = RemoteRelation.from_dict(
            {
                "rel": "AttachedFile",
                "url": f"{ORG_API}/attachments/{ATTACHMENT_ID}",
                "attributes": {"name": "log.txt", "resourceSize": "42", "comment": "hi"},
            }
        )
        attachment = RemoteAttachment.from_relation(relation)
        assert attachment is not None
        assert attachment.attachment_id == ATTACHMENT_ID
        assert attachment.file_name == "log.txt"
        assert attachment.size == 42
        assert attachment.comment == "hi"


class TestUpload:
    """Tests for single-shot and chunked uploads."""

    @pytest.mark.asyncio
    async def test_upload_posts_octet_stream(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{PROJECT_API}/attachments?fileName=a.txt&api-version=5.1",
            json={"id": ATTACHMENT_ID, "url": f"{ORG_API}/attachments/{ATTACHMENT_ID}"},
        )

        attachment = await client.upload_attachment(b"hello", "a.txt")

        assert attachment.attachment_id == ATTACHMENT_ID
        assert attachment.file_name == "a.txt"
        request = httpx_mock.get_request()
        assert request.content == b"hello"
        assert request.headers["Content-Type"] == "application/octet-stream"
        assert request.headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_upload_falls_back_to_org_url(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        """A 404 on the project URL should retry at organization level."""
        httpx_mock.add_response(
            method="POST",
            url=f"{PROJECT_API}/attachments?fileName=a.txt&api-version=5.1",
            status_code=404,
        )
        httpx_mock.add_response(
            method="POST",
            url=f"{ORG_API}/attachments?fileName=a.txt&api-version=5.1",
            json={"id": ATTACHMENT_ID, "url": f"{ORG_API}/attachments/{ATTACHMENT_ID}"},
        )

        attachment = await client.upload_attachment(b"hello", "a.txt")

        assert attachment.attachment_id == ATTACHMENT_ID
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_upload_tries_older_api_version(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        for url in (f"{PROJECT_API}/attachments", f"{ORG_API}/attachments"):
            httpx_mock.add_response(
                method="POST", url=f"{url}?fileName=a.txt&api-version=5.1", status_code=400
            )
        httpx_mock.add_response(
            method="POST",
            url=f"{PROJECT_API}/attachments?fileName=a.txt&api-version=5.0",
            json={"id": ATTACHMENT_ID, "url": f"{ORG_API}/attachments/{ATTACHMENT_ID}"},
        )

        attachment = await client.upload_attachment(b"hello", "a.txt")

        assert attachment.attachment_id == ATTACHMENT_ID

    @pytest.mark.asyncio
    async def test_upload_raises_after_all_candidates(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        for url in (f"{PROJECT_API}/attachments", f"{ORG_API}/attachments"):
            for version in ("5.1", "5.0"):
                httpx_mock.add_response(
                    method="POST",
                    url=f"{url}?fileName=a.txt&api-version={version}",
                    status_code=404,
                )

        with pytest.raises(RemoteStatusError) as exc_info:
            await client.upload_attachment(b"hello", "a.txt")

        assert exc_info.value.status_code == 404
        assert len(httpx_mock.get_requests()) == 4

    @pytest.mark.asyncio
    async def test_upload_auth_error_does_not_fall_back(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{PROJECT_API}/attachments?fileName=a.txt&api-version=5.1",
            status_code=401,
        )

        with pytest.raises(RemoteStatusError) as exc_info:
            await client.upload_attachment(b"hello", "a.txt")

        assert exc_info.value.status_code == 401
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_upload_chunk_sends_content_range(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="PUT",
            url=f"{PROJECT_API}/attachments/chunked?sessionId=abc&fileName=big.bin&api-version=5.1",
            status_code=202,
        )
        data = bytes(25)
        byte_range = chunk_range(1, len(data), 10)

        await client.upload_chunk("abc", "big.bin", byte_range.slice(data), byte_range, len(data))

        request = httpx_mock.get_request()
        assert request.headers["Content-Range"] == "bytes 10-19/25"
        assert request.content == bytes(10)


class TestWorkItems:
    """Tests for relations, download and linking."""

    @pytest.mark.asyncio
    async def test_get_attachment_relations_filters(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="GET",
            url=f"{PROJECT_API}/workitems/12?$expand=relations&api-version=5.1",
            json={
                "id": 12,
                "relations": [
                    {"rel": "System.LinkTypes.Related", "url": f"{ORG_API}/workItems/13"},
                    {
                        "rel": "AttachedFile",
                        "url": f"{ORG_API}/attachments/{ATTACHMENT_ID}",
                        "attributes": {"name": "log.txt"},
                    },
                    {"rel": "AttachedFile", "url": "https://elsewhere.test/no-id"},
                ],
            },
        )

        attachments = await client.get_attachment_relations(12)

        assert [a.attachment_id for a in attachments] == [ATTACHMENT_ID]

    @pytest.mark.asyncio
    async def test_work_item_without_relations(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="GET",
            url=f"{PROJECT_API}/workitems/7?$expand=relations&api-version=5.1",
            json={"id": 7},
        )

        assert await client.get_relations(7) == []

    @pytest.mark.asyncio
    async def test_download_attachment(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="GET",
            url=f"{PROJECT_API}/attachments/{ATTACHMENT_ID}?download=true&api-version=5.1",
            content=b"file bytes",
            headers={
                "Content-Type": "text/plain",
                "Content-Disposition": "attachment; filename*=UTF-8''notes%20v2.txt",
            },
        )

        downloaded = await client.download_attachment(ATTACHMENT_ID)

        assert downloaded.content == b"file bytes"
        assert downloaded.file_name == "notes v2.txt"
        assert downloaded.content_type == "text/plain"

    @pytest.mark.asyncio
    async def test_add_attachment_relation_sends_json_patch(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="PATCH",
            url=f"{PROJECT_API}/workitems/12?api-version=5.1",
            json={"id": 12},
        )
        url = f"{ORG_API}/attachments/{ATTACHMENT_ID}"

        await client.add_attachment_relation(12, url, "log.txt", "from test")

        request = httpx_mock.get_request()
        assert request.headers["Content-Type"] == "application/json-patch+json"
        assert json.loads(request.content) == [
            {
                "op": "add",
                "path": "/relations/-",
                "value": {
                    "rel": "AttachedFile",
                    "url": url,
                    "attributes": {"name": "log.txt", "comment": "from test"},
                },
            }
        ]


class TestDiagnose:
    """Tests for the connectivity check."""

    @pytest.mark.asyncio
    async def test_success(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="GET",
            url=f"{ORG}/_apis/projects?api-version=5.1",
            json={"count": 1, "value": [{"name": "Demo"}]},
        )

        report = await client.diagnose()

        assert report.ok is True
        assert report.status_code == 200
        assert report.org_url == ORG
        assert report.project == "Demo"
        assert report.possible_causes == []

    @pytest.mark.asyncio
    async def test_auth_failure_reports_guidance(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(method="GET", url=f"{ORG}/_apis/projects?api-version=5.1", status_code=401)

        report = await client.diagnose()

        assert report.ok is False
        assert report.status_code == 401
        assert "personal access token" in report.guidance
        assert "Invalid or expired personal access token" in report.possible_causes

    @pytest.mark.asyncio
    async def test_unreachable_server(self, client: WorkItemClient, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        report = await client.diagnose()

        assert report.ok is False
        assert report.status_code is None
        assert report.guidance == ""
        assert "connection refused" in report.message
