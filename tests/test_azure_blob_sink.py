"""Tests for the Azure append-blob log sink."""

import base64
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ServiceRequestError
from azure.storage.blob import BlobServiceClient, BlobType

from pollci.interfaces import LogSink, LogSinkError
from pollci.log_sinks import AzureAppendBlobSink, container_name

KEY = base64.b64encode(b"0123456789abcdef").decode()


@pytest.fixture
def service():
    service = MagicMock(spec=BlobServiceClient)
    service.get_blob_client.return_value.url = (
        "https://acct.blob.core.windows.net/pollci-logs/acme/widgets/42%20run.html"
    )
    return service


@pytest.fixture
def blob(service):
    return service.get_blob_client.return_value


@pytest.fixture
def blob_sink(service):
    return AzureAppendBlobSink("acct", KEY, service=service)


@pytest.mark.unit
class TestAzureAppendBlobSink:
    """Tests for AzureAppendBlobSink against a mocked BlobServiceClient."""

    def test_conforms_to_protocol(self, blob_sink):
        assert isinstance(blob_sink, LogSink)

    def test_container_name(self):
        assert container_name("Logs") == "pollci-logs"

    def test_invalid_key_is_rejected(self):
        with pytest.raises(LogSinkError):
            AzureAppendBlobSink("acct", "not base64!")

    def test_default_client_uses_account_endpoint(self):
        with patch("pollci.log_sinks.azure_blob.BlobServiceClient") as client_cls:
            AzureAppendBlobSink("acct", KEY)

        client_cls.assert_called_once_with(
            account_url="https://acct.blob.core.windows.net",
            credential={"account_name": "acct", "account_key": KEY},
        )

    def test_object_url_comes_from_blob_client(self, blob_sink, service):
        url = blob_sink.object_url("pollci-logs", "acme/widgets/42 run.html")

        service.get_blob_client.assert_called_with("pollci-logs", "acme/widgets/42 run.html")
        assert url.endswith("/pollci-logs/acme/widgets/42%20run.html")

    @pytest.mark.asyncio
    async def test_ensure_container_is_public_read(self, blob_sink, service):
        assert await blob_sink.ensure_container("logs") == "pollci-logs"
        service.create_container.assert_called_once_with("pollci-logs", public_access="blob")

    @pytest.mark.asyncio
    async def test_ensure_container_tolerates_existing(self, blob_sink, service):
        service.create_container.side_effect = ResourceExistsError("ContainerAlreadyExists")
        assert await blob_sink.ensure_container("logs") == "pollci-logs"

    @pytest.mark.asyncio
    async def test_create_append_object_writes_header(self, blob_sink, blob):
        await blob_sink.create_append_object("pollci-logs", "a.html", "<pre>", "text/html")

        settings = blob.create_append_blob.call_args.kwargs["content_settings"]
        assert settings.content_type == "text/html"
        data = blob.upload_blob.call_args.args[0]
        assert data == b"<pre>"

    @pytest.mark.asyncio
    async def test_append_text_extends_existing_blob(self, blob_sink, blob):
        await blob_sink.append_text("pollci-logs", "a.html", "héllo")

        call = blob.upload_blob.call_args
        assert call.args == ("héllo".encode(),)
        assert call.kwargs["blob_type"] == BlobType.APPENDBLOB
        assert call.kwargs["length"] == 6
        assert call.kwargs["overwrite"] is False

    @pytest.mark.asyncio
    async def test_service_error_raises(self, blob_sink, blob):
        blob.upload_blob.side_effect = HttpResponseError("403 AuthenticationFailed")
        with pytest.raises(LogSinkError, match="AuthenticationFailed"):
            await blob_sink.append_text("pollci-logs", "a.html", "x")

    @pytest.mark.asyncio
    async def test_connection_error_raises(self, blob_sink, service):
        service.create_container.side_effect = ServiceRequestError("refused")
        with pytest.raises(LogSinkError):
            await blob_sink.ensure_container("logs")

    @pytest.mark.asyncio
    async def test_create_failure_raises(self, blob_sink, blob):
        blob.create_append_blob.side_effect = HttpResponseError("409 conflict")
        with pytest.raises(LogSinkError):
            await blob_sink.create_append_object("pollci-logs", "a.html", "", "text/html")
        blob.upload_blob.assert_not_called()
