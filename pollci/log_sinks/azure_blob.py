"""Azure Blob Storage log sink.

Job logs are stored as append blobs: created once with an HTML header and
then extended block by block. The blob SDK client is synchronous; like the
GitHub client, every blocking call runs in a worker thread.
"""

import asyncio
import base64
import binascii

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.storage.blob import BlobServiceClient, BlobType, ContentSettings

from pollci.interfaces import LogSinkError
from pollci.logger import get_logger

logger = get_logger(__name__)


def container_name(purpose: str) -> str:
    """Container naming convention: 'pollci-<purpose>', lowercase."""
    return f"pollci-{purpose}".lower()


class AzureAppendBlobSink:
    """LogSink backed by Azure append blobs."""

    def __init__(
        self,
        account: str,
        key: str,
        endpoint: str | None = None,
        service: BlobServiceClient | None = None,
    ) -> None:
        """Initialize the sink.

        Args:
            account: Storage account name
            key: Base64 account access key
            endpoint: Blob service endpoint, defaults to the public cloud
            service: Optional preconfigured BlobServiceClient
        """
        try:
            base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise LogSinkError("Storage key is not valid base64") from e
        self.account = account
        self.endpoint = (endpoint or f"https://{account}.blob.core.windows.net").rstrip("/")
        self.service = service or BlobServiceClient(
            account_url=self.endpoint,
            credential={"account_name": account, "account_key": key},
        )

    def object_url(self, container: str, name: str) -> str:
        return self.service.get_blob_client(container, name).url

    async def ensure_container(self, purpose: str) -> str:
        """Create the container with public blob read access if it does not exist."""
        name = container_name(purpose)
        try:
            await asyncio.to_thread(self.service.create_container, name, public_access="blob")
            logger.info(f"Created log container {name}")
        except ResourceExistsError:
            pass
        except AzureError as e:
            raise LogSinkError(f"Failed to create container {name}: {e}") from e
        return name

    async def create_append_object(
        self, container: str, name: str, header_html: str, content_type: str
    ) -> None:
        blob = self.service.get_blob_client(container, name)
        try:
            await asyncio.to_thread(
                blob.create_append_blob,
                content_settings=ContentSettings(content_type=content_type),
            )
        except AzureError as e:
            raise LogSinkError(f"Failed to create log {container}/{name}: {e}") from e
        if header_html:
            await self.append_text(container, name, header_html)

    async def append_text(self, container: str, name: str, text: str) -> None:
        """Append text to an existing append blob.

        upload_blob splits the data into blocks no larger than the service
        limit and, for append blobs, extends the existing content.
        """
        data = text.encode("utf-8")
        blob = self.service.get_blob_client(container, name)
        try:
            await asyncio.to_thread(
                blob.upload_blob,
                data,
                blob_type=BlobType.APPENDBLOB,
                length=len(data),
                overwrite=False,
            )
        except AzureError as e:
            raise LogSinkError(f"Failed to append to log {container}/{name}: {e}") from e
