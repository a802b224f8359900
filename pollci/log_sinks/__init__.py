"""Log sink implementations."""

from pollci.log_sinks.azure_blob import AzureAppendBlobSink, container_name

__all__ = [
    "AzureAppendBlobSink",
    "container_name",
]
