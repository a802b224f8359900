"""Log sink protocol.

A log sink is an append-only durable object store. Objects are created once
with a header and then only ever appended to.
"""

from typing import Protocol, runtime_checkable


class LogSinkError(Exception):
    """Raised when the log sink rejects or fails a request."""

    pass


@runtime_checkable
class LogSink(Protocol):
    """Protocol for append-only log storage."""

    async def ensure_container(self, purpose: str) -> str:
        """Create the container for a purpose if missing and return its id."""
        ...

    async def create_append_object(
        self, container: str, name: str, header_html: str, content_type: str
    ) -> None:
        """Create an appendable object whose content starts with header_html."""
        ...

    async def append_text(self, container: str, name: str, text: str) -> None:
        """Append text to an existing object. Never truncates prior content."""
        ...

    def object_url(self, container: str, name: str) -> str:
        """Public URL of an object."""
        ...
