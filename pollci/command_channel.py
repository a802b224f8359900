"""Command channel: pull request comments addressed to a worker.

A comment whose body starts with ``@pollci/<ci_identifier>`` followed by a
command word is a command for every worker running under that CI
identifier. Recognized commands are acknowledged by rewriting the comment so
that the next scan does not process them again; unrecognized ones are
replaced with a help table.
"""

from dataclasses import dataclass

from pollci.interfaces import CIClient, CIClientError, Comment, PullRequest
from pollci.logger import get_logger
from pollci.results import BestEffortResult

logger = get_logger(__name__)

ACK_MARKER = "<!--pollci:ack-->"
HELP_MARKER = "<!--pollci:help-->"

# Comments written by other automation; never treated as commands
PUBLISH_INDICATOR = "<!--AUTO-GENERATED PUBLISH JOB COMMENT-->\n"
COVERAGE_INDICATOR = "<!--AUTO-GENERATED COVERAGE COMMENT-->\n"

RESTART = "restart"
COMMANDS = {
    RESTART: "Run the CI job again for the current head commit, whatever its status.",
}


def command_indicator(ci_identifier: str) -> str:
    return f"@pollci/{ci_identifier}"


def is_system_comment(body: str) -> bool:
    """True for comments pollci (or its publish job) generated itself."""
    return body.startswith((ACK_MARKER, HELP_MARKER, PUBLISH_INDICATOR, COVERAGE_INDICATOR))


def parse_command(body: str, indicator: str) -> str | None:
    """Extract the command word from a comment addressed to indicator.

    Returns:
        The lowercased command word, "" when the indicator stands alone,
        or None when the comment is not addressed to this indicator
    """
    if not body.startswith(indicator):
        return None
    rest = body[len(indicator) :]
    if rest and not rest[0].isspace():
        # '@pollci/linux-x64' must not match '@pollci/linux-x64-gpu'
        return None
    words = rest.split()
    return words[0].lower() if words else ""


def quote(text: str) -> str:
    return "\n".join(f"> {line}" for line in text.strip().splitlines())


@dataclass(frozen=True)
class CommandScan:
    """Result of scanning one pull request's comments.

    Attributes:
        restart: A restart command was found and acknowledged
        handled: Number of command comments processed
        warnings: Comment edits that failed
    """

    restart: bool = False
    handled: int = 0
    warnings: tuple[str, ...] = ()


class CommandChannel:
    """Reads and answers commands addressed to this worker's CI identifier."""

    def __init__(
        self,
        client: CIClient,
        ci_identifier: str,
        command_users: list[str] | None = None,
    ) -> None:
        self.client = client
        self.ci_identifier = ci_identifier
        self.indicator = command_indicator(ci_identifier)
        self.command_users = command_users or []
        # Comments already answered, in case the rewrite that marks them failed
        self.handled_ids: set[int] = set()

    def ack_body(self, comment: Comment) -> str:
        return (
            f"{ACK_MARKER}\n{quote(comment.body)}\n\n"
            f"Acknowledged by `{self.client.status_prefix.strip()}` on `{self.ci_identifier}`."
        )

    def help_body(self, comment: Comment, word: str) -> str:
        lines = [
            HELP_MARKER,
            quote(comment.body),
            "",
            f"Unknown command `{word}`." if word else "No command given.",
            f"Commands understood by `{self.indicator}`:",
            "",
            "| Command | Description |",
            "|---|---|",
        ]
        lines.extend(f"| `{self.indicator} {name}` | {text} |" for name, text in COMMANDS.items())
        return "\n".join(lines)

    def _allowed(self, comment: Comment, context: str) -> bool:
        if not self.command_users or comment.user in self.command_users:
            return True
        logger.warning(
            f"BLOCKED - Command by '{comment.user}' not allowed for {context} "
            f"(command users: {', '.join(self.command_users)})"
        )
        return False

    async def _rewrite(self, comment: Comment, body: str) -> BestEffortResult:
        try:
            await self.client.edit_comment(comment.id, body)
        except CIClientError as e:
            warning = f"Failed to rewrite command comment {comment.id}: {e}"
            logger.warning(warning)
            return BestEffortResult.failed(warning)
        return BestEffortResult.success()

    async def scan(self, pr: PullRequest) -> CommandScan:
        """Process every command comment on a pull request.

        Raises:
            CIClientError: If the comments cannot be listed
        """
        context = f"{self.client.repo}#{pr.number}"
        restart = False
        handled = 0
        warnings: list[str] = []
        for comment in await self.client.list_comments(pr.number):
            if is_system_comment(comment.body):
                continue
            word = parse_command(comment.body, self.indicator)
            if word is None or comment.id in self.handled_ids:
                continue
            if not self._allowed(comment, context):
                continue
            self.handled_ids.add(comment.id)
            handled += 1
            if word == RESTART:
                logger.info(f"Restart requested by '{comment.user}' for {context}")
                restart = True
                result = await self._rewrite(comment, self.ack_body(comment))
            else:
                logger.info(f"Unknown command '{word}' from '{comment.user}' for {context}")
                result = await self._rewrite(comment, self.help_body(comment, word))
            if result.warning:
                warnings.append(result.warning)
        return CommandScan(restart=restart, handled=handled, warnings=tuple(warnings))
