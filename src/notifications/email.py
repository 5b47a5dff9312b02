"""Outbound email. Fire-and-forget: senders report success as a bool."""

from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class EmailSender(Protocol):
    async def send_invite(self, *, to: str, workspace_name: str, link: str) -> bool: ...

    async def send_client_invite(self, *, to: str, workspace_name: str,
                                 client_name: str, link: str) -> bool: ...


class LoggingEmailSender:
    """Writes the message to the log instead of delivering it."""

    async def send_invite(self, *, to: str, workspace_name: str, link: str) -> bool:
        logger.info("invite_email", to=to, workspace=workspace_name, link=link)
        return True

    async def send_client_invite(self, *, to: str, workspace_name: str,
                                 client_name: str, link: str) -> bool:
        logger.info(
            "client_invite_email",
            to=to, workspace=workspace_name, client=client_name, link=link,
        )
        return True
