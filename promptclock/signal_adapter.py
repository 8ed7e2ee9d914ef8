"""Signal CLI adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import AsyncIterator

from promptclock.errors import TransportError
from promptclock.models import Message

LOGGER = logging.getLogger(__name__)

_E164 = re.compile(r"^\+\d{6,15}$")
_UUID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


class SignalAdapter:
    """Adapter around signal-cli JSON commands.

    Tenant ids are Signal conversation ids: the sender's number for direct
    chats, the group id for group chats.
    """

    def __init__(
        self,
        signal_cli_path: str,
        account: str,
        poll_interval_seconds: float,
        allowed_senders: frozenset[str] = frozenset(),
    ) -> None:
        self._signal_cli_path = signal_cli_path
        self._account = account
        self._poll_interval_seconds = poll_interval_seconds
        self._allowed_senders = allowed_senders

    async def poll_messages(self) -> AsyncIterator[Message]:
        """Poll receive endpoint and yield normalized message objects."""

        while True:
            process = await asyncio.create_subprocess_exec(
                self._signal_cli_path,
                "-o",
                "json",
                "-a",
                self._account,
                "receive",
                "-t",
                str(int(self._poll_interval_seconds)),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
            if process.returncode != 0:
                LOGGER.warning("signal-cli receive failed: %s", stderr.decode().strip())
                await asyncio.sleep(self._poll_interval_seconds)
                continue

            for line in stdout.decode().splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                    message = _to_message(payload)
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
                if message is None:
                    continue
                if _UUID.match(message.sender_id):
                    number = await self.resolve_number(message.sender_id)
                    if message.tenant_id == message.sender_id:
                        message.tenant_id = number
                    message.sender_id = number
                if self._allowed_senders and message.sender_id not in self._allowed_senders:
                    LOGGER.warning("Dropping message from unauthorized sender %s", message.sender_id)
                    continue
                yield message

    async def resolve_number(self, uuid: str) -> str:
        """Return the phone number for a UUID by scanning the contacts list.

        Falls back to the UUID itself, which signal-cli also accepts as a recipient.
        """
        process = await asyncio.create_subprocess_exec(
            self._signal_cli_path,
            "-o",
            "json",
            "-a",
            self._account,
            "listContacts",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
        for line in stdout.decode().splitlines():
            try:
                contact = json.loads(line)
                if contact.get("uuid") == uuid and contact.get("number"):
                    return contact["number"]
            except (json.JSONDecodeError, AttributeError):
                continue
        LOGGER.warning("Could not resolve UUID %s via contacts", uuid)
        return uuid

    async def send_message(self, recipient: str, text: str, markdown: bool = True) -> None:
        """Send a text message to a tenant conversation."""

        if markdown:
            text = to_signal_formatting(text)
        await self._run(["send", "-m", text, *_recipient_args(recipient)], "send")

    async def send_typing(self, recipient: str, stop: bool = False) -> None:
        """Show or clear the typing indicator in a tenant conversation."""

        args = ["sendTyping"]
        if stop:
            args.append("--stop")
        await self._run([*args, *_recipient_args(recipient)], "sendTyping")

    async def _run(self, args: list[str], command: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self._signal_cli_path,
                "-a",
                self._account,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportError(f"signal-cli {command} could not start: {exc}") from exc
        _, stderr = await process.communicate()
        if process.returncode != 0:
            raise TransportError(f"signal-cli {command} failed: {stderr.decode().strip()}")


def _recipient_args(recipient: str) -> list[str]:
    if _E164.match(recipient) or _UUID.match(recipient):
        return [recipient]
    return ["-g", recipient]


def to_signal_formatting(text: str) -> str:
    """Flatten markdown, which Signal does not render."""

    # Bold/italic markers
    text = re.sub(r"\*{1,3}(.+?)\*{1,3}", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"(?<![A-Za-z0-9])_{1,2}(.+?)_{1,2}(?![A-Za-z0-9])", r"\1", text, flags=re.DOTALL)
    # Headers
    text = re.sub(r"^#{1,6}\s+", "", text, flags=re.MULTILINE)
    # Code fences keep their content
    text = re.sub(r"```[\w-]*\n?(.*?)```", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"`(.+?)`", r"\1", text)
    # Links: [text](url) -> text (url)
    text = re.sub(r"\[(.+?)\]\((.+?)\)", r"\1 (\2)", text)
    return text.strip()


def _to_message(payload: dict[str, object]) -> Message | None:
    envelope = payload.get("envelope")
    if not isinstance(envelope, dict):
        return None
    data_message = envelope.get("dataMessage")
    if not isinstance(data_message, dict):
        return None

    text = data_message.get("message")
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        return None

    source = str(envelope.get("sourceNumber") or envelope.get("source") or "unknown")
    timestamp_ms = int(envelope.get("timestamp") or 0)
    timestamp = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)

    group_info = data_message.get("groupInfo")
    if isinstance(group_info, dict) and isinstance(group_info.get("groupId"), str):
        tenant_id = group_info["groupId"]
    else:
        tenant_id = source

    return Message(
        tenant_id=tenant_id,
        sender_id=source,
        text=text,
        timestamp=timestamp,
        message_id=str(envelope.get("timestamp") or ""),
    )
