"""
Discord command listener
Polls an admin channel for chat commands and serves them through the control channel
"""

import asyncio
import aiohttp
from typing import Any, Dict, List, Optional
import logging

from .control import ControlChannel, CommandParseError, parse_command
from ..utils.config_loader import NotificationConfig

logger = logging.getLogger(__name__)

DISCORD_API_URL = "https://discord.com/api/v10"

COMMAND_PREFIXES = ("/", "!")
MAX_MESSAGE_LENGTH = 2000
FETCH_LIMIT = 50


class DiscordError(Exception):
    """Raised when the Discord REST API cannot be reached or rejects a call"""


class DiscordCommandListener:
    """
    Reads new messages from one Discord channel with a bot token and
    answers the ones that start with "/" or "!".

    Only messages posted after the listener starts are served. Admin checks
    happen in the control channel, so anyone's command is forwarded and
    non-admins get the denial as a reply.
    """

    def __init__(self, config: NotificationConfig, control: ControlChannel):
        self.config = config
        self.control = control
        self.last_message_id: Optional[str] = None
        self.commands_served = 0
        self.errors = 0

        self._seeded = False
        self._session: Optional[aiohttp.ClientSession] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.bot_token and self.config.channel_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict] = None,
        payload: Optional[Dict] = None
    ) -> Any:
        session = await self._get_session()
        headers = {"Authorization": f"Bot {self.config.bot_token}"}

        try:
            async with session.request(
                method, f"{DISCORD_API_URL}{path}", params=params, json=payload, headers=headers
            ) as response:
                data = await response.json(content_type=None)
                if response.status >= 400:
                    message = data.get("message") if isinstance(data, dict) else data
                    raise DiscordError(f"Discord API Error {response.status}: {message}")
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DiscordError(f"Discord request failed: {e}") from e
        except ValueError as e:
            raise DiscordError(f"Discord returned a non-JSON reply: {e}") from e

    async def _fetch_messages(self, after: Optional[str] = None, limit: int = FETCH_LIMIT) -> List[Dict]:
        params = {"limit": limit}
        if after:
            params["after"] = after

        data = await self._request("GET", f"/channels/{self.config.channel_id}/messages", params=params)
        if not isinstance(data, list):
            raise DiscordError("Discord returned an unexpected message list")

        messages = [m for m in data if isinstance(m, dict) and str(m.get("id", "")).isdigit()]
        return sorted(messages, key=lambda m: int(m["id"]))

    async def _seed(self) -> None:
        """Skip everything already in the channel"""
        latest = await self._fetch_messages(limit=1)
        if latest:
            self.last_message_id = str(latest[-1]["id"])
        self._seeded = True
        logger.info(f"Listening for commands in Discord channel {self.config.channel_id}")

    async def _reply(self, message_id: str, text: str) -> None:
        try:
            await self._request("POST", f"/channels/{self.config.channel_id}/messages", payload={
                "content": text[:MAX_MESSAGE_LENGTH],
                "message_reference": {"message_id": message_id},
                "allowed_mentions": {"parse": []},
            })
        except DiscordError as e:
            self.errors += 1
            logger.error(f"Failed to reply to Discord message {message_id}: {e}")

    async def _serve(self, message: Dict) -> bool:
        author = message.get("author") or {}
        if author.get("bot"):
            return False

        content = str(message.get("content") or "").strip()
        if not content.startswith(COMMAND_PREFIXES):
            return False

        try:
            command = parse_command(content[1:], str(author.get("id", "")))
        except CommandParseError as e:
            reply = f"{e}. Send /help for the command list."
        else:
            reply = await self.control.submit(command)

        await self._reply(str(message["id"]), reply)
        return True

    async def poll_once(self) -> int:
        """
        Serve commands posted since the last poll.

        Returns:
            Number of commands answered

        Raises:
            DiscordError: the channel could not be read
        """
        if not self._seeded:
            await self._seed()
            return 0

        messages = await self._fetch_messages(after=self.last_message_id)
        served = 0

        for message in messages:
            # Advance first so a command is never replayed
            self.last_message_id = str(message["id"])
            if await self._serve(message):
                served += 1

        self.commands_served += served
        return served

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except DiscordError as e:
                self.errors += 1
                logger.error(f"Discord command poll failed: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.command_poll_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if not self.enabled:
            logger.info("No Discord bot token or channel configured. Chat commands disabled.")
            return
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="discord-commands")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
        await self.close()
