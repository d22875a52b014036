"""
auth/notify.py -- Fail-ban feed for failed logins.

Each failed login that moves the throttle publishes one line on a Redis
pub/sub channel that the fail-ban daemon subscribes to:

    "<app> UI: Invalid password for <username> by <remote_address>"

Publishing is fire-and-forget. A Redis outage must never change a login
result, so transport errors are logged and dropped here.
"""

from __future__ import annotations

import logging

import redis

from core.config import get_settings

logger = logging.getLogger("mailadmin.auth.notify")


class FailBanNotifier:
    """Publishes failed-login lines to the fail-ban channel.

    The Redis client is created lazily by redis-py: no connection is opened
    until the first publish.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        channel: str | None = None,
        app_name: str | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client if client is not None else redis.Redis.from_url(settings.redis_url, socket_timeout=1)
        self.channel = channel or settings.failban_channel
        self.app_name = app_name or settings.app_name

    def message(self, username: str, remote_addr: str) -> str:
        return f"{self.app_name} UI: Invalid password for {username} by {remote_addr}"

    def failed_login(self, username: str, remote_addr: str) -> None:
        line = self.message(username, remote_addr)
        logger.warning(line)
        try:
            self._client.publish(self.channel, line)
        except redis.RedisError as exc:
            logger.warning("Fail-ban publish to %s failed: %s", self.channel, exc)
