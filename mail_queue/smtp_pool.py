"""Asyncio-friendly SMTP connection pool."""

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

ServerKey = Tuple[str, int, Optional[str], Optional[str], bool]


class SMTPPool:
    """Keep one SMTP connection per asyncio task and reuse it between sends.

    Connections older than ``ttl`` seconds, or opened against a different
    server, are closed and replaced.
    """

    def __init__(self, ttl: int = 300, timeout: float = 10.0):
        self.ttl = ttl
        self.timeout = timeout
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float, ServerKey]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, key: ServerKey) -> aiosmtplib.SMTP:
        host, port, user, password, use_tls = key
        # use_tls means implicit TLS (port 465); plain connections never upgrade
        smtp = aiosmtplib.SMTP(
            hostname=host, port=port, start_tls=False, use_tls=use_tls, timeout=self.timeout
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError, RuntimeError):
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, RuntimeError):
            pass

    async def get_connection(
        self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Return a live connection bound to the calling task."""
        task_id = id(asyncio.current_task())
        key: ServerKey = (host, port, user, password, use_tls)

        async with self.lock:
            entry = self.pool.pop(task_id, None)

        if entry:
            smtp, last_used, params = entry
            if params == key and (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), key)
                return smtp
            await self._close(smtp)

        smtp = await self._connect(key)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), key)
        return smtp

    async def discard(self) -> None:
        """Drop the connection bound to the calling task, e.g. after a send error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._close(entry[0])

    async def cleanup(self) -> None:
        """Close expired or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired = []
        for task_id, (smtp, last_used, _params) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._close(entry[0])

    async def close_all(self) -> None:
        """Close every pooled connection, used at shutdown."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used, _params in entries:
            await self._close(smtp)
