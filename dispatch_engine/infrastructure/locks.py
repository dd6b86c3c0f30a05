"""
Redis-based distributed lock for the background sweeps.

With several API processes running, only one instance expires offers,
releases escrow or recomputes demand per tick.  The dispatch path itself
never takes this lock: assignment safety comes from compare-and-swap on
``assignment_version``.

Acquire is ``SET NX EX``; release is a Lua check-and-delete so a process
whose lock already expired cannot delete the next owner's key.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    pass


class DistributedLock:
    def __init__(
        self,
        client: aioredis.Redis,
        name: str,
        ttl_seconds: int = 30,
        *,
        namespace: str = "dispatch",
    ):
        self.redis = client
        self.key = f"{namespace}:lock:{name}"
        self.ttl = ttl_seconds
        self.token = uuid.uuid4().hex

    async def acquire(self) -> bool:
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> bool:
        """Delete the key if this holder still owns it.

        Returns False when the TTL ran out first, i.e. the protected work
        took longer than ``ttl`` and may have overlapped another holder.
        """
        return bool(await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token))

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
