# rpc.py - Stored procedures with primitive-operation fallbacks
#
# The database may ship optimized procedures (update_task_status,
# add_task_comment, ...). When one is missing, the equivalent direct table
# operations run instead. Whether a procedure exists is checked once and
# remembered for the life of the process.

import logging
import os
from typing import Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger("letterdesk.rpc")

T = TypeVar("T")

PROCEDURES_ENABLED = os.getenv("STORE_PROCEDURES_ENABLED", "true").lower() == "true"


class RpcUnavailableError(Exception):
    """The stored procedure does not exist (capability missing, not a business error)"""

    def __init__(self, name: str):
        super().__init__(f"Stored procedure '{name}' is not available")
        self.name = name


class ProcedureRegistry:
    """Process-lifetime record of which procedures the database provides"""

    def __init__(self, enabled: bool = PROCEDURES_ENABLED):
        self.enabled = enabled
        self._known: Dict[str, bool] = {}

    def should_try(self, name: str) -> bool:
        return self.enabled and self._known.get(name, True)

    def mark_available(self, name: str) -> None:
        self._known[name] = True

    def mark_unavailable(self, name: str) -> None:
        if self._known.get(name) is not False:
            logger.warning(f"Stored procedure '{name}' not found; switching to direct store operations")
        self._known[name] = False

    def status(self, name: str) -> Optional[bool]:
        return self._known.get(name)

    def snapshot(self) -> Dict[str, bool]:
        return dict(self._known)


class RemoteProcedure:
    """Strategy: run the stored procedure, or its equivalent primitive operations.

    Only ``RpcUnavailableError`` triggers the fallback; every other error from
    the procedure propagates unchanged.
    """

    def __init__(
        self,
        name: str,
        registry: ProcedureRegistry,
        remote: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
    ):
        self.name = name
        self._registry = registry
        self._remote = remote
        self._fallback = fallback

    async def run(self) -> T:
        if self._registry.should_try(self.name):
            try:
                result = await self._remote()
            except RpcUnavailableError:
                self._registry.mark_unavailable(self.name)
            else:
                self._registry.mark_available(self.name)
                return result

        logger.warning(f"Degraded mode: running '{self.name}' through direct store operations")
        return await self._fallback()
