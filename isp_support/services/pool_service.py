import asyncio
from typing import Iterable, Optional

from isp_support.logging_config import get_logger

logger = get_logger("pool_service")


class SupportGroupPool:
    """Fixed set of agent relay groups, each free or busy.

    ``lock`` must be held by whoever pairs an allocation with the ticket
    status change, so allocate + claim is one critical section.
    """

    def __init__(self, group_ids: Iterable[str]):
        self.group_ids = list(dict.fromkeys(group_ids))
        self._busy: set[str] = set()
        self.lock = asyncio.Lock()

    def allocate(self) -> Optional[str]:
        """Mark the first free group busy and return it, or None."""
        for group_id in self.group_ids:
            if group_id not in self._busy:
                self._busy.add(group_id)
                logger.info(f"Group {group_id} allocated")
                return group_id
        logger.warning("No free support group", extra={"context": {"pool_size": len(self.group_ids)}})
        return None

    def release(self, group_id: str) -> bool:
        """Free a group. Releasing a free or unknown group is a no-op (returns False)."""
        if group_id not in self._busy:
            return False
        self._busy.discard(group_id)
        logger.info(f"Group {group_id} released")
        return True

    def restore(self, busy_group_ids: Iterable[str]) -> None:
        """Rebuild busy state from persisted session pointers."""
        for group_id in busy_group_ids:
            if group_id in self.group_ids:
                self._busy.add(group_id)
            else:
                logger.warning(f"Session bound to unknown group {group_id}")

    def is_busy(self, group_id: str) -> bool:
        return group_id in self._busy

    def is_member(self, group_id: str) -> bool:
        return group_id in self.group_ids

    def snapshot(self) -> dict[str, str]:
        return {group_id: ("busy" if group_id in self._busy else "free") for group_id in self.group_ids}
