from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class PunchEvent:
    """A punch on its way into the ledger, before admission."""
    employee_code: str
    punch_time: datetime  # naive, system-local
    direction: str  # in|out|unknown
    external_id: Optional[int] = None
    terminal_sn: Optional[str] = None
    terminal_alias: Optional[str] = None
    payload: Optional[dict] = field(default=None, repr=False)

    @property
    def is_access_control(self) -> bool:
        # Door-lock terminals share the id sequence but are not attendance
        return "lock" in (self.terminal_alias or "").lower()


class PunchSource:
    def fetch_by_time_range(self, start: datetime, end: datetime) -> List[PunchEvent]:
        raise NotImplementedError

    def fetch_by_id_range(self, start_id: int, end_id: int) -> List[PunchEvent]:
        raise NotImplementedError
