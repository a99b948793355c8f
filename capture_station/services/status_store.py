from dataclasses import dataclass, field
from typing import List, Optional

MAX_LOGS = 200


@dataclass
class StatusStore:
    last_error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    def log(self, msg: str):
        self.logs.append(msg)
        if len(self.logs) > MAX_LOGS:
            self.logs = self.logs[-MAX_LOGS:]

    def tail(self, n: int = 50) -> List[str]:
        return self.logs[-n:]
