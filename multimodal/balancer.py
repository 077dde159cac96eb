import logging
import time
from dataclasses import dataclass
from typing import Callable

from crawler.core import ConfigError

logger = logging.getLogger(__name__)

ADAPTIVE_STEP = 0.1
# Hours (local) when time-based balancing favours backfill
OFF_PEAK_HOURS = range(0, 6)
OFF_PEAK_HISTORICAL_RATIO = 0.7


@dataclass(frozen=True)
class Balance:
    historical: float
    newest: float

    def quotas(self, batch_size: int):
        historical = int(round(batch_size * self.historical))
        return {"historical": historical, "newest": batch_size - historical}

    def to_dict(self):
        return {"historical": round(self.historical, 4), "newest": round(self.newest, 4)}


class CrawlBalancer:
    """
    Splits each batch between the `newest` lane (front pages, hubs) and the `historical`
    lane (pagination backfill).

    - fixed:      always the configured ratio
    - adaptive:   drifts toward newest while the historical backlog is empty, back once it refills
    - priority:   newest first, historical only gets what newest cannot fill
    - time-based: off-peak hours favour backfill
    """

    def __init__(self, strategy: str = "adaptive", historical_ratio: float = 0.3,
                 clock: Callable[[], float] = time.time):
        if strategy not in ("fixed", "adaptive", "priority", "time-based"):
            raise ConfigError(f"unknown balancing strategy '{strategy}'")
        self.strategy = strategy
        self.base_ratio = historical_ratio
        self.current_ratio = historical_ratio
        self.clock = clock

    def get_balance(self, batch_number: int, newest_backlog: int = 0, historical_backlog: int = 0,
                    batch_size: int = 1000) -> Balance:
        if self.strategy == "fixed":
            ratio = self.base_ratio
        elif self.strategy == "adaptive":
            ratio = self._adaptive(historical_backlog, batch_size)
        elif self.strategy == "priority":
            if newest_backlog >= batch_size:
                ratio = 0.0
            else:
                ratio = min(1.0, max(0.0, 1.0 - newest_backlog / max(1, batch_size)))
        else:
            hour = time.localtime(self.clock()).tm_hour
            ratio = max(self.base_ratio, OFF_PEAK_HISTORICAL_RATIO) if hour in OFF_PEAK_HOURS else self.base_ratio

        ratio = round(min(1.0, max(0.0, ratio)), 4)
        self.current_ratio = ratio
        logger.debug(f"[BALANCE] batch {batch_number} strategy={self.strategy} historical={ratio}")
        return Balance(historical=ratio, newest=round(1.0 - ratio, 4))

    def _adaptive(self, historical_backlog: int, batch_size: int) -> float:
        wanted = int(round(batch_size * self.current_ratio))
        if historical_backlog == 0:
            return max(0.0, self.current_ratio - ADAPTIVE_STEP)
        if historical_backlog >= wanted:
            return min(self.base_ratio, self.current_ratio + ADAPTIVE_STEP) \
                if self.current_ratio < self.base_ratio else self.current_ratio
        return self.current_ratio

    def state(self):
        return {"strategy": self.strategy, "current_ratio": self.current_ratio}

    def restore(self, state):
        if state and state.get("strategy") == self.strategy:
            self.current_ratio = float(state.get("current_ratio", self.base_ratio))
