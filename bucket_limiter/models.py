from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class BucketConfig:
    name: str
    capacity: int
    # Exactly one of rate (tokens/second) or fill_interval (seconds) is set
    rate: Optional[float] = None
    fill_interval: Optional[float] = None
    quantum: int = 1


@dataclass
class AppConfig:
    buckets: List[BucketConfig] = field(default_factory=list)
