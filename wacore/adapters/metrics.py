from __future__ import annotations

from typing import Any, ClassVar, Dict

import structlog


logger = structlog.get_logger(__name__)


class Metrics:
    """In-process counters emitted as ``metric_increment`` log events.

    Counters are process-global; tests call :meth:`reset` to isolate runs.
    """

    _counters: ClassVar[Dict[str, int]] = {}

    @classmethod
    def inc(cls, name: str, value: int = 1, **labels: Any) -> None:
        cls._counters[name] = cls._counters.get(name, 0) + value
        logger.info("metric_increment", metric=name, value=value, **({"labels": labels} if labels else {}))

    @classmethod
    def get(cls, name: str) -> int:
        return int(cls._counters.get(name, 0))

    @classmethod
    def reset(cls) -> None:
        cls._counters.clear()
