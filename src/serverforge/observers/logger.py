from __future__ import annotations
import logging
from .events import BaseEvent, StageFailed, RunFailed


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "host"))

        if isinstance(event, (StageFailed, RunFailed)):
            self.logger.error(f"[EVENT] {etype}: {msg}")
        else:
            self.logger.debug(f"[EVENT] {etype}: {msg}")
