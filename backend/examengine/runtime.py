"""Holder for the current exam context and its periodic timer.

The HTTP layer and the ticker thread share one `ExamContext`; every access
goes through `ExamRuntime.lock` so a tick and an answer never interleave.
"""

import json
import logging
import threading
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from . import database
from .config import Settings, settings as default_settings
from .services import EngineState, ExamContext, ExamSessionService
from .timer import TimerPolicy
from .utils.sync_jobs import SyncDispatcher
from .utils.ticker import Ticker

logger = logging.getLogger("examengine.runtime")


class ExamRuntime:
    def __init__(self, engine: Optional[Engine] = None, config: Optional[Settings] = None, dispatcher: Optional[SyncDispatcher] = None):
        self._engine = engine
        self.settings = config or default_settings
        self.dispatcher = dispatcher
        self.lock = threading.RLock()
        self._ctx: Optional[ExamContext] = None
        self._ticker: Optional[Ticker] = None

    @property
    def engine(self) -> Engine:
        return self._engine or database.engine

    def service(self, db: Session) -> ExamSessionService:
        return ExamSessionService(db, config=self.settings, dispatcher=self.dispatcher)

    @property
    def current(self) -> Optional[ExamContext]:
        return self._ctx

    @property
    def ticking(self) -> bool:
        return self._ticker is not None and self._ticker.running

    def activate(self, ctx: ExamContext) -> None:
        """Make `ctx` current, replacing (and untimering) any previous one."""
        with self.lock:
            self._cancel_ticker()
            self._ctx = ctx
            if ctx.state == EngineState.ACTIVE and ctx.policy != TimerPolicy.NONE:
                key = ctx.key
                ticker = Ticker(self.settings.TICK_INTERVAL_SECONDS, lambda: self._on_tick(ctx, key))
                self._ticker = ticker
                ticker.start()

    def settle(self) -> None:
        """Stop the timer once the current context has left ACTIVE."""
        with self.lock:
            if self._ctx is None or self._ctx.state != EngineState.ACTIVE:
                self._cancel_ticker()

    def clear(self) -> None:
        with self.lock:
            self._cancel_ticker()
            self._ctx = None

    def _on_tick(self, ctx: ExamContext, key) -> None:
        with self.lock:
            if self._ctx is not ctx or ctx.key != key or ctx.state != EngineState.ACTIVE:
                logger.debug("stale_tick %s", json.dumps({"questions": len(key)}, ensure_ascii=True))
                return
            with Session(self.engine) as db:
                self.service(db).tick(ctx)
            if ctx.state != EngineState.ACTIVE:
                self._cancel_ticker()

    def _cancel_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
