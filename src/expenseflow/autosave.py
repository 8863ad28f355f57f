from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import Settings
from .conversion import form_to_record
from .form_state import ExpenseFormState, FormStore, MarkSaved
from .models import ExpenseRecord

logger = logging.getLogger(__name__)

DEFAULT_DELAY_SECONDS = 30.0

# Returns the persisted expense id (or a record carrying one), or None.
PersistFn = Callable[[ExpenseRecord], Any]
TimerFactory = Callable[[float, Callable[[], None]], Any]


class AutoSaveScheduler:
    """Debounced background save of a dirty draft.

    Every new dirty generation restarts the countdown. When it fires and the
    draft is still dirty, the draft is packed with ``form_to_record`` and handed
    to ``persist``. ``MarkSaved`` is stamped with the generation captured before
    the call, so a save that races newer edits never clears their dirty flag.
    """

    def __init__(
        self,
        store: FormStore,
        persist: PersistFn,
        delay: float = DEFAULT_DELAY_SECONDS,
        on_error: Optional[Callable[[Exception], None]] = None,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.persist = persist
        self.delay = delay
        self.on_error = on_error
        self._timer_factory = timer_factory
        self._clock = clock
        self._timer: Any = None
        self._lock = threading.Lock()
        self._cancelled = False
        self._unsubscribe = store.subscribe(self._on_change)

    @classmethod
    def from_settings(
        cls, store: FormStore, persist: PersistFn, settings: Settings, **kwargs: Any
    ) -> "AutoSaveScheduler":
        return cls(store, persist, delay=settings.autosave_delay_seconds, **kwargs)

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def _on_change(self, previous: ExpenseFormState, current: ExpenseFormState) -> None:
        if current.is_dirty and current.generation != previous.generation:
            self._restart()

    def _restart(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(self.delay, self._fire)
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timer = timer
        timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if self._cancelled:
                return
        self.flush()

    def flush(self) -> bool:
        """Save now if the draft is dirty; returns True when a save landed."""
        state = self.store.state
        if not state.is_dirty or self._cancelled:
            return False

        generation = state.generation
        try:
            record = form_to_record(state.expense, user_id=self.store.user_id or None)
            result = self.persist(record)
        except Exception as exc:
            logger.warning(
                "Auto-save failed; draft stays dirty",
                extra={"generation": generation, "error": str(exc)},
            )
            if self.on_error is not None:
                self.on_error(exc)
            return False

        if self._cancelled:
            logger.debug("Auto-save finished after teardown; result ignored")
            return False
        self.store.dispatch(
            MarkSaved(timestamp=self._clock(), generation=generation, expense_id=_saved_id(result))
        )
        logger.info("Draft auto-saved", extra={"generation": generation})
        return True

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._unsubscribe()


def _saved_id(result: Any) -> Optional[str]:
    if result is None:
        return None
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        return result.get("id")
    return getattr(result, "id", None)
