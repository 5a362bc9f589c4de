"""
Handle for one asynchronous command.

The worker thread pushes OutputEvents and a single completion marker onto a
queue. The consumer pulls them with drain() or events(), so callbacks always
run on whichever thread the consumer picked as its coordination context.
"""

from __future__ import annotations
import queue
import threading
import logging
from typing import Optional, Callable, Iterator, List

from .models import OutputEvent

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, bool], None]
CompleteCallback = Callable[[], None]

_COMPLETE = object()


class CommandHandle:
    """
    One running (or finished) async command.

    Worker side: emit() / finish().
    Consumer side: drain() / events() / wait().
    """

    def __init__(
        self,
        command: str,
        on_output: Optional[OutputCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ):
        self.command = command
        self._on_output = on_output
        self._on_complete = on_complete

        self._queue: "queue.Queue[object]" = queue.Queue()
        self._finished = threading.Event()    # worker is done producing
        self._delivered = threading.Event()   # consumer has seen completion
        self._lock = threading.Lock()
        self._output: List[OutputEvent] = []

    def __repr__(self) -> str:
        return f"<CommandHandle {self.command!r} done={self.done}>"

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def emit(self, text: str, is_error: bool = False, fragment: bool = False) -> None:
        """Queue one output event. Ignored after finish()."""
        if self._finished.is_set():
            logger.warning(f"Output after completion dropped ({self.command}): {text!r}")
            return
        self._queue.put(OutputEvent(text, is_error, fragment))

    def error(self, text: str) -> None:
        self.emit(text, True)

    def finish(self) -> None:
        """Queue the completion marker. Only the first call counts."""
        with self._lock:
            if self._finished.is_set():
                return
            self._finished.set()
        self._queue.put(_COMPLETE)

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    @property
    def done(self) -> bool:
        """The worker has finished producing events."""
        return self._finished.is_set()

    @property
    def completed(self) -> bool:
        """The consumer has received the completion."""
        return self._delivered.is_set()

    @property
    def output(self) -> List[OutputEvent]:
        """Every event delivered so far, in order."""
        return list(self._output)

    @property
    def result(self) -> List[OutputEvent]:
        return self.output

    @property
    def failed(self) -> bool:
        return any(event.is_error for event in self._output)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker finished. Does not deliver events."""
        return self._finished.wait(timeout)

    def drain(self) -> List[OutputEvent]:
        """Deliver whatever is queued right now, without blocking."""
        delivered = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            event = self._deliver(item)
            if event is not None:
                delivered.append(event)

    def events(self, timeout: Optional[float] = None) -> Iterator[OutputEvent]:
        """
        Yield events until completion.

        timeout bounds the wait for each next event; on expiry the iterator
        simply stops and can be resumed later.
        """
        while not self._delivered.is_set():
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return
            event = self._deliver(item)
            if event is not None:
                yield event

    def _deliver(self, item: object) -> Optional[OutputEvent]:
        if item is _COMPLETE:
            self._delivered.set()
            if self._on_complete:
                try:
                    self._on_complete()
                except Exception as e:
                    logger.exception(f"Completion callback error ({self.command}): {e}")
            return None

        self._output.append(item)
        if self._on_output:
            try:
                self._on_output(item.text, item.is_error)
            except Exception as e:
                logger.exception(f"Output callback error ({self.command}): {e}")
        return item
