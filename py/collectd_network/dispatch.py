"""デコード済みの value list をディスパッチャへ配送するワーカープール。

受信ループはバッチを ``submit`` するだけで配送完了を待たない。
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Sequence

from .api import Dispatcher, ValueList

LOGGER = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_MAX_PENDING = 1024

_STOP = object()


def deliver(batch: Sequence[ValueList], dispatcher: Dispatcher, logger: logging.Logger | None = None) -> int:
    """value list を順番にディスパッチし、失敗した件数を返す。"""

    logger = logger or LOGGER
    failures = 0
    for index, vl in enumerate(batch):
        try:
            dispatcher.dispatch(vl)
        except Exception:
            failures += 1
            logger.exception(
                "error while dispatching value list %d/%d (%s)",
                index + 1,
                len(batch),
                vl.identifier,
            )
    return failures


class DeliveryPool:
    """キューからバッチを受け取る固定数のワーカースレッド。"""

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        workers: int = DEFAULT_WORKERS,
        max_pending: int = DEFAULT_MAX_PENDING,
        logger: logging.Logger | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._logger = logger or LOGGER
        self.max_pending = max_pending
        self.dropped = 0
        self._pending = 0
        self._closed = False
        self._cond = threading.Condition()
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._threads = [
            threading.Thread(target=self._run, name=f"collectd-delivery-{i}", daemon=True)
            for i in range(max(1, workers))
        ]
        for thread in self._threads:
            thread.start()

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def submit(self, batch: Sequence[ValueList]) -> bool:
        """ブロックせずにバッチをキューへ積む。破棄した場合は False を返す。"""

        if not batch:
            return True
        with self._cond:
            if self._closed:
                raise RuntimeError("delivery pool is shut down")
            if self.max_pending and self._pending >= self.max_pending:
                self.dropped += 1
                self._logger.warning(
                    "delivery backlog full (%d batches), dropping %d value lists",
                    self._pending,
                    len(batch),
                )
                return False
            self._pending += 1
        self._queue.put(list(batch))
        return True

    def _run(self) -> None:
        while True:
            batch = self._queue.get()
            if batch is _STOP:
                return
            try:
                deliver(batch, self._dispatcher, self._logger)
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

    def join(self, timeout: float | None = None) -> bool:
        """受け付けたバッチがすべて配送されるまで待つ。"""

        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self, wait: bool = False, timeout: float | None = None) -> None:
        """キュー済みのバッチを配送し終えたらワーカーを止める。"""

        with self._cond:
            if self._closed:
                return
            self._closed = True
        for _ in self._threads:
            self._queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join(timeout)
