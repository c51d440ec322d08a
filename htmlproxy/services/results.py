import logging
from collections import OrderedDict

from htmlproxy.schemas.fetch import FetchResult

logger = logging.getLogger(__name__)


class ResultBuffer:
    """Results keyed by request id, delivered at most once.

    ``pop`` evicts on read. Ids whose caller gave up (timeout) are marked
    abandoned so a late write is dropped, and the buffer never holds more
    than ``max_size`` entries: the oldest unclaimed result goes first.
    """

    def __init__(self, max_size: int = 256):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._results: OrderedDict[str, FetchResult] = OrderedDict()
        self._abandoned: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._results

    def put(self, result: FetchResult) -> None:
        rid = result.request_id
        if rid in self._abandoned:
            del self._abandoned[rid]
            logger.debug(f"Dropping late result for abandoned request {rid}")
            return
        if rid in self._results:
            logger.warning(f"Duplicate result for request {rid} ignored")
            return
        self._results[rid] = result
        while len(self._results) > self.max_size:
            evicted, _ = self._results.popitem(last=False)
            logger.warning(f"Result buffer full, evicted unclaimed result {evicted}")

    def pop(self, request_id: str) -> FetchResult | None:
        return self._results.pop(request_id, None)

    def abandon(self, request_id: str) -> None:
        """Forget ``request_id``; a result written later is discarded."""
        if self._results.pop(request_id, None) is not None:
            return
        self._abandoned[request_id] = None
        while len(self._abandoned) > self.max_size:
            self._abandoned.popitem(last=False)
