"""
Windowed, all-settled batch execution for per-document classification.

At most `batch_cap` items run, in sequential windows of `chunk_size`
concurrent calls. One item's failure never aborts the batch; every item
yields its own outcome record. Items beyond the cap are reported deferred.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 3
DEFAULT_BATCH_CAP = 20


@dataclass
class BatchOutcome:
    """Outcome of one item in a batch."""
    document_id: str
    ok: bool
    result: Any = None
    error: Optional[str] = None
    deferred: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        return {
            "document_id": self.document_id,
            "ok": self.ok,
            "result": result,
            "error": self.error,
            "deferred": self.deferred,
        }


def classify_batch(
    items: Sequence[T],
    fn: Callable[[T], Any],
    document_id: Callable[[T], str],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    batch_cap: int = DEFAULT_BATCH_CAP,
) -> List[BatchOutcome]:
    """
    Run `fn` over items in concurrency windows.

    Args:
        items: Work items
        fn: Per-item call
        document_id: Extracts the identifier recorded in each outcome
        chunk_size: Concurrent calls per window
        batch_cap: Maximum items processed; the rest are deferred

    Returns:
        One BatchOutcome per input item, in input order
    """
    chunk_size = max(1, chunk_size)
    batch_cap = max(0, batch_cap)
    processed = list(items[:batch_cap])
    outcomes: Dict[int, BatchOutcome] = {}

    for start in range(0, len(processed), chunk_size):
        window = processed[start:start + chunk_size]
        with ThreadPoolExecutor(max_workers=len(window)) as executor:
            futures = {
                executor.submit(fn, item): start + offset
                for offset, item in enumerate(window)
            }
            for future in as_completed(futures):
                index = futures[future]
                doc_id = document_id(processed[index])
                try:
                    outcomes[index] = BatchOutcome(document_id=doc_id, ok=True, result=future.result())
                except Exception as e:
                    logger.error(f"Batch item {doc_id} failed: {e}")
                    outcomes[index] = BatchOutcome(document_id=doc_id, ok=False, error=str(e))

    results = [outcomes[i] for i in range(len(processed))]

    for item in items[batch_cap:]:
        results.append(BatchOutcome(
            document_id=document_id(item),
            ok=False,
            error="Batch cap reached",
            deferred=True,
        ))

    if len(items) > batch_cap:
        logger.warning(f"Batch cap {batch_cap} reached; deferred {len(items) - batch_cap} item(s)")

    return results
