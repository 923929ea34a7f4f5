"""
Per-deal document storage using JSON files.
Allows main.py, server.py and the gatekeeper to share document rows.
"""
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Any

from state import DocumentRow

logger = logging.getLogger(__name__)


class DocumentStore:
    """One JSON file per deal holding that deal's document rows, keyed by id."""

    def __init__(self, storage_dir: str):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _deal_path(self, deal_id: str) -> Path:
        return self.storage_dir / f"{deal_id}.json"

    def _load(self, deal_id: str) -> Dict[str, DocumentRow]:
        file_path = self._deal_path(deal_id)
        if not file_path.exists():
            return {}
        with open(file_path, 'r') as f:
            return json.load(f)

    def _write(self, deal_id: str, rows: Dict[str, DocumentRow]) -> None:
        with open(self._deal_path(deal_id), 'w') as f:
            json.dump(rows, f, indent=2, default=str)

    def save_document(self, deal_id: str, document: DocumentRow) -> DocumentRow:
        """Insert or replace a document row."""
        doc_id = str(document["id"])
        row: DocumentRow = {**document, "id": doc_id, "deal_id": deal_id}  # type: ignore[typeddict-item]

        # Drop None values the same way deals are saved
        row = {k: v for k, v in row.items() if v is not None}  # type: ignore[assignment]

        with self._lock:
            rows = self._load(deal_id)
            rows[doc_id] = row
            self._write(deal_id, rows)

        logger.info(f"Saved document {doc_id} for deal {deal_id}")
        return row

    def get_document(self, deal_id: str, doc_id: str) -> Optional[DocumentRow]:
        """Load one document row."""
        with self._lock:
            return self._load(deal_id).get(str(doc_id))

    def list_documents(self, deal_id: str) -> List[DocumentRow]:
        """All document rows of a deal, in insertion order."""
        with self._lock:
            return list(self._load(deal_id).values())

    def update_document(self, deal_id: str, doc_id: str, updates: Dict[str, Any]) -> Optional[DocumentRow]:
        """Update specific fields of a document row."""
        with self._lock:
            rows = self._load(deal_id)
            row = rows.get(str(doc_id))
            if row is None:
                return None
            row.update(updates)  # type: ignore[typeddict-item]
            self._write(deal_id, rows)
        return row

    def merge_document(self, deal_id: str, document: DocumentRow) -> DocumentRow:
        """Merge non-None fields into a stored row, inserting it if absent."""
        doc_id = str(document["id"])
        updates = {k: v for k, v in document.items() if v is not None}

        with self._lock:
            rows = self._load(deal_id)
            row = {**rows.get(doc_id, {}), **updates, "id": doc_id, "deal_id": deal_id}
            rows[doc_id] = row  # type: ignore[assignment]
            self._write(deal_id, rows)

        logger.info(f"Merged document {doc_id} for deal {deal_id}")
        return row  # type: ignore[return-value]

    def delete_deal(self, deal_id: str) -> bool:
        """Delete every document row of a deal."""
        with self._lock:
            file_path = self._deal_path(deal_id)
            if file_path.exists():
                file_path.unlink()
                logger.info(f"Deleted documents of deal {deal_id}")
                return True
        return False

    def list_deals(self) -> List[str]:
        """Ids of all deals with stored documents."""
        return sorted(p.stem for p in self.storage_dir.glob("*.json"))
