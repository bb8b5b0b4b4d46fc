from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from rx_lifecycle.models import Order, Prescription, Product

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """
    Durable id -> record mapping with load/save semantics.

    Records go in and come out through ``to_dict`` / ``from_dict``, so a
    record returned by :meth:`get` is always a private copy.
    """

    def __init__(self, model: Any):
        self.model = model

    @abstractmethod
    def get(self, record_id: str) -> Optional[Any]: ...

    @abstractmethod
    def save(self, record: Any) -> None: ...

    @abstractmethod
    def all(self) -> List[Any]: ...

    def __contains__(self, record_id: object) -> bool:
        return isinstance(record_id, str) and self.get(record_id) is not None


class InMemoryRecordStore(RecordStore):
    def __init__(self, model: Any):
        super().__init__(model)
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, record_id: str) -> Optional[Any]:
        with self._lock:
            row = self._rows.get(record_id)
        return None if row is None else self.model.from_dict(row)

    def save(self, record: Any) -> None:
        row = record.to_dict()
        with self._lock:
            self._rows[record.id] = row

    def all(self) -> List[Any]:
        with self._lock:
            rows = list(self._rows.values())
        return [self.model.from_dict(row) for row in rows]


class JsonFileRecordStore(InMemoryRecordStore):
    """
    In-memory rows mirrored to a single JSON file.

    The file is read once on construction and rewritten atomically
    (temp file + ``os.replace``) on every save.
    """

    def __init__(self, model: Any, path: str | os.PathLike[str]):
        super().__init__(model)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        rows = payload.get("records", [])
        with self._lock:
            self._rows = {row["id"]: row for row in rows}
        logger.info("loaded %d records from %s", len(rows), self.path)

    def save(self, record: Any) -> None:
        row = record.to_dict()
        with self._lock:
            self._rows[record.id] = row
            self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"records": list(self._rows.values())}
        fd, tmp_path = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise


class Store:
    """
    The three repositories the engine works against, plus an audit trail.

    ``logs`` keeps every lifecycle step in order (handy for demos and tests);
    each entry is also sent to the module logger.
    """

    def __init__(
        self,
        products: Optional[RecordStore] = None,
        orders: Optional[RecordStore] = None,
        prescriptions: Optional[RecordStore] = None,
    ) -> None:
        self.products = products or InMemoryRecordStore(Product)
        self.orders = orders or InMemoryRecordStore(Order)
        self.prescriptions = prescriptions or InMemoryRecordStore(Prescription)

        self.logs: List[str] = []

    @classmethod
    def in_directory(cls, data_dir: str | os.PathLike[str]) -> "Store":
        base = Path(data_dir)
        return cls(
            products=JsonFileRecordStore(Product, base / "products.json"),
            orders=JsonFileRecordStore(Order, base / "orders.json"),
            prescriptions=JsonFileRecordStore(Prescription, base / "prescriptions.json"),
        )

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.info(message)

    # Seed helpers (catalog management lives outside the engine)
    def add_product(self, product_id: str, price: int, stock: int, name: str = "") -> Product:
        product = Product(id=product_id, price=price, stock=stock, name=name)
        self.products.save(product)
        return product


