"""Model pricing table persisted to parquet, seedable from YAML."""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import yaml

from ..models import Pricing

logger = logging.getLogger(__name__)


class PricingStore:
    """Exact-name pricing lookup.

    Rows are kept in memory and written to ``pricing.parquet`` in
    ``data_dir`` on every upsert when a data directory is given.
    """

    schema = pa.schema(
        [
            ("model_name", pa.string()),
            ("provider", pa.string()),
            ("input_price_per_million", pa.float64()),
            ("output_price_per_million", pa.float64()),
            ("cache_read_price_per_million", pa.float64()),
            ("cache_write_price_per_million", pa.float64()),
            ("source", pa.string()),
        ]
    )

    def __init__(self, data_dir: Optional[Path] = None, seed_file: Optional[str] = None):
        self.lock = threading.Lock()
        self.rows: Dict[str, Pricing] = {}
        self.path = None

        if data_dir is not None:
            data_dir = Path(data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self.path = data_dir / "pricing.parquet"
            self._load()

        if seed_file:
            self.load_yaml(seed_file)

    def _load(self):
        if not self.path.exists():
            return
        df = pq.read_table(self.path).to_pandas()
        for record in df.to_dict("records"):
            for key in ("cache_read_price_per_million", "cache_write_price_per_million"):
                if pd.isna(record.get(key)):
                    record[key] = None
            pricing = Pricing.from_dict(record)
            self.rows[pricing.model_name] = pricing
        logger.info(f"Loaded pricing for {len(self.rows)} models from {self.path}")

    def load_yaml(self, path: str) -> int:
        """Upsert entries from a YAML file keyed by model name."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        entries = []
        for model_name, values in data.items():
            entries.append(Pricing.from_dict({"model_name": model_name, **values}))
        return self.upsert(entries)

    def get_pricing(self, model: str) -> Optional[Pricing]:
        with self.lock:
            return self.rows.get(model)

    def upsert(self, entries: Iterable[Pricing]) -> int:
        count = 0
        with self.lock:
            for pricing in entries:
                self.rows[pricing.model_name] = pricing
                count += 1
            self._flush()
        logger.debug(f"Upserted {count} pricing rows")
        return count

    def all(self) -> List[Pricing]:
        with self.lock:
            return sorted(self.rows.values(), key=lambda p: (p.provider, p.model_name))

    def _flush(self):
        if self.path is None:
            return
        table = pa.Table.from_pylist([p.to_dict() for p in self.rows.values()], schema=self.schema)
        pq.write_table(table, self.path, compression="snappy")
