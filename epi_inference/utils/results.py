"""Append-only results table.

One row per completed optimisation or evaluation run: every parameter as a
float column, ``loglik``, ``loglik_se`` and optional bookkeeping columns.
Rows are accumulated in memory and, when a path is given, appended to a CSV
file. Writing only happens when a run has finished, never inside a filter pass.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

BOOKKEEPING_COLUMNS = ('kind', 'run_id', 'seed', 'n_failures')


class ResultsTable:
    """Accumulates result rows with a fixed column order.

    Args:
        param_names: Parameter columns, in order.
        path: Optional CSV file. Existing rows are loaded and new rows appended.
        extra_columns: Bookkeeping columns written after ``loglik_se``.
    """

    def __init__(
        self,
        param_names: Sequence[str],
        path: Optional[Union[str, Path]] = None,
        extra_columns: Sequence[str] = BOOKKEEPING_COLUMNS,
    ):
        self.param_names = tuple(param_names)
        self.columns = self.param_names + ('loglik', 'loglik_se') + tuple(extra_columns)
        self.path = Path(path) if path is not None else None
        self._rows: List[Dict] = []
        if self.path is not None and self.path.exists() and self.path.stat().st_size > 0:
            existing = pd.read_csv(self.path)
            missing = [c for c in self.columns if c not in existing.columns]
            if missing:
                raise ValueError(f"{self.path} lacks columns {missing}")
            self._rows = existing[list(self.columns)].to_dict('records')
            logger.info("Loaded %d existing rows from %s", len(self._rows), self.path)

    def __len__(self) -> int:
        return len(self._rows)

    def _normalise(self, row: Mapping) -> Dict:
        missing = [p for p in self.param_names + ('loglik',) if p not in row]
        if missing:
            raise KeyError(f"result row lacks {missing}")
        out = {name: float(row[name]) for name in self.param_names}
        out['loglik'] = float(row['loglik'])
        se = row.get('loglik_se')
        out['loglik_se'] = float('nan') if se is None else float(se)
        for col in self.columns[len(self.param_names) + 2:]:
            out[col] = row.get(col)
        return out

    def append(self, row: Mapping) -> None:
        """Add one row and, if the table has a path, append it to the file."""
        self.extend([row])

    def extend(self, rows: Iterable[Mapping]) -> None:
        new = [self._normalise(r) for r in rows]
        if not new:
            return
        self._rows.extend(new)
        if self.path is not None:
            write_header = not self.path.exists() or self.path.stat().st_size == 0
            self.path.parent.mkdir(parents=True, exist_ok=True)
            pd.DataFrame(new, columns=list(self.columns)).to_csv(
                self.path, mode='a', header=write_header, index=False)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._rows, columns=list(self.columns))

    def best(self, n: int = 1) -> pd.DataFrame:
        """The ``n`` rows with the highest finite log-likelihood."""
        frame = self.to_frame()
        frame = frame[np.isfinite(frame["loglik"].to_numpy(dtype=float))]
        return frame.sort_values('loglik', ascending=False).head(n)
