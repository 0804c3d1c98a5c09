"""Quantification matrix: features x samples values with row and column annotations."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)

BUNDLE_PARTS = ('values', 'feature_meta', 'sample_meta')


@dataclass(frozen=True, eq=False)
class QuantMatrix:
    """
    Features x samples matrix of log-scale abundances or ratios.

    values:       DataFrame, index = feature ids, columns = sample ids.
                  Every entry is a finite float or NaN (missing).
    feature_meta: DataFrame indexed by the same feature ids.
    sample_meta:  DataFrame indexed by the same sample ids.

    Instances are never modified in place; every transformation returns a new
    QuantMatrix built from copies.
    """

    values: pd.DataFrame
    feature_meta: pd.DataFrame
    sample_meta: pd.DataFrame

    def __post_init__(self):
        values = self.values.astype(float).replace([np.inf, -np.inf], np.nan)
        if not values.index.is_unique:
            dupes = values.index[values.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate feature ids: {dupes[:5]}")
        if not values.columns.is_unique:
            dupes = values.columns[values.columns.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate sample ids: {dupes[:5]}")

        feature_meta = self.feature_meta.reindex(values.index)
        sample_meta = self.sample_meta.reindex(values.columns)
        feature_meta.index.name = values.index.name
        sample_meta.index.name = values.columns.name

        object.__setattr__(self, 'values', values.copy())
        object.__setattr__(self, 'feature_meta', feature_meta.copy())
        object.__setattr__(self, 'sample_meta', sample_meta.copy())

    @property
    def features(self) -> pd.Index:
        return self.values.index

    @property
    def samples(self) -> pd.Index:
        return self.values.columns

    @property
    def shape(self) -> tuple[int, int]:
        return self.values.shape

    def missing_mask(self) -> pd.DataFrame:
        return self.values.isna()

    def with_values(self, values: pd.DataFrame) -> 'QuantMatrix':
        """New matrix with replaced values and the same annotations."""
        return QuantMatrix(values, self.feature_meta, self.sample_meta)

    def with_feature_meta(self, **columns) -> 'QuantMatrix':
        """New matrix with additional or replaced feature annotation columns."""
        meta = self.feature_meta.copy()
        for name, col in columns.items():
            meta[name] = col
        return QuantMatrix(self.values, meta, self.sample_meta)

    def subset(
        self,
        features: Optional[Iterable] = None,
        samples: Optional[Iterable] = None,
    ) -> 'QuantMatrix':
        """New matrix restricted to the given features and/or samples."""
        rows = self.features if features is None else pd.Index(list(features))
        cols = self.samples if samples is None else pd.Index(list(samples))
        return QuantMatrix(
            self.values.loc[rows, cols],
            self.feature_meta.loc[rows],
            self.sample_meta.loc[cols],
        )

    @classmethod
    def from_long(
        cls,
        data: pd.DataFrame,
        feature_col: str,
        sample_col: str,
        value_col: str,
        feature_meta_cols: Iterable[str] = (),
        sample_meta: Optional[pd.DataFrame] = None,
    ) -> 'QuantMatrix':
        """Build a matrix from long-format rows (one row per feature/sample).

        Feature annotations are taken from the first row of each feature.
        Duplicate feature/sample pairs are an error.
        """
        dupes = data.duplicated([feature_col, sample_col])
        if dupes.any():
            raise ValueError(
                f"{int(dupes.sum())} duplicate {feature_col}/{sample_col} pairs in long data"
            )

        values = data.pivot(index=feature_col, columns=sample_col, values=value_col)
        values.columns.name = None

        meta_cols = [c for c in feature_meta_cols if c in data.columns]
        feature_meta = data.groupby(feature_col, sort=False)[meta_cols].first()

        if sample_meta is None:
            sample_meta = pd.DataFrame(index=values.columns)
        return cls(values, feature_meta, sample_meta)

    def to_long(self, value_name: str = 'value') -> pd.DataFrame:
        """Long-format rows with feature annotations joined on."""
        feature_name = self.values.index.name or 'feature'
        long = self.values.rename_axis(feature_name).reset_index().melt(
            id_vars=feature_name, var_name='sample', value_name=value_name)
        return long.merge(self.feature_meta.rename_axis(feature_name).reset_index(),
                          on=feature_name, how='left')

    def write(self, output_dir: Union[str, Path], fmt: str = 'parquet') -> Path:
        """Write the bundle as three tables in a directory.

        Args:
            output_dir: Directory to create
            fmt: 'parquet' or 'tsv'

        Returns:
            The output directory

        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        parts = {
            'values': self.values.rename_axis('feature_id'),
            'feature_meta': self.feature_meta.rename_axis('feature_id'),
            'sample_meta': self.sample_meta.rename_axis('sample_id'),
        }
        for name, frame in parts.items():
            frame = frame.copy()
            frame.columns = [str(c) for c in frame.columns]
            if fmt == 'parquet':
                table = pa.Table.from_pandas(frame, preserve_index=True)
                pq.write_table(table, output_dir / f'{name}.parquet')
            elif fmt == 'tsv':
                frame.to_csv(output_dir / f'{name}.tsv', sep='\t')
            else:
                raise ValueError(f"Unknown output format: {fmt}")

        logger.info(f"Wrote {self.shape[0]} x {self.shape[1]} matrix to {output_dir}")
        return output_dir

    @classmethod
    def read(cls, input_dir: Union[str, Path]) -> 'QuantMatrix':
        """Read a bundle written by write() (parquet or tsv)."""
        input_dir = Path(input_dir)
        parts = {}
        for name in BUNDLE_PARTS:
            parquet_path = input_dir / f'{name}.parquet'
            tsv_path = input_dir / f'{name}.tsv'
            if parquet_path.exists():
                parts[name] = pq.read_table(parquet_path).to_pandas()
            elif tsv_path.exists():
                parts[name] = pd.read_csv(tsv_path, sep='\t', index_col=0)
            else:
                raise FileNotFoundError(f"Missing {name} table in {input_dir}")

        values = parts['values']
        values.index.name = None
        parts['feature_meta'].index.name = None
        parts['sample_meta'].index.name = None
        return cls(values, parts['feature_meta'], parts['sample_meta'])
