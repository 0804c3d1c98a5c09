"""Data I/O module for loading vendor-exported feature tables."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# Standard column name mapping from vendor exports
FEATURE_COLUMN_MAP = {
    # Proteome Discoverer PSM / Peptide Groups exports
    'Sequence': 'sequence',
    'Annotated Sequence': 'annotated_sequence',
    'Modifications': 'modifications',
    'Protein Accessions': 'protein_accessions',
    'Master Protein Accessions': 'master_accessions',
    'Number of Protein Groups': 'n_protein_groups',
    'Quan Info': 'quan_info',
    'Spectrum File': 'spectrum_file',
    'Contaminant': 'contaminant',

    # R-style names (make.names) from notebook exports
    'Protein.Accessions': 'protein_accessions',
    'Master.Protein.Accessions': 'master_accessions',
    'Number.of.Protein.Groups': 'n_protein_groups',
    'Quan.Info': 'quan_info',

    # MaxQuant peptides.txt / evidence.txt
    'Proteins': 'protein_accessions',
    'Leading razor protein': 'master_accessions',
}

# Required columns for processing
REQUIRED_COLUMNS = [
    'sequence',
    'protein_accessions',
]

# Intensity columns are recognised by prefix
INTENSITY_PREFIXES = ('Abundance', 'Intensity', 'Light', 'Heavy', 'Medium')

# Derived columns sharing those prefixes that are not per-sample intensities:
# PD ratio/count/normalized/grouped abundances and MaxQuant's summed 'Intensity'
INTENSITY_EXCLUDE_PATTERNS = (
    r'^Abundance Ratio',
    r'^Abundances? Count',
    r'^Abundances? \((Normalized|Grouped|Scaled)\)',
    r'^Intensity$',
)

ACCESSION_SEP = ';'
LABEL_TOKEN = 'Label:'
NO_QUAN_VALUES = 'NoQuanValues'


class SchemaError(ValueError):
    """A feature table is missing a required column or holds malformed values."""

    def __init__(self, field_name: str, message: str):
        self.field = field_name
        super().__init__(f"{field_name}: {message}")


@dataclass
class ValidationResult:
    """Result of validating a feature table."""

    is_valid: bool
    filepath: Path
    missing_required: list[str] = field(default_factory=list)
    intensity_columns: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_rows: int = 0

    @property
    def missing_intensity(self) -> bool:
        return not self.intensity_columns

    def __str__(self) -> str:
        if self.is_valid:
            return (f"Valid: {self.filepath.name} ({self.n_rows} rows, "
                    f"{len(self.intensity_columns)} intensity columns)")
        issues = []
        if self.missing_required:
            issues.append(f"Missing columns: {self.missing_required}")
        if self.missing_intensity:
            issues.append("No intensity column found")
        issues.extend(self.warnings)
        return f"Invalid: {self.filepath.name} - {'; '.join(issues)}"


def _detect_separator(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return '\t' if suffix in ['.tsv', '.txt'] else ','


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename columns to standard names using the mapping."""
    rename_map = {}
    assigned = set(df.columns)
    for orig, standard in FEATURE_COLUMN_MAP.items():
        # First matching vendor name wins
        if orig in df.columns and standard not in assigned:
            rename_map[orig] = standard
            assigned.add(standard)

    return df.rename(columns=rename_map)


def find_intensity_columns(
    df: pd.DataFrame,
    prefixes: Iterable[str] = INTENSITY_PREFIXES,
    exclude: Iterable[str] = INTENSITY_EXCLUDE_PATTERNS,
) -> list[str]:
    """Return numeric columns whose name starts with one of the intensity prefixes.

    Columns matching any of the exclude regular expressions (derived ratio,
    count and summary columns) are skipped.
    """
    prefixes = tuple(prefixes)
    excluded = [re.compile(pattern) for pattern in exclude]
    columns = []
    for col in df.columns:
        if not isinstance(col, str) or not col.startswith(prefixes):
            continue
        if any(pattern.search(col) for pattern in excluded):
            continue
        if pd.api.types.is_numeric_dtype(df[col]) or df[col].isna().all():
            columns.append(col)
    return columns


def parse_accessions(value, field_name: str = 'protein_accessions') -> tuple[str, ...]:
    """Split a delimited accession list into a tuple of accessions.

    Missing or blank values give an empty tuple. Empty tokens inside a
    non-blank list (``'P1;;P2'``) are malformed and raise SchemaError.

    Args:
        value: Raw cell value
        field_name: Column name reported in the error

    Returns:
        Tuple of accession strings, in input order

    Raises:
        SchemaError: If the list contains empty tokens

    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ()
    text = str(value).strip()
    if not text:
        return ()
    tokens = [tok.strip() for tok in text.split(ACCESSION_SEP)]
    if any(not tok for tok in tokens):
        raise SchemaError(field_name, f"malformed accession list {text!r}")
    return tuple(tokens)


def strip_labels(modifications) -> str:
    """Remove isotope-label tokens from a modification descriptor.

    ``'1xLabel:13C(6)15N(4) [R9]; 1xCarbamidomethyl [C3]'`` becomes
    ``'1xCarbamidomethyl [C3]'`` so that light and heavy forms of the same
    peptide share a feature key.
    """
    if modifications is None or (isinstance(modifications, float) and np.isnan(modifications)):
        return ''
    tokens = [tok.strip() for tok in str(modifications).split(';')]
    return '; '.join(tok for tok in tokens if tok and LABEL_TOKEN not in tok)


def make_feature_key(sequence: pd.Series, modifications: pd.Series) -> pd.Series:
    """Build the sequence+modification key used to identify a feature."""
    mods = modifications.fillna('').astype(str)
    return sequence.astype(str) + '|' + mods


def validate_feature_table(
    df: pd.DataFrame,
    filepath: Optional[Path] = None,
    intensity_prefixes: Iterable[str] = INTENSITY_PREFIXES,
) -> ValidationResult:
    """Validate that a standardised feature table has the required columns.

    Args:
        df: DataFrame with standardised column names
        filepath: Source path, for reporting only
        intensity_prefixes: Prefixes identifying intensity columns

    Returns:
        ValidationResult with validation details

    """
    result = ValidationResult(is_valid=True, filepath=Path(filepath or '<table>'))

    for col in REQUIRED_COLUMNS:
        if col not in df.columns:
            result.missing_required.append(col)
            result.is_valid = False

    result.intensity_columns = find_intensity_columns(df, intensity_prefixes)
    if not result.intensity_columns:
        result.is_valid = False

    if 'modifications' not in df.columns:
        result.warnings.append("No modifications column - sequence alone is the feature key")
    if 'master_accessions' not in df.columns:
        result.warnings.append("No master protein column - ambiguity filtering limited")

    result.n_rows = len(df)
    return result


def _raise_for_validation(validation: ValidationResult) -> None:
    if validation.missing_required:
        raise SchemaError(
            validation.missing_required[0],
            f"required column missing from {validation.filepath.name}",
        )
    if validation.missing_intensity:
        raise SchemaError(
            'intensity',
            f"no intensity column found in {validation.filepath.name}",
        )


def collapse_psms(
    df: pd.DataFrame,
    intensity_columns: list[str],
    key_col: str = 'feature_key',
) -> pd.DataFrame:
    """Collapse PSM-level rows to one row per feature key.

    Intensities are summed per column; a column with no finite value for a
    feature stays missing. Boolean flag columns are OR-ed; all other columns
    are taken from the first PSM of the feature.

    Args:
        df: PSM-level DataFrame with a feature key column
        intensity_columns: Columns to sum
        key_col: Column identifying features

    Returns:
        DataFrame with one row per feature key

    """
    bool_cols = [c for c in df.columns if pd.api.types.is_bool_dtype(df[c])]
    other_cols = [c for c in df.columns
                  if c not in intensity_columns and c not in bool_cols and c != key_col]

    grouped = df.groupby(key_col, sort=False)
    parts = [grouped[other_cols].first()]
    if intensity_columns:
        parts.append(grouped[intensity_columns].sum(min_count=1))
    if bool_cols:
        parts.append(grouped[bool_cols].any())
    parts.append(grouped.size().rename('n_psms'))

    collapsed = pd.concat(parts, axis=1).reset_index()
    logger.info(f"Collapsed {len(df)} PSMs to {len(collapsed)} features")
    return collapsed[[key_col] + [c for c in df.columns if c != key_col] + ['n_psms']]


def load_feature_table(
    filepath: Path,
    run_name: Optional[str] = None,
    level: str = 'peptide',
    intensity_prefixes: Iterable[str] = INTENSITY_PREFIXES,
    strip_label_mods: bool = True,
) -> pd.DataFrame:
    """Load a single run's feature table with standardised column names.

    Args:
        filepath: Path to CSV/TSV export
        run_name: Identifier for this run (defaults to filename stem)
        level: 'peptide' (one row per feature) or 'psm' (collapsed on load)
        intensity_prefixes: Prefixes identifying intensity columns
        strip_label_mods: Remove isotope labels from the feature key

    Returns:
        DataFrame with standardised column names plus 'run' and 'feature_key'

    Raises:
        SchemaError: If required columns are absent, an accession list is
            malformed, or feature keys are duplicated in a peptide-level table

    """
    filepath = Path(filepath)
    df = pd.read_csv(filepath, sep=_detect_separator(filepath))
    if run_name is None:
        run_name = filepath.stem
    return prepare_feature_table(
        df,
        run_name=run_name,
        level=level,
        intensity_prefixes=intensity_prefixes,
        strip_label_mods=strip_label_mods,
        filepath=filepath,
    )


def prepare_feature_table(
    df: pd.DataFrame,
    run_name: str,
    level: str = 'peptide',
    intensity_prefixes: Iterable[str] = INTENSITY_PREFIXES,
    strip_label_mods: bool = True,
    filepath: Optional[Path] = None,
) -> pd.DataFrame:
    """Standardise and validate an in-memory feature table.

    See load_feature_table for the meaning of the arguments.
    """
    if level not in ('peptide', 'psm'):
        raise ValueError(f"Unknown table level: {level}")

    df = _standardize_columns(df)
    validation = validate_feature_table(df, filepath, intensity_prefixes)
    if not validation.is_valid:
        _raise_for_validation(validation)
    for w in validation.warnings:
        logger.debug(w)

    df = df.copy()
    intensity_columns = validation.intensity_columns

    # Parse accession lists up front so malformed values abort before any computation
    df['protein_accessions'] = df['protein_accessions'].map(
        lambda v: ACCESSION_SEP.join(parse_accessions(v, 'protein_accessions'))
    )
    if 'master_accessions' in df.columns:
        df['master_accessions'] = df['master_accessions'].map(
            lambda v: ACCESSION_SEP.join(parse_accessions(v, 'master_accessions'))
        )
    else:
        df['master_accessions'] = ''

    if 'modifications' not in df.columns:
        df['modifications'] = ''
    df['modifications'] = df['modifications'].fillna('').astype(str)
    if strip_label_mods:
        df['modifications'] = df['modifications'].map(strip_labels)

    df['feature_key'] = make_feature_key(df['sequence'], df['modifications'])

    if level == 'psm':
        df = collapse_psms(df, intensity_columns)
    else:
        dupes = df.loc[df['feature_key'].duplicated(), 'feature_key'].unique().tolist()
        if dupes:
            raise SchemaError(
                'feature_key',
                f"{len(dupes)} duplicated sequence+modification keys in run "
                f"{run_name} (e.g. {dupes[:3]}); load with level='psm' to collapse",
            )

    df['run'] = run_name
    df.attrs['intensity_columns'] = intensity_columns

    logger.info(f"Loaded run {run_name}: {len(df)} features, "
                f"{len(intensity_columns)} intensity columns")
    return df


def intensity_columns_of(df: pd.DataFrame) -> list[str]:
    """Return the intensity columns recorded when the table was loaded."""
    cols = df.attrs.get('intensity_columns')
    if cols is None:
        cols = find_intensity_columns(df)
    return [c for c in cols if c in df.columns]


_FASTA_UNIPROT = re.compile(r'^>(?:sp|tr)\|([^|]+)\|')


def load_contaminants(filepath: Path) -> set[str]:
    """Load contaminant accessions from a flat list or a FASTA file.

    Flat lists hold one accession per line; blank lines and '#' comments are
    ignored. FASTA headers in UniProt form (``>sp|P02768|ALBU_HUMAN``) give
    the middle field, other headers give their first word.

    Args:
        filepath: Path to the contaminant list or FASTA

    Returns:
        Set of contaminant accessions

    """
    filepath = Path(filepath)
    accessions = set()
    with open(filepath) as f:
        lines = [line.strip() for line in f]

    is_fasta = any(line.startswith('>') for line in lines)
    for line in lines:
        if not line or line.startswith('#'):
            continue
        if is_fasta:
            if not line.startswith('>'):
                continue
            match = _FASTA_UNIPROT.match(line)
            if match:
                accessions.add(match.group(1))
            else:
                accessions.add(line[1:].split()[0])
        else:
            accessions.add(line.split()[0])

    logger.info(f"Loaded {len(accessions)} contaminant accessions from {filepath.name}")
    return accessions


def load_sample_metadata(filepath: Path, sample_col: str = 'sample') -> pd.DataFrame:
    """Load a sample annotation table indexed by sample identifier.

    Args:
        filepath: Path to metadata TSV/CSV
        sample_col: Column holding sample identifiers

    Returns:
        Metadata DataFrame indexed by sample id

    Raises:
        SchemaError: If the sample column is missing
        ValueError: If sample identifiers are duplicated

    """
    filepath = Path(filepath)
    meta = pd.read_csv(filepath, sep=_detect_separator(filepath))

    if sample_col not in meta.columns:
        raise SchemaError(sample_col, f"sample column missing from {filepath.name}")

    duplicates = meta[meta[sample_col].duplicated()][sample_col].tolist()
    if duplicates:
        raise ValueError(f"Duplicate sample entries: {duplicates}")

    meta[sample_col] = meta[sample_col].astype(str)
    return meta.set_index(sample_col)


def load_accession_list(filepath: Path) -> list[str]:
    """Load a flat list of accessions (e.g. reference proteins), one per line."""
    with open(filepath) as f:
        return [line.split()[0] for line in f if line.strip() and not line.startswith('#')]


def validate_feature_file(
    filepath: Path,
    intensity_prefixes: Iterable[str] = INTENSITY_PREFIXES,
) -> ValidationResult:
    """Validate a feature table file without loading it for processing.

    Args:
        filepath: Path to the export (CSV or TSV)
        intensity_prefixes: Prefixes identifying intensity columns

    Returns:
        ValidationResult; unreadable files are reported as invalid

    """
    filepath = Path(filepath)
    try:
        df = pd.read_csv(filepath, sep=_detect_separator(filepath))
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        return ValidationResult(
            is_valid=False,
            filepath=filepath,
            warnings=[f"Error reading file: {e}"],
        )

    df = _standardize_columns(df)
    result = validate_feature_table(df, filepath, intensity_prefixes)

    if 'protein_accessions' in df.columns:
        for col in ('protein_accessions', 'master_accessions'):
            if col not in df.columns:
                continue
            try:
                df[col].map(lambda v, c=col: parse_accessions(v, c))
            except SchemaError as e:
                result.is_valid = False
                result.warnings.append(str(e))
    return result
