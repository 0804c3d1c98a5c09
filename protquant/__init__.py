"""
protquant: peptide-to-protein parsimony and quantification

A pipeline for turning per-run peptide feature tables (Proteome Discoverer,
MaxQuant) into normalized protein-level abundances or ratios: contaminant
filtering, unified cross-run protein parsimony, paired-condition ratios with
missingness tracking, reference-subset centering and protein rollup.
"""

__version__ = "0.1.0"

from .data_io import (
    load_feature_table,
    prepare_feature_table,
    load_contaminants,
    load_sample_metadata,
    validate_feature_table,
    SchemaError,
)
from .filtering import (
    filter_features,
    FilterResult,
)
from .parsimony import (
    resolve_parsimony,
    greedy_assign,
    apply_mapping,
    ParsimonyResult,
)
from .matrix import QuantMatrix
from .ratios import (
    get_ratio,
    compute_ratios,
    ratio_matrix,
    intensity_matrix,
)
from .normalization import (
    center_to_reference,
    median_normalize,
    normalize,
    NormalizationResult,
)
from .rollup import (
    tukey_median_polish,
    rollup_to_proteins,
    MedianPolishResult,
    RollupResult,
)
from .qc import (
    QCSummary,
    generate_qc_report,
)
