"""Data I/O for Proteome Discoverer exports, contaminant FASTA files and
quantification bundles."""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .errors import InputFormatError, IntegrityError
from .matrix import QuantMatrix

logger = logging.getLogger(__name__)

# Proteome Discoverer column names used by the pipeline
PD_COLUMNS = {
    'master_protein': 'Master Protein Accessions',
    'proteins': 'Protein Accessions',
    'n_protein_groups': '# Protein Groups',
    'sequence': 'Sequence',
    'annotated_sequence': 'Annotated Sequence',
    'modifications': 'Modifications',
    'master_modifications': 'Modifications in Master Proteins',
    'signal_noise': 'Average Reporter S/N',
    'interference': 'Isolation Interference [%]',
    'delta_score': 'Delta Score',
    'localisation': 'ptmRS: Best Site Probabilities',
    'quan_info': 'Quan Info',
    'contaminant': 'Contaminant',
}

ABUNDANCE_PREFIX = 'Abundance'

# Required columns per feature level
REQUIRED_COLUMNS = {
    'PSM': ['Master Protein Accessions', 'Protein Accessions', 'Sequence'],
    'peptide': ['Master Protein Accessions', 'Protein Accessions', 'Sequence'],
}

SAMPLE_METADATA_REQUIRED = ['sample', 'abundance_column']

BUNDLE_FILES = {
    'exprs': 'exprs.parquet',
    'feature_data': 'feature_data.parquet',
    'sample_data': 'sample_data.parquet',
    'manifest': 'bundle.json',
}

# UniProt accession, e.g. P00761, A0A024RBG1, with optional isoform suffix
UNIPROT_ACCESSION = re.compile(
    r'^(?:[OPQ][0-9][A-Z0-9]{3}[0-9]|[A-NR-Z][0-9](?:[A-Z][A-Z0-9]{2}[0-9]){1,2})(?:-\d+)?$'
)


@dataclass
class ValidationResult:
    """Result of validating a PD export."""

    is_valid: bool
    filepath: Path
    missing_required: list[str] = field(default_factory=list)
    abundance_columns: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_rows: int = 0

    @property
    def missing_abundance(self) -> bool:
        return not self.abundance_columns

    def __str__(self) -> str:
        if self.is_valid:
            return (f"Valid: {self.filepath.name} ({self.n_rows} rows, "
                    f"{len(self.abundance_columns)} abundance columns)")
        issues = []
        if self.missing_required:
            issues.append(f"Missing columns: {self.missing_required}")
        if self.missing_abundance:
            issues.append("No abundance column found")
        issues.extend(self.warnings)
        return f"Invalid: {self.filepath.name} - {'; '.join(issues)}"


def _normalize_name(name: str) -> str:
    return re.sub(r'[^0-9a-z]', '', str(name).lower())


def find_column(available, *candidates: str) -> Optional[str]:
    """Find the first candidate column present in ``available``.

    Matches exactly first, then ignoring case and punctuation, so that
    ``Master Protein Accessions`` also finds ``Master.Protein.Accessions``
    (R-exported tables) and ``Master_Protein_Accessions``.

    Returns:
        The matching column name as it appears in ``available``, or None

    """
    available = list(available)
    for candidate in candidates:
        if candidate in available:
            return candidate
    lookup = {}
    for col in available:
        lookup.setdefault(_normalize_name(col), col)
    for candidate in candidates:
        match = lookup.get(_normalize_name(candidate))
        if match is not None:
            return match
    return None


def standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename known PD columns written with other spellings to the PD names.

    Abundance columns are left as they are.
    """
    rename_map = {}
    for standard in PD_COLUMNS.values():
        if standard in df.columns:
            continue
        match = find_column(df.columns, standard)
        if match is not None and not match.startswith(ABUNDANCE_PREFIX):
            rename_map[match] = standard
    return df.rename(columns=rename_map)


def find_abundance_columns(columns, prefix: str = ABUNDANCE_PREFIX) -> list[str]:
    """Abundance columns in file order.

    Ratio, count and grouped summary columns that PD writes next to the
    per-sample abundances (``Abundance Ratio``, ``Abundances (Grouped)``,
    ``Abundances Count``) are excluded.
    """
    excluded = ('Abundance Ratio', 'Abundances', 'Abundance Ratio Adj')
    return [
        col for col in columns
        if str(col).startswith(prefix) and not str(col).startswith(excluded)
    ]


def _detect_separator(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return ',' if suffix == '.csv' else '\t'


def validate_pd_export(filepath: Path, level: str = 'PSM') -> ValidationResult:
    """Validate that a PD export has the columns the parser needs.

    Args:
        filepath: Path to the tab-delimited export
        level: Feature level, 'PSM' or 'peptide'

    Returns:
        ValidationResult with validation details

    """
    filepath = Path(filepath)
    result = ValidationResult(is_valid=True, filepath=filepath)

    if level not in REQUIRED_COLUMNS:
        raise InputFormatError(
            f"Unknown feature level '{level}', expected one of {list(REQUIRED_COLUMNS)}"
        )

    try:
        header = pd.read_csv(filepath, sep=_detect_separator(filepath), nrows=5)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        result.is_valid = False
        result.warnings.append(f"Error reading file: {e}")
        return result

    header = standardize_columns(header)

    for col in REQUIRED_COLUMNS[level]:
        if col not in header.columns:
            result.missing_required.append(col)
            result.is_valid = False

    result.abundance_columns = find_abundance_columns(header.columns)
    if result.missing_abundance:
        result.is_valid = False

    for key in ('signal_noise', 'interference', 'delta_score', 'localisation'):
        if PD_COLUMNS[key] not in header.columns:
            result.warnings.append(f"No '{PD_COLUMNS[key]}' column")

    if result.is_valid:
        with open(filepath) as f:
            result.n_rows = max(sum(1 for _ in f) - 1, 0)

    return result


def load_pd_export(filepath: Path, validate: bool = True, level: str = 'PSM') -> pd.DataFrame:
    """Load a PD PSM or PeptideGroups export with standardized column names.

    Args:
        filepath: Path to the export (tab-delimited; '.csv' read as comma)
        validate: Whether to validate before loading
        level: Feature level used for validation

    Returns:
        DataFrame with one row per feature

    Raises:
        InputFormatError: If validation fails and validate=True

    """
    filepath = Path(filepath)

    if validate:
        validation = validate_pd_export(filepath, level=level)
        if not validation.is_valid:
            raise InputFormatError(f"Invalid PD export: {validation}", stage='load')

    df = pd.read_csv(filepath, sep=_detect_separator(filepath), low_memory=False)
    df = standardize_columns(df)

    logger.info(f"Loaded {len(df)} rows from {filepath.name}")
    return df


def parse_fasta_accession(header: str) -> Optional[str]:
    """Extract the protein accession from a FASTA header line.

    Handles UniProt headers (``>sp|P00761|TRYP_PIG Trypsin``), cRAP headers
    (``>sp|P00761|TRYP_PIG`` or ``>cRAP001|P00761|...``) and bare
    accessions (``>P00761 description``).
    """
    header = header.strip()
    if header.startswith('>'):
        header = header[1:]
    if not header:
        return None

    first_word = header.split()[0]
    tokens = [t for t in first_word.split('|') if t]
    if not tokens:
        return None

    for token in tokens:
        if UNIPROT_ACCESSION.match(token):
            return token
    if len(tokens) >= 2:
        return tokens[1]
    return tokens[0]


def load_contaminant_accessions(filepath: Path) -> set[str]:
    """Parse a contaminant FASTA file and return its accessions.

    Only header lines are read; sequences are ignored.
    """
    filepath = Path(filepath)
    accessions = set()
    with open(filepath) as f:
        for line in f:
            if line.startswith('>'):
                accession = parse_fasta_accession(line)
                if accession:
                    accessions.add(accession)

    logger.info(f"Loaded {len(accessions)} contaminant accessions from {filepath.name}")
    return accessions


def load_sample_metadata(filepath: Path) -> pd.DataFrame:
    """Load and validate a sample metadata file.

    The file needs a ``sample`` column (sample id) and an
    ``abundance_column`` column naming the export column for that sample.
    All other columns (condition, replicate, tag, ...) are kept.

    Returns:
        Metadata DataFrame indexed by sample id, in file order

    Raises:
        InputFormatError: If required columns are missing
        IntegrityError: If a sample or abundance column appears twice

    """
    filepath = Path(filepath)
    meta = pd.read_csv(filepath, sep=_detect_separator(filepath))

    missing = [col for col in SAMPLE_METADATA_REQUIRED if col not in meta.columns]
    if missing:
        raise InputFormatError(f"Missing required metadata columns: {missing}")

    duplicates = meta.loc[meta['sample'].duplicated(), 'sample'].tolist()
    if duplicates:
        raise IntegrityError(f"Duplicate sample entries: {duplicates}")

    duplicates = meta.loc[meta['abundance_column'].duplicated(), 'abundance_column'].tolist()
    if duplicates:
        raise IntegrityError(f"Abundance columns mapped more than once: {duplicates}")

    meta['sample'] = meta['sample'].astype(str)
    return meta.set_index('sample')


# ============================================================================
# QuantMatrix bundles
# ============================================================================

def _write_frame(df: pd.DataFrame, path: Path) -> None:
    table = pa.Table.from_pandas(df, preserve_index=True)
    pq.write_table(table, path)


def write_quant_bundle(
    qm: QuantMatrix,
    directory: Path,
    extra: Optional[dict] = None,
) -> Path:
    """Write a QuantMatrix to a directory of parquet files plus a manifest.

    Args:
        qm: Matrix to write
        directory: Output directory (created if needed)
        extra: Optional JSON-serialisable provenance stored in the manifest

    Returns:
        The bundle directory

    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    # Parquet needs string column labels
    exprs = qm.exprs.copy()
    exprs.columns = [str(c) for c in exprs.columns]
    feature_data = qm.feature_data.copy()
    feature_data.columns = [str(c) for c in feature_data.columns]

    _write_frame(exprs, directory / BUNDLE_FILES['exprs'])
    _write_frame(feature_data, directory / BUNDLE_FILES['feature_data'])
    _write_frame(qm.sample_data, directory / BUNDLE_FILES['sample_data'])

    manifest = {
        'n_features': qm.n_features,
        'samples': [str(s) for s in qm.samples],
        'extra': extra or {},
    }
    with open(directory / BUNDLE_FILES['manifest'], 'w') as f:
        json.dump(manifest, f, indent=2, default=str)

    logger.info(f"Wrote bundle ({qm.n_features} rows x {len(qm.samples)} samples) to {directory}")
    return directory


def read_quant_bundle(directory: Path) -> QuantMatrix:
    """Read a QuantMatrix written by :func:`write_quant_bundle`."""
    directory = Path(directory)
    missing = [name for name in BUNDLE_FILES.values() if not (directory / name).exists()]
    if missing:
        raise InputFormatError(f"Incomplete bundle at {directory}: missing {missing}")

    exprs = pd.read_parquet(directory / BUNDLE_FILES['exprs'])
    feature_data = pd.read_parquet(directory / BUNDLE_FILES['feature_data'])
    sample_data = pd.read_parquet(directory / BUNDLE_FILES['sample_data'])

    with open(directory / BUNDLE_FILES['manifest']) as f:
        manifest = json.load(f)
    exprs = exprs[manifest['samples']]

    return QuantMatrix(exprs=exprs, feature_data=feature_data, sample_data=sample_data)


def write_flat_table(
    qm: QuantMatrix,
    path: Path,
    statistics: Optional[pd.DataFrame] = None,
    feature_columns: Optional[list[str]] = None,
) -> Path:
    """Write a tab-delimited table for external tools.

    Rows are features/groups; columns are feature metadata, then samples,
    then any statistics columns (joined on the row index).
    """
    path = Path(path)
    feature_data = qm.feature_data
    if feature_columns is not None:
        feature_data = feature_data[feature_columns]

    # Feature metadata may repeat a sample name; samples win
    feature_data = feature_data.drop(
        columns=[c for c in feature_data.columns if c in set(qm.exprs.columns)]
    )
    table = pd.concat([feature_data, qm.exprs], axis=1)
    if statistics is not None:
        table = table.join(statistics, how='left', rsuffix='_stat')

    table.index.name = qm.exprs.index.name or 'feature_id'
    table.to_csv(path, sep='\t', na_rep='NA')
    logger.info(f"Wrote {len(table)} rows to {path}")
    return path
