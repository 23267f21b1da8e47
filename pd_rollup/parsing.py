"""Feature parsing: contaminant removal and master protein resolution.

Takes a raw PSM or PeptideGroups table and keeps only rows that can be
assigned to exactly one master protein and that do not touch a contaminant
protein. Each removal step is recorded for audit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pandas as pd

from .audit import FilterStep, record_step
from .data_io import ABUNDANCE_PREFIX, find_abundance_columns
from .errors import InputFormatError

logger = logging.getLogger(__name__)

STAGE = 'parse'
FEATURE_LEVELS = ('PSM', 'peptide')


@dataclass
class ParserConfig:
    """Options for :func:`parse_features`."""

    level: str = 'PSM'
    tmt: bool = False
    filter_contaminants: bool = True
    filter_associated_contaminants: bool = True

    master_protein_col: str = 'Master Protein Accessions'
    protein_col: str = 'Protein Accessions'
    protein_groups_col: str = '# Protein Groups'
    # PD's own contaminant flag; used in addition to the FASTA list when set
    contaminant_flag_col: str | None = None
    abundance_prefix: str = ABUNDANCE_PREFIX


@dataclass
class ParseResult:
    """Filtered feature table plus audit trail."""

    data: pd.DataFrame
    abundance_columns: list[str]
    steps: list[FilterStep] = field(default_factory=list)


def split_accessions(value) -> set[str]:
    """Split a PD accession field (``P1; P2``) into a set of accessions."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return set()
    return {token.strip() for token in str(value).split(';') if token.strip()}


def contaminant_mask(
    data: pd.DataFrame,
    contaminants: set[str],
    protein_col: str,
    master_protein_col: str,
) -> pd.Series:
    """Rows whose protein or master protein accessions hit the contaminant set."""
    contaminants = set(contaminants)

    def hits(row) -> bool:
        accessions = split_accessions(row[protein_col]) | split_accessions(row[master_protein_col])
        return not accessions.isdisjoint(contaminants)

    if data.empty:
        return pd.Series(False, index=data.index)
    return data.apply(hits, axis=1).astype(bool)


def _check_columns(data: pd.DataFrame, config: ParserConfig) -> None:
    required = [config.master_protein_col]
    if config.filter_contaminants:
        required.append(config.protein_col)
    if config.contaminant_flag_col is not None:
        required.append(config.contaminant_flag_col)
    missing = [col for col in required if col not in data.columns]
    if missing:
        raise InputFormatError(f"Missing required columns: {missing}", stage=STAGE)


def parse_features(
    data: pd.DataFrame,
    contaminants: set[str] | None = None,
    config: ParserConfig | None = None,
) -> ParseResult:
    """Remove contaminant and ambiguously assigned features.

    Steps:
    1. Drop rows whose protein accessions intersect ``contaminants`` (and rows
       PD flagged as contaminants, when ``contaminant_flag_col`` is set)
    2. Optionally drop rows sharing a master protein with a row from step 1
    3. Drop rows without a master protein
    4. Drop rows with more than one master protein / protein group

    Args:
        data: Raw feature table
        contaminants: Contaminant protein accessions (e.g. from a cRAP FASTA)
        config: Parser options

    Returns:
        ParseResult with the filtered table, abundance columns and audit steps

    Raises:
        InputFormatError: On missing columns, an empty contaminant list while
            contaminant filtering is enabled, or no abundance columns for TMT

    """
    config = config or ParserConfig()
    if config.level not in FEATURE_LEVELS:
        raise InputFormatError(
            f"Unknown feature level '{config.level}', expected one of {FEATURE_LEVELS}",
            stage=STAGE,
        )
    _check_columns(data, config)

    abundance_columns = find_abundance_columns(data.columns, config.abundance_prefix)
    if config.tmt and not abundance_columns:
        raise InputFormatError(
            f"Isobaric-label data declared but no '{config.abundance_prefix}' "
            f"columns were found",
            stage=STAGE,
        )

    master_col = config.master_protein_col
    steps = []
    current = data.copy()
    logger.info(
        f"Parsing {len(current)} {config.level}s from "
        f"{current[master_col].nunique()} master proteins"
    )

    # Contaminants
    if config.filter_contaminants:
        if not contaminants:
            raise InputFormatError(
                "Contaminant list is empty but contaminant filtering is enabled",
                stage=STAGE,
            )
        hit = contaminant_mask(current, contaminants, config.protein_col, master_col)
        if config.contaminant_flag_col is not None:
            flag = current[config.contaminant_flag_col]
            hit |= flag.astype(str).str.lower().isin(['true', '1', 'yes'])

        removed = current.loc[hit]
        before = current
        current = current.loc[~hit]
        steps.append(record_step(STAGE, 'contaminants', before, current, master_col))

        if config.filter_associated_contaminants:
            associated = set()
            for value in removed[master_col].dropna():
                associated |= split_accessions(value)
            before = current
            current = current.loc[
                ~current[master_col].map(
                    lambda v: not split_accessions(v).isdisjoint(associated)
                ).astype(bool)
            ]
            steps.append(record_step(
                STAGE, 'contaminant-associated master proteins', before, current, master_col
            ))

    # Master protein present
    before = current
    has_master = current[master_col].map(lambda v: len(split_accessions(v)) > 0).astype(bool)
    current = current.loc[has_master]
    steps.append(record_step(STAGE, 'no master protein', before, current, master_col))

    # Unique master protein
    before = current
    unique = current[master_col].map(lambda v: len(split_accessions(v)) == 1).astype(bool)
    if config.protein_groups_col in current.columns:
        n_groups = pd.to_numeric(current[config.protein_groups_col], errors='coerce')
        unique &= n_groups == 1
    current = current.loc[unique]
    steps.append(record_step(STAGE, 'non-unique master protein', before, current, master_col))

    current = current.copy()
    current[master_col] = current[master_col].map(lambda v: next(iter(split_accessions(v))))

    return ParseResult(data=current, abundance_columns=abundance_columns, steps=steps)
