"""PTM site keys for site-level aggregation.

PD reports modification positions relative to the master protein as, for
example::

    P12345 1xPhospho [S123(99.5)]
    P12345 2xPhospho [S123(100); T125(98.1)]
    P12345 1xPhospho [S/T]; Q99999 1xPhospho [S45(100)]
    P12345 1xCarbamidomethyl [C10]; 1xPhospho [S15(100)]

The accession is written once per protein; later modifications of the same
protein follow without it.

Features are grouped by ``<accession>|<sites>``, e.g. ``P12345|S123;T125``.
"""

from __future__ import annotations

import logging
import re

import pandas as pd

from .errors import InputFormatError

logger = logging.getLogger(__name__)

_MOD_ENTRY = re.compile(
    r'(?:(?P<accession>[^\s;\[\]]+)\s+)?(?P<count>\d+)x(?P<name>[^\s\[]+)\s*\[(?P<sites>[^\]]*)\]'
)
_SITE = re.compile(r'^([A-Z])(\d+)')


def parse_master_modifications(value, modification: str = 'Phospho') -> list[tuple[str, list[str]]]:
    """Parse a ``Modifications in Master Proteins`` entry.

    Returns:
        List of (accession, sites) for entries of ``modification``. Sites are
        residue+position strings; unlocalised sites (``S/T``) are left out.
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []

    entries = []
    current = None
    for match in _MOD_ENTRY.finditer(str(value)):
        if match.group('accession'):
            current = match.group('accession')
        if current is None or match.group('name').lower() != modification.lower():
            continue
        sites = []
        for token in match.group('sites').split(';'):
            site = _SITE.match(token.strip())
            if site:
                sites.append(f"{site.group(1)}{site.group(2)}")
        entries.append((current, sites))
    return entries


def _site_position(site: str) -> int:
    return int(site[1:])


def site_key(value, master_protein: str, modification: str = 'Phospho') -> str | None:
    """Site key for one feature, or None when no site on the master protein is localised."""
    sites = set()
    for accession, entry_sites in parse_master_modifications(value, modification):
        if accession == master_protein:
            sites.update(entry_sites)
    if not sites:
        return None
    ordered = sorted(sites, key=_site_position)
    return f"{master_protein}|{';'.join(ordered)}"


def add_site_key(
    data: pd.DataFrame,
    modification: str = 'Phospho',
    modifications_col: str = 'Modifications in Master Proteins',
    master_protein_col: str = 'Master Protein Accessions',
    key_col: str = 'site_key',
) -> pd.DataFrame:
    """Add a protein+site group key and drop features without a localised site.

    Raises:
        InputFormatError: If the modification or master protein column is missing

    """
    missing = [c for c in (modifications_col, master_protein_col) if c not in data.columns]
    if missing:
        raise InputFormatError(f"Missing columns for site keys: {missing}", stage='sites')

    keys = [
        site_key(mods, str(master), modification)
        for mods, master in zip(data[modifications_col], data[master_protein_col])
    ]
    result = data.copy()
    result[key_col] = keys
    n_without = int(result[key_col].isna().sum())
    if n_without:
        logger.info(f"Dropping {n_without} features without a localised {modification} site")
    return result.loc[result[key_col].notna()]
