"""Soil property lookup for a batch of map units.

For each map unit the most representative major component is kept: the
one with the highest component percentage, then its shallowest horizon.
"""

import logging
from typing import Any, Dict, List, Sequence

from .sda_client import check_mukey, execute_query

logger = logging.getLogger(__name__)

# Column order of the SELECT below; rows come back in this order.
PROPERTY_COLUMNS = (
    "mukey",        # map unit key
    "muname",       # map unit name
    "taxorder",     # taxonomic order
    "taxsuborder",  # taxonomic suborder
    "drainagecl",   # drainage class
    "taxreaction",  # reaction (pH) class
    "taxclname",    # taxonomic class name
    "ph1to1h2o_r",  # pH in water 1:1, representative
    "om_r",         # organic matter %
    "sandtotal_r",  # total sand %
    "silttotal_r",  # total silt %
    "claytotal_r",  # total clay %
    "texture",      # texture class
)


def soil_properties_query(mukeys: Sequence[str]) -> str:
    key_list = ",".join(f"'{check_mukey(k)}'" for k in mukeys)
    return f"""
    WITH RankedSoils AS (
        SELECT
            m.mukey, m.muname,
            c.taxorder, c.taxsuborder, c.drainagecl, c.taxreaction, c.taxclname,
            h.ph1to1h2o_r, h.om_r, h.sandtotal_r, h.silttotal_r, h.claytotal_r,
            tg.texture,
            ROW_NUMBER() OVER (
                PARTITION BY m.mukey
                ORDER BY c.comppct_r DESC, h.hzdept_r ASC
            ) AS soil_rank
        FROM mapunit m
        INNER JOIN component c ON m.mukey = c.mukey
        INNER JOIN chorizon h ON h.cokey = c.cokey
        INNER JOIN chtexturegrp tg ON tg.chkey = h.chkey
        WHERE m.mukey IN ({key_list})
            AND c.majcompflag = 'Yes'
    )
    SELECT
        {", ".join(PROPERTY_COLUMNS)}
    FROM RankedSoils
    WHERE soil_rank = 1
    """


def rows_to_properties(rows: List[List[Any]]) -> Dict[str, Dict[str, Any]]:
    """Key SDA rows by mukey. Short rows are padded with None."""
    props: Dict[str, Dict[str, Any]] = {}
    width = len(PROPERTY_COLUMNS)
    for row in rows:
        if not row:
            continue
        values = list(row[:width]) + [None] * (width - len(row))
        record = dict(zip(PROPERTY_COLUMNS, values))
        record["mukey"] = str(record["mukey"])
        props[record["mukey"]] = record
    return props


def fetch_soil_properties(mukeys: Sequence[str], **query_opts) -> Dict[str, Dict[str, Any]]:
    """Return ``{mukey: properties}`` for the given keys.

    No query is issued for an empty key list. Query errors propagate.
    """
    if not mukeys:
        return {}
    rows = execute_query(soil_properties_query(mukeys), **query_opts)
    props = rows_to_properties(rows)
    logger.info("[SOIL] retrieved soil properties for %d map units", len(props))
    return props
