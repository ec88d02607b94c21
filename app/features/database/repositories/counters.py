"""
Usage counters (cache hit_count, override use_count).

The increment runs in Postgres (`increment_qa_cache_hit`,
`increment_override_use`) so concurrent hits never overwrite each other.
Without those functions the counter is bumped with a compare-and-set
update that only applies if the value is still the one just read.
"""

import logging
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError

logger = logging.getLogger("Chatbot.Database.Counters")

CAS_ATTEMPTS = 25


def increment_counter(
    client,
    function_name: str,
    table: str,
    row_id: str,
    column: str,
    extra: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Add one to `column` of row `row_id`.

    Returns:
        False if the row is gone or every compare-and-set attempt lost
    """
    try:
        client.rpc(function_name, {"p_id": row_id}).execute()
        return True
    except APIError as e:
        logger.debug(f"RPC {function_name} unavailable, using compare-and-set: {e.message}")

    for _ in range(CAS_ATTEMPTS):
        current = client.table(table).select(column).eq("id", row_id).limit(1).execute()
        if not current.data:
            return False
        value = current.data[0].get(column) or 0
        updated = client.table(table).update({column: value + 1, **(extra or {})}).eq(
            "id", row_id
        ).eq(column, value).execute()
        if updated.data:
            return True

    logger.warning(f"Gave up incrementing {table}.{column} for {row_id} after {CAS_ATTEMPTS} attempts")
    return False
