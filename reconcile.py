"""Dedup and prune helpers shared by the API client, the view builder and the store."""
from typing import Any, Callable, Dict, Iterable, List, Optional

Record = Dict[str, Any]


def remote_id_of(record: Record) -> Optional[Any]:
    """Remote identifier of a remote purchase record: ``id``, else ``transaction_id``."""
    if not isinstance(record, dict):
        return None
    for key in ('id', 'transaction_id'):
        value = record.get(key)
        if value not in (None, ''):
            return value
    return None


def _norm(value: Any) -> Optional[str]:
    if value in (None, ''):
        return None
    return str(value)


def dedup_by_remote_id(records: Iterable[Record], key: Callable[[Record], Any] = remote_id_of) -> List[Record]:
    """One record per identifier: last payload wins, kept at its first position.

    Records without an identifier are passed through untouched.
    """
    out: List[Record] = []
    slots: Dict[str, int] = {}
    for record in records:
        ident = _norm(key(record))
        if ident is None:
            out.append(record)
            continue
        if ident in slots:
            out[slots[ident]] = record
        else:
            slots[ident] = len(out)
            out.append(record)
    return out


def prunable_rows(rows: Iterable[Record], keep_ids: Iterable[Any],
                  key: Callable[[Record], Any] = remote_id_of) -> List[Record]:
    """Rows whose identifier is not in ``keep_ids``; rows with no identifier are never returned."""
    keep = {_norm(i) for i in keep_ids}
    keep.discard(None)
    victims = []
    for row in rows:
        ident = _norm(key(row))
        if ident is None:
            continue
        if ident not in keep:
            victims.append(row)
    return victims
