"""Net change computation over a range of change records."""

from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple

from changeflow.constants import ChangeOperation
from changeflow.types.changes import ChangeRecord, NetChange


def collapse_net_changes(records: Iterable[ChangeRecord]) -> List[NetChange]:
    """Fold a range of records into one net change per row identity.

    The first record seen for an identity fixes the ``before`` image (a
    leading DELETE means the row existed before the range); the last record
    fixes the ``after`` image. Rows whose before and after images are equal,
    including rows inserted and deleted inside the range, are dropped.

    Records must be in sequence order, as produced by ``read_range``.

    Example:
        >>> # INSERT a, DELETE a  -> no net change
        >>> # DELETE a(v1), INSERT a(v2), DELETE a(v2), INSERT a(v3)
        >>> #   -> NetChange(a, before=v1, after=v3)
    """
    order: List[Hashable] = []
    images: Dict[Hashable, Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]] = {}

    for record in records:
        identity = record.row_identity
        if identity not in images:
            order.append(identity)
            before = record.row_payload if record.operation == ChangeOperation.DELETE else None
            images[identity] = (before, None)

        before, _ = images[identity]
        after = record.row_payload if record.operation == ChangeOperation.INSERT else None
        images[identity] = (before, after)

    net: List[NetChange] = []
    for identity in order:
        before, after = images[identity]
        if before == after:
            continue
        net.append(NetChange(row_identity=identity, before=before, after=after))
    return net
