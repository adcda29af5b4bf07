from typing import Any, Iterator, List, Sequence, Tuple

from clusterkv.router import Router

# The cursor of a SCAN sent to the cluster carries the index of the primary
# it belongs to in its low bits: cursor = node_cursor << 8 | node_index
NODE_INDEX_BITS = 8
NODE_INDEX_MASK = (1 << NODE_INDEX_BITS) - 1


def _as_cursor(value: int, like) -> Any:
    text = str(value)
    return text.encode() if isinstance(like, bytes) else text


def scan_once(router: Router, cursor, args: Sequence[Any] = ()) -> List[Any]:
    """
    One step of a SCAN over the whole cluster, for callers driving the cursor
    themselves. Returns ``[next_cursor, keys]``, a next cursor of 0 means
    every primary was scanned.
    """
    cursor = int(cursor)
    primaries = router.nodes_manager.get_primaries()
    index, node_cursor = cursor & NODE_INDEX_MASK, cursor >> NODE_INDEX_BITS
    if index >= len(primaries):
        return [b"0", []]
    reply = router.execute(primaries[index], ("SCAN", node_cursor, *args))
    next_node_cursor = int(reply[0])
    if next_node_cursor == 0:
        index += 1
        next_cursor = index if index < len(primaries) else 0
    else:
        next_cursor = next_node_cursor << NODE_INDEX_BITS | index
    return [_as_cursor(next_cursor, reply[0]), reply[1]]


def scan(router: Router, *args) -> Iterator[Any]:
    """
    Yield the keys of every primary, one primary after the other in a stable
    order, each scanned until its cursor is back to 0.
    """
    for node in router.nodes_manager.get_primaries():
        cursor = 0
        while True:
            reply = router.execute(node, ("SCAN", cursor, *args))
            cursor = int(reply[0])
            yield from reply[1]
            if cursor == 0:
                break


def scan_key(router: Router, command: str, key, *args) -> Iterator[Any]:
    """
    Iterate one collection with ``SSCAN``, ``HSCAN`` or ``ZSCAN``. Every page
    is read from the node picked for the first one: a cursor is only
    meaningful to the node that returned it.
    """
    node = router.node_for_command((command, key, 0))
    cursor = 0
    while True:
        reply = router.execute_with_retry(lambda: node, (command, key, cursor, *args))
        cursor = int(reply[0])
        yield from reply[1]
        if cursor == 0:
            break


def pairs(items: Iterator[Any]) -> Iterator[Tuple[Any, Any]]:
    it = iter(items)
    return zip(it, it)


def sscan(router: Router, key, *args) -> Iterator[Any]:
    return scan_key(router, "SSCAN", key, *args)


def hscan(router: Router, key, *args) -> Iterator[Tuple[Any, Any]]:
    "Yield ``(field, value)`` pairs"
    return pairs(scan_key(router, "HSCAN", key, *args))


def zscan(router: Router, key, *args) -> Iterator[Tuple[Any, Any]]:
    "Yield ``(member, score)`` pairs"
    return pairs(scan_key(router, "ZSCAN", key, *args))
