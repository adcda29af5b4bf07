from typing import Any, Dict, Iterable, List, Mapping, Union


def str_if_bytes(value: Union[str, bytes]) -> str:
    return (
        value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
    )


def safe_str(value):
    return str(str_if_bytes(value))


def command_name(args) -> str:
    "Upper-cased name of a command, ``''`` for an empty one"
    return safe_str(args[0]).upper() if args else ""


def list_keys_to_dict(key_list, callback):
    return dict.fromkeys(key_list, callback)


def merge_result(res: Mapping[str, Iterable[Any]]) -> List[Any]:
    """
    Merge all items in `res` into a list without duplicates.

    This is used when sending a command to multiple nodes
    and the result from each node should be merged into a single list.

    res : 'dict'
    """
    result = []
    seen = set()
    for values in res.values():
        for value in values:
            if value not in seen:
                seen.add(value)
                result.append(value)
    return result


def concat_result(res: Mapping[str, Iterable[Any]]) -> List[Any]:
    return [value for values in res.values() for value in values]


def sum_result(res: Mapping[str, int]) -> int:
    return sum(res.values())


def first_result(res: Mapping[str, Any]) -> Any:
    return next(iter(res.values()), None)


def pairs_to_dict(response) -> Dict[Any, Any]:
    if isinstance(response, dict):
        return dict(response)
    it = iter(response)
    return dict(zip(it, it))


def sum_by_key(res: Mapping[str, Any]) -> Dict[Any, int]:
    """
    Sum per-channel counters returned by several nodes, e.g. for
    ``PUBSUB NUMSUB``. Node replies may be flat pair lists or dicts.
    """
    total: Dict[Any, int] = {}
    for response in res.values():
        for key, value in pairs_to_dict(response).items():
            total[key] = total.get(key, 0) + int(value)
    return total


def all_true_by_index(res: Mapping[str, List[Any]]) -> List[int]:
    "Element-wise AND over replies such as ``SCRIPT EXISTS``"
    replies = list(res.values())
    if not replies:
        return []
    return [int(all(reply[i] for reply in replies)) for i in range(len(replies[0]))]

