from binascii import crc_hqx

from clusterkv.exceptions import ConsistencyError

# The cluster's key space is divided into 16384 slots.
# See: https://redis.io/docs/reference/cluster-spec/#key-distribution-model
CLUSTER_HASH_SLOTS = 16384

__all__ = ["crc16", "key_slot", "hash_tag", "encode_key", "CLUSTER_HASH_SLOTS"]


def crc16(data):
    return crc_hqx(data, 0)


def encode_key(key, encoding="utf-8", errors="strict"):
    if isinstance(key, bytes):
        return key
    if isinstance(key, memoryview):
        return key.tobytes()
    if isinstance(key, str):
        return key.encode(encoding, errors)
    if isinstance(key, (int, float)) and not isinstance(key, bool):
        return repr(key).encode()
    raise TypeError(
        f"Invalid key of type: {type(key).__name__!r}. "
        "Convert to a bytes, string, int or float first."
    )


def hash_tag(key):
    """
    Return the part of ``key`` used for hashing: the substring between the
    first ``{`` and the next ``}`` when it is not empty, else the whole key.
    """
    key = encode_key(key)
    start = key.find(b"{")
    if start > -1:
        end = key.find(b"}", start + 1)
        if end > -1 and end != start + 1:
            return key[start + 1 : end]
    return key


def key_slot(key, bucket=CLUSTER_HASH_SLOTS):
    """Calculate key slot for a given key.
    :param key - bytes, str, int or float
    :param bucket - int
    """
    return crc16(hash_tag(key)) % bucket


def slot_of_keys(keys):
    """
    Return the single slot all ``keys`` map to, ``None`` if there are no
    keys, or raise ``ConsistencyError`` when they span several slots.
    """
    slots = {key_slot(key) for key in keys}
    if len(slots) > 1:
        raise ConsistencyError(
            f"Keys {list(keys)!r} map to {len(slots)} different slots"
        )
    return slots.pop() if slots else None
