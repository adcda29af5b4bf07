from typing import Any, Dict, List, Optional, Sequence

from clusterkv.utils import safe_str, str_if_bytes

# Key positions of the commands a client most commonly sends, used until a
# node answered ``COMMAND``. The format mirrors the ``COMMAND`` reply:
# name: (first_key_pos, last_key_pos, step_count, flags)
R, W, M, P = "readonly", "write", "movablekeys", "pubsub"
BUILTIN_COMMANDS = {
    "append": (1, 1, 1, {W}),
    "bitcount": (1, 1, 1, {R}),
    "bitpos": (1, 1, 1, {R}),
    "blmove": (1, 2, 1, {W}),
    "blmpop": (0, 0, 0, {W, M}),
    "blpop": (1, -2, 1, {W}),
    "brpop": (1, -2, 1, {W}),
    "brpoplpush": (1, 2, 1, {W}),
    "bzmpop": (0, 0, 0, {W, M}),
    "bzpopmax": (1, -2, 1, {W}),
    "bzpopmin": (1, -2, 1, {W}),
    "copy": (1, 2, 1, {W}),
    "decr": (1, 1, 1, {W}),
    "decrby": (1, 1, 1, {W}),
    "del": (1, -1, 1, {W}),
    "dump": (1, 1, 1, {R}),
    "eval": (0, 0, 0, {M}),
    "eval_ro": (0, 0, 0, {R, M}),
    "evalsha": (0, 0, 0, {M}),
    "evalsha_ro": (0, 0, 0, {R, M}),
    "exists": (1, -1, 1, {R}),
    "expire": (1, 1, 1, {W}),
    "expireat": (1, 1, 1, {W}),
    "fcall": (0, 0, 0, {M}),
    "fcall_ro": (0, 0, 0, {R, M}),
    "geoadd": (1, 1, 1, {W}),
    "geodist": (1, 1, 1, {R}),
    "geohash": (1, 1, 1, {R}),
    "geopos": (1, 1, 1, {R}),
    "georadius": (1, 1, 1, {W, M}),
    "georadiusbymember": (1, 1, 1, {W, M}),
    "geosearch": (1, 1, 1, {R}),
    "get": (1, 1, 1, {R}),
    "getdel": (1, 1, 1, {W}),
    "getex": (1, 1, 1, {W}),
    "getrange": (1, 1, 1, {R}),
    "getset": (1, 1, 1, {W}),
    "hdel": (1, 1, 1, {W}),
    "hexists": (1, 1, 1, {R}),
    "hget": (1, 1, 1, {R}),
    "hgetall": (1, 1, 1, {R}),
    "hincrby": (1, 1, 1, {W}),
    "hincrbyfloat": (1, 1, 1, {W}),
    "hkeys": (1, 1, 1, {R}),
    "hlen": (1, 1, 1, {R}),
    "hmget": (1, 1, 1, {R}),
    "hmset": (1, 1, 1, {W}),
    "hscan": (1, 1, 1, {R}),
    "hset": (1, 1, 1, {W}),
    "hsetnx": (1, 1, 1, {W}),
    "hvals": (1, 1, 1, {R}),
    "incr": (1, 1, 1, {W}),
    "incrby": (1, 1, 1, {W}),
    "incrbyfloat": (1, 1, 1, {W}),
    "lindex": (1, 1, 1, {R}),
    "linsert": (1, 1, 1, {W}),
    "llen": (1, 1, 1, {R}),
    "lmove": (1, 2, 1, {W}),
    "lmpop": (0, 0, 0, {W, M}),
    "lpop": (1, 1, 1, {W}),
    "lpos": (1, 1, 1, {R}),
    "lpush": (1, 1, 1, {W}),
    "lpushx": (1, 1, 1, {W}),
    "lrange": (1, 1, 1, {R}),
    "lrem": (1, 1, 1, {W}),
    "lset": (1, 1, 1, {W}),
    "ltrim": (1, 1, 1, {W}),
    "mget": (1, -1, 1, {R}),
    "migrate": (0, 0, 0, {W, M}),
    "mset": (1, -1, 2, {W}),
    "msetnx": (1, -1, 2, {W}),
    "persist": (1, 1, 1, {W}),
    "pexpire": (1, 1, 1, {W}),
    "pexpireat": (1, 1, 1, {W}),
    "pfadd": (1, 1, 1, {W}),
    "pfcount": (1, -1, 1, {R}),
    "pfmerge": (1, -1, 1, {W}),
    "psetex": (1, 1, 1, {W}),
    "pttl": (1, 1, 1, {R}),
    "rename": (1, 2, 1, {W}),
    "renamenx": (1, 2, 1, {W}),
    "restore": (1, 1, 1, {W}),
    "rpop": (1, 1, 1, {W}),
    "rpoplpush": (1, 2, 1, {W}),
    "rpush": (1, 1, 1, {W}),
    "rpushx": (1, 1, 1, {W}),
    "sadd": (1, 1, 1, {W}),
    "scard": (1, 1, 1, {R}),
    "sdiff": (1, -1, 1, {R}),
    "sdiffstore": (1, -1, 1, {W}),
    "set": (1, 1, 1, {W}),
    "setex": (1, 1, 1, {W}),
    "setnx": (1, 1, 1, {W}),
    "setrange": (1, 1, 1, {W}),
    "sinter": (1, -1, 1, {R}),
    "sintercard": (0, 0, 0, {R, M}),
    "sinterstore": (1, -1, 1, {W}),
    "sismember": (1, 1, 1, {R}),
    "smembers": (1, 1, 1, {R}),
    "smismember": (1, 1, 1, {R}),
    "smove": (1, 2, 1, {W}),
    "sort": (1, 1, 1, {W, M}),
    "sort_ro": (1, 1, 1, {R}),
    "spop": (1, 1, 1, {W}),
    "spublish": (1, 1, 1, {P}),
    "srandmember": (1, 1, 1, {R}),
    "srem": (1, 1, 1, {W}),
    "sscan": (1, 1, 1, {R}),
    "ssubscribe": (1, -1, 1, {P}),
    "strlen": (1, 1, 1, {R}),
    "sunion": (1, -1, 1, {R}),
    "sunionstore": (1, -1, 1, {W}),
    "sunsubscribe": (1, -1, 1, {P}),
    "touch": (1, -1, 1, {R}),
    "ttl": (1, 1, 1, {R}),
    "type": (1, 1, 1, {R}),
    "unlink": (1, -1, 1, {W}),
    "watch": (1, -1, 1, set()),
    "xack": (1, 1, 1, {W}),
    "xadd": (1, 1, 1, {W}),
    "xautoclaim": (1, 1, 1, {W}),
    "xclaim": (1, 1, 1, {W}),
    "xdel": (1, 1, 1, {W}),
    "xgroup|create": (2, 2, 1, {W}),
    "xgroup|destroy": (2, 2, 1, {W}),
    "xgroup|setid": (2, 2, 1, {W}),
    "xinfo|stream": (2, 2, 1, {R}),
    "xinfo|groups": (2, 2, 1, {R}),
    "xinfo|consumers": (2, 2, 1, {R}),
    "xlen": (1, 1, 1, {R}),
    "xpending": (1, 1, 1, {R}),
    "xrange": (1, 1, 1, {R}),
    "xread": (0, 0, 0, {R, M}),
    "xreadgroup": (0, 0, 0, {W, M}),
    "xrevrange": (1, 1, 1, {R}),
    "xtrim": (1, 1, 1, {W}),
    "zadd": (1, 1, 1, {W}),
    "zcard": (1, 1, 1, {R}),
    "zcount": (1, 1, 1, {R}),
    "zdiff": (0, 0, 0, {R, M}),
    "zdiffstore": (1, 1, 1, {W, M}),
    "zincrby": (1, 1, 1, {W}),
    "zinter": (0, 0, 0, {R, M}),
    "zintercard": (0, 0, 0, {R, M}),
    "zinterstore": (1, 1, 1, {W, M}),
    "zmpop": (0, 0, 0, {W, M}),
    "zmscore": (1, 1, 1, {R}),
    "zpopmax": (1, 1, 1, {W}),
    "zpopmin": (1, 1, 1, {W}),
    "zrange": (1, 1, 1, {R}),
    "zrangebyscore": (1, 1, 1, {R}),
    "zrangestore": (1, 2, 1, {W}),
    "zrank": (1, 1, 1, {R}),
    "zrem": (1, 1, 1, {W}),
    "zremrangebyscore": (1, 1, 1, {W}),
    "zrevrange": (1, 1, 1, {R}),
    "zrevrank": (1, 1, 1, {R}),
    "zscan": (1, 1, 1, {R}),
    "zscore": (1, 1, 1, {R}),
    "zunion": (0, 0, 0, {R, M}),
    "zunionstore": (1, 1, 1, {W, M}),
    "memory|usage": (2, 2, 1, {R}),
    "object|encoding": (2, 2, 1, {R}),
    "object|freq": (2, 2, 1, {R}),
    "object|idletime": (2, 2, 1, {R}),
    "object|refcount": (2, 2, 1, {R}),
}

# numkeys position, first key position, extra leading keys
_NUMKEYS_COMMANDS = {
    "eval": (2, 3),
    "eval_ro": (2, 3),
    "evalsha": (2, 3),
    "evalsha_ro": (2, 3),
    "fcall": (2, 3),
    "fcall_ro": (2, 3),
    "zunion": (1, 2),
    "zinter": (1, 2),
    "zdiff": (1, 2),
    "zintercard": (1, 2),
    "sintercard": (1, 2),
    "lmpop": (1, 2),
    "zmpop": (1, 2),
    "blmpop": (2, 3),
    "bzmpop": (2, 3),
    "zunionstore": (2, 3),
    "zinterstore": (2, 3),
    "zdiffstore": (2, 3),
}


class CommandsParser:
    """
    Parses commands to get command keys.
    COMMAND output is used to determine key locations.
    Commands that do not have a predefined key location are flagged with
    'movablekeys', and these commands' keys are determined by rules for each
    of them.
    """

    def __init__(self, commands: Optional[Dict[str, Dict[str, Any]]] = None):
        self.commands = commands if commands is not None else self.builtin_commands()
        self.loaded_from_server = False

    @staticmethod
    def builtin_commands() -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "name": name,
                "first_key_pos": first,
                "last_key_pos": last,
                "step_count": step,
                "flags": set(flags),
            }
            for name, (first, last, step, flags) in BUILTIN_COMMANDS.items()
        }

    def load(self, reply: Sequence[Any]) -> None:
        """
        Replace the known commands with the reply of a ``COMMAND`` call.
        Built-in entries the server does not know about are kept.
        """
        commands = self.builtin_commands()
        for entry in reply:
            for info in [entry, *self._subcommands(entry)]:
                parsed = self.parse_command(info)
                commands[parsed["name"]] = parsed
        self.commands = commands
        self.loaded_from_server = True

    @staticmethod
    def _subcommands(entry):
        if len(entry) > 9 and entry[9]:
            return entry[9]
        return []

    @staticmethod
    def parse_command(command) -> Dict[str, Any]:
        return {
            "name": str_if_bytes(command[0]).lower(),
            "first_key_pos": int(command[3]),
            "last_key_pos": int(command[4]),
            "step_count": int(command[5]),
            "flags": {str_if_bytes(flag) for flag in command[2]},
        }

    def _lookup(self, args):
        name = safe_str(args[0]).lower()
        if len(args) > 1:
            subcommand = self.commands.get(f"{name}|{safe_str(args[1]).lower()}")
            if subcommand is not None:
                return subcommand
        return self.commands.get(name)

    def is_readonly(self, args) -> bool:
        command = self._lookup(args) if args else None
        return command is not None and "readonly" in command["flags"]

    def get_keys(self, args) -> List[Any]:
        """
        Get the keys from the passed command, an empty list for keyless or
        unknown commands.
        """
        if len(args) < 2:
            # The command has no keys in it
            return []

        command = self._lookup(args)
        if command is None:
            return []
        if "movablekeys" in command["flags"]:
            keys = self._get_movable_keys(command["name"], args)
            if keys is not None:
                return keys

        first = command["first_key_pos"]
        if first <= 0:
            return []
        last = command["last_key_pos"]
        if last < 0:
            last = len(args) + last
        step = command["step_count"] or 1
        return [args[pos] for pos in range(first, min(last, len(args) - 1) + 1, step)]

    def _get_movable_keys(self, name, args) -> Optional[List[Any]]:
        upper_args = [safe_str(arg).upper() for arg in args]
        if name in _NUMKEYS_COMMANDS:
            numkeys_pos, first = _NUMKEYS_COMMANDS[name]
            try:
                numkeys = int(args[numkeys_pos])
            except (IndexError, ValueError):
                return []
            keys = list(args[first : first + numkeys])
            if name.endswith("store"):
                keys.insert(0, args[1])
            return keys
        if name in ("xread", "xreadgroup"):
            if "STREAMS" not in upper_args:
                return []
            rest = args[upper_args.index("STREAMS") + 1 :]
            return list(rest[: len(rest) // 2])
        if name == "migrate":
            if "KEYS" in upper_args:
                return list(args[upper_args.index("KEYS") + 1 :])
            return [args[3]] if len(args) > 3 else []
        if name in ("sort", "georadius", "georadiusbymember"):
            keys = [args[1]]
            for option in ("STORE", "STOREDIST"):
                if option in upper_args[2:]:
                    position = upper_args.index(option, 2) + 1
                    if position < len(args):
                        keys.append(args[position])
            return keys
        return None
