class IndexerError(Exception):
    pass


class ConfigError(IndexerError, ValueError):
    pass


class RPCError(IndexerError, RuntimeError):
    pass


class ChainMismatchError(RPCError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"RPC endpoint serves chain {actual}, sale expects chain {expected}")
        self.expected = expected
        self.actual = actual
